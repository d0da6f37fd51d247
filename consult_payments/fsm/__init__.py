"""
Payment FSM Package

Finite State Machine (FSM) for the payment held against a scheduled consultation.

Exports:
- PaymentState: Enum of payment states
- DeliverySource: Enum of service-delivery signal sources
- PaymentOperation: Enum of idempotent state-changing operations
- VALID_TRANSITIONS: State transition rules dictionary
- TERMINAL_STATES: States that accept no further transitions
- AppointmentPayment: Pydantic model for the payment record
- ServiceDelivery: Pydantic model for the delivery signal
- IdempotencyRecord: Pydantic model for cached call results
- ProcessorEvent: Pydantic model for verified processor callbacks
- RedisClient: Redis client class with CAS support
- redis_client: Singleton Redis client instance
- PaymentStateManager: Core FSM orchestration class
- InvalidTransitionError: Exception for invalid state transitions
"""

from .constants import (
    PaymentState,
    DeliverySource,
    PaymentOperation,
    VALID_TRANSITIONS,
    TERMINAL_STATES,
)
from .models import (
    AppointmentPayment,
    ServiceDelivery,
    IdempotencyRecord,
    ProcessorEvent,
)
from .redis_client import (
    RedisClient,
    redis_client,
)
from .manager import (
    PaymentStateManager,
    InvalidTransitionError,
)

__all__ = [
    # Enums
    "PaymentState",
    "DeliverySource",
    "PaymentOperation",
    # Constants
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    # Models
    "AppointmentPayment",
    "ServiceDelivery",
    "IdempotencyRecord",
    "ProcessorEvent",
    # Redis
    "RedisClient",
    "redis_client",
    # Manager
    "PaymentStateManager",
    "InvalidTransitionError",
]
