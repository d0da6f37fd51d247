"""
Tests for logging setup
"""

import logging

import pytest

from consult_payments.utils import logging_config
from consult_payments.utils.logging_config import (
    PAYMENT_EVENT_LOGGER,
    configure_logging,
    resolve_level,
)


@pytest.fixture(autouse=True)
def restore_loggers():
    root = logging.getLogger()
    events = logging.getLogger(PAYMENT_EVENT_LOGGER)
    saved = (list(root.handlers), root.level, list(events.handlers), events.level, events.propagate)
    yield
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])
    events.handlers[:] = saved[2]
    events.setLevel(saved[3])
    events.propagate = saved[4]


def test_resolve_level(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")

    assert resolve_level(None) == logging.DEBUG
    assert resolve_level("warning") == logging.WARNING
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level("not-a-level") == logging.INFO


def test_payment_events_have_own_handler(monkeypatch):
    monkeypatch.setattr(logging_config, "running_in_container", lambda: True)

    configure_logging(logging.INFO, force=True)

    root = logging.getLogger()
    events = logging.getLogger(PAYMENT_EVENT_LOGGER)
    assert len(root.handlers) == 1
    assert root.handlers[0].formatter._fmt == logging_config.CONTAINER_FORMAT
    assert len(events.handlers) == 1
    assert events.handlers[0].formatter._fmt == "%(message)s"
    assert events.propagate is False
    assert logging.getLogger("stripe").level == logging.WARNING


def test_existing_setup_kept_without_force():
    root = logging.getLogger()
    marker = logging.NullHandler()
    root.handlers[:] = [marker]

    configure_logging()

    assert root.handlers == [marker]
