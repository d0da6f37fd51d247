"""
Consultation payment lifecycle: hold on scheduling, capture on delivery,
release on cancellation.
"""

__version__ = "1.0.0"
