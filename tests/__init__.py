"""
Consultation payment test suite
"""
