"""
Ticket Operator - autonomous ticket lifecycle orchestration.

Drives a work item from discovery through planning, coding, review, pull
request, sandbox validation and smoke testing to handoff, switching between
tool backends with a per-stage strategy matrix when one of them fails.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
