"""
Operations Work Queue
=====================

SLA timer tracking and escalation engine for service orders.
"""

__version__ = "1.0.0"
