"""
Dispatch Core - emergency case lifecycle, hospital ranking, escalation,
dispatcher override and handover coordination.
"""

__version__ = "1.0.0"
