"""
Guardline Emergency Protocol Engine
===================================

Response checklists for emergency alerts in multi-tenant safety
operations.  Given a triggered alert, the engine selects the
organization's configured protocol template (or the built-in default),
tracks step-by-step completion with required and photo-evidence flags,
supports escalation, enforces a closure gate that resolves the alert
atomically, and derives SLA-breach status on demand.

The engine does not decide whether an alert is real, runs no background
timers, and sends no notifications.  Start, escalation and closure are
natural trigger points for callers that do.
"""

__version__ = "0.1.0"
