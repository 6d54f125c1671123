"""
Error taxonomy for the protocol engine.

Callers need to tell three kinds of failure apart:

* ``NotFoundError`` -- the referenced template, execution, alert or step
  does not exist.  Also a ``KeyError``.
* ``ValidationFailedError`` -- the input itself is malformed (empty title,
  blank escalation reason).  Also a ``ValueError``.  Raised before any
  state is touched.
* ``PreconditionFailedError`` -- the input is fine but the current state
  does not allow the operation (closing with open required steps, acting
  on a closed execution, a second open execution for the same alert).
  These are user-correctable.

Every error carries enough detail to render a specific message.
"""

from __future__ import annotations

from typing import Optional


class ProtocolError(Exception):
    """Base class for all engine errors."""
    pass


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(ProtocolError, KeyError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")

    def __str__(self) -> str:
        return str(self.args[0])


class TemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str) -> None:
        super().__init__("Protocol template", template_id)


class ExecutionNotFoundError(NotFoundError):
    def __init__(self, execution_id: str) -> None:
        super().__init__("Protocol execution", execution_id)


class AlertNotFoundError(NotFoundError):
    def __init__(self, alert_id: str) -> None:
        super().__init__("Alert", alert_id)


class StepNotFoundError(NotFoundError):
    """Raised when a step order is not part of the execution's checklist."""

    def __init__(self, step_order: int, valid_orders: list[int]) -> None:
        self.valid_orders = valid_orders
        super().__init__("Protocol step", step_order)
        self.args = (
            f"Protocol step {step_order} is not part of this checklist. "
            f"Valid steps: {valid_orders}",
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationFailedError(ProtocolError, ValueError):
    """Raised when input is rejected before any state mutation."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class TemplateValidationError(ValidationFailedError):
    pass


class EscalationValidationError(ValidationFailedError):
    pass


class ActorValidationError(ValidationFailedError):
    """A mutating call arrived without an actor id."""

    def __init__(self, actor_id: object) -> None:
        super().__init__(
            field="actor_id",
            message=f"A non-empty actor_id is required, got {actor_id!r}.",
        )


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------

class PreconditionFailedError(ProtocolError):
    """Raised when the current state does not permit the operation."""
    pass


class InvalidTransitionError(PreconditionFailedError):
    """Raised when a status transition is not permitted."""
    pass


class OrgMismatchError(PreconditionFailedError):
    """Raised when entities from different organizations are combined."""
    pass


class ExecutionConflictError(PreconditionFailedError):
    """Raised when an alert already has a non-closed execution."""

    def __init__(self, alert_id: str, existing_execution_id: str) -> None:
        self.alert_id = alert_id
        self.existing_execution_id = existing_execution_id
        super().__init__(
            f"Alert '{alert_id}' already has an open protocol execution "
            f"'{existing_execution_id}'."
        )


class TemplateConflictError(PreconditionFailedError):
    """Raised when single-active enforcement would be violated."""

    def __init__(self, org_id: str, alert_type: str, active_template_id: str) -> None:
        self.org_id = org_id
        self.alert_type = alert_type
        self.active_template_id = active_template_id
        super().__init__(
            f"Template '{active_template_id}' is already active for alert type "
            f"'{alert_type}' in org '{org_id}'. Deactivate it first."
        )


class ClosurePreconditionError(PreconditionFailedError):
    """Raised when an execution is not eligible for closure."""

    def __init__(
        self,
        message: str,
        missing_required_steps: Optional[list[int]] = None,
        missing_evidence_steps: Optional[list[int]] = None,
    ) -> None:
        self.missing_required_steps = missing_required_steps or []
        self.missing_evidence_steps = missing_evidence_steps or []
        super().__init__(message)


# ---------------------------------------------------------------------------
# Collaborator failures
# ---------------------------------------------------------------------------

class AlertResolutionError(ProtocolError):
    """The alert collaborator failed while closing; the execution was restored."""

    def __init__(self, alert_id: str, execution_id: str, cause: Exception) -> None:
        self.alert_id = alert_id
        self.execution_id = execution_id
        self.cause = cause
        super().__init__(
            f"Could not resolve alert '{alert_id}': {cause}. "
            f"Execution '{execution_id}' was left open."
        )
