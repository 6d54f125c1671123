"""
Escalation of a running protocol execution.

Escalation raises an execution to higher authority.  It is independent of
the checklist: it neither completes steps nor resolves the alert, and it
is allowed no matter how many required steps are still open.  Only a
closed execution can no longer be escalated.

Escalating an already escalated execution is allowed and overwrites the
escalation fields with the newer reason and target.
"""

from __future__ import annotations

import logging
from typing import Optional

from guardline.audit import AuditEventType, AuditLog
from guardline.errors import EscalationValidationError, InvalidTransitionError
from guardline.execution import (
    ProtocolExecutionEngine,
    missing_required_steps,
    validate_transition,
)
from guardline.models import ExecutionStatus, ProtocolExecution, validate_actor

logger = logging.getLogger(__name__)


class EscalationManager:
    """Moves executions into the ``ESCALATED`` state."""

    def __init__(self, engine: ProtocolExecutionEngine, audit_log: AuditLog) -> None:
        self._engine = engine
        self._audit_log = audit_log

    def escalate(
        self,
        execution_id: str,
        actor_id: str,
        reason: str,
        escalate_to: Optional[str] = None,
    ) -> ProtocolExecution:
        """Escalate an open execution.

        Args:
            execution_id: The execution to escalate.
            actor_id: Responder raising the escalation.
            reason: Mandatory explanation; blank reasons are rejected.
            escalate_to: Optional person or team the case is handed to.

        Returns:
            The updated execution.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            EscalationValidationError: ``reason`` is empty or whitespace.
            ExecutionNotFoundError: Unknown execution.
            InvalidTransitionError: The execution is closed.
        """
        actor_id = validate_actor(actor_id)
        if reason is None or not reason.strip():
            raise EscalationValidationError(
                field="reason",
                message="An escalation reason is required.",
            )

        store = self._engine.store
        with store.lock:
            execution = store.require(execution_id)
            try:
                validate_transition(execution, ExecutionStatus.ESCALATED)
            except InvalidTransitionError:
                logger.warning("Rejected escalation of closed execution %s", execution_id)
                raise

            previous_status = execution.status
            updated = execution.model_copy(
                update={
                    "status": ExecutionStatus.ESCALATED,
                    "escalation_reason": reason.strip(),
                    "escalated_at": self._engine.clock(),
                    "escalated_by": actor_id,
                    "escalated_to": escalate_to,
                },
                deep=True,
            )
            store.save(updated)

        self._audit_log.record(
            AuditEventType.EXECUTION_ESCALATED,
            org_id=updated.org_id,
            actor_id=actor_id,
            target_entity=execution_id,
            metadata={
                "previous_status": previous_status.value,
                "reason": updated.escalation_reason,
                "escalated_to": escalate_to,
                "open_required_steps": missing_required_steps(
                    updated, self._engine.effective_steps(updated)
                ),
            },
        )
        logger.info(
            "Execution %s escalated by %s to %s",
            execution_id, actor_id, escalate_to or "(unassigned)",
        )
        return updated.model_copy(deep=True)
