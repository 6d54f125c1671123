"""
Closure Gate -- the terminal transition of a protocol execution.

Closing an execution is one domain operation that writes two aggregates:
the execution (status ``CLOSED``, completion stamp, notes) and the alert
(``resolved_at``, ``resolved_by``, resolution notes).  The alert belongs
to an external collaborator, so the two writes cannot share a database
transaction.  The gate therefore runs them as a small saga:

1. check eligibility and close the execution under the store lock,
2. resolve the alert through the ``AlertGateway``,
3. if step 2 fails, restore the execution to its previous state, reopen
   the alert (unless it was already resolved before the close) in case
   the collaborator applied the resolution anyway, and
   raise ``AlertResolutionError``.

The alert is never resolved without a closed execution, and an execution
is never left closed over an unresolved alert.

**Eligibility** requires every required step to be completed.  Two
organization settings refine it:

* ``enforce_photo_evidence`` -- completed ``photo_required`` steps must
  carry an ``evidence_ref``.
* ``allow_close_when_escalated`` -- when false, escalated executions are
  refused here and must be resolved by the external escalation process.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, Field

from guardline.alerts import AlertGateway
from guardline.audit import AuditEventType, AuditLog
from guardline.config import SettingsRegistry
from guardline.errors import (
    AlertResolutionError,
    ClosurePreconditionError,
    InvalidTransitionError,
)
from guardline.execution import (
    ProtocolExecutionEngine,
    missing_required_steps,
    validate_transition,
)
from guardline.models import ExecutionStatus, ProtocolExecution, validate_actor

logger = logging.getLogger(__name__)


class ClosureEligibility(BaseModel):
    """Whether an execution can be closed right now, and if not, why."""

    execution_id: str
    eligible: bool
    missing_required_steps: list[int] = Field(default_factory=list)
    missing_evidence_steps: list[int] = Field(default_factory=list)
    reason: str = ""


class ClosureGate:
    """Decides closure eligibility and performs the closing saga."""

    def __init__(
        self,
        engine: ProtocolExecutionEngine,
        alerts: AlertGateway,
        audit_log: AuditLog,
        settings: Optional[SettingsRegistry] = None,
    ) -> None:
        self._engine = engine
        self._alerts = alerts
        self._audit_log = audit_log
        self._settings = settings or SettingsRegistry()

    # -- eligibility --

    def _evaluate(self, execution: ProtocolExecution) -> ClosureEligibility:
        settings = self._settings.get_or_default(execution.org_id)

        if execution.is_closed:
            return ClosureEligibility(
                execution_id=execution.execution_id,
                eligible=False,
                reason="Execution is already closed.",
            )

        steps = self._engine.effective_steps(execution)
        missing = missing_required_steps(execution, steps)

        missing_evidence: list[int] = []
        if settings.enforce_photo_evidence:
            for step in steps:
                if not step.photo_required:
                    continue
                completion = execution.completion_for(step.order)
                if completion is not None and not completion.evidence_ref:
                    missing_evidence.append(step.order)

        reasons = []
        if (
            execution.status == ExecutionStatus.ESCALATED
            and not settings.allow_close_when_escalated
        ):
            reasons.append(
                "Execution is escalated; it must be resolved through the escalation process."
            )
        if missing:
            reasons.append(f"Required steps not completed: {missing}.")
        if missing_evidence:
            reasons.append(f"Photo evidence missing for steps: {missing_evidence}.")

        return ClosureEligibility(
            execution_id=execution.execution_id,
            eligible=not reasons,
            missing_required_steps=missing,
            missing_evidence_steps=missing_evidence,
            reason=" ".join(reasons),
        )

    def check_closure(self, execution_id: str) -> ClosureEligibility:
        """Report closure eligibility without changing anything."""
        return self._evaluate(self._engine.get_execution(execution_id))

    # -- terminal transition --

    def close_execution(
        self,
        execution_id: str,
        actor_id: str,
        notes: Optional[str] = None,
    ) -> ProtocolExecution:
        """Close the execution and resolve its alert, all or nothing.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            ExecutionNotFoundError: Unknown execution.
            InvalidTransitionError: Already closed.
            ClosurePreconditionError: Required steps (or, when enforced,
                photo evidence) missing, or escalated closure disallowed.
            AlertNotFoundError: The alert collaborator does not know the alert;
                nothing was changed.
            AlertResolutionError: The alert collaborator failed; the
                execution was restored and remains open.
        """
        actor_id = validate_actor(actor_id)
        store = self._engine.store
        with store.lock:
            original = store.require(execution_id)
            try:
                validate_transition(original, ExecutionStatus.CLOSED)
            except InvalidTransitionError:
                logger.warning("Rejected close of already closed execution %s", execution_id)
                raise

            eligibility = self._evaluate(original)
            if not eligibility.eligible:
                logger.warning(
                    "Rejected close of execution %s: %s", execution_id, eligibility.reason
                )
                raise ClosurePreconditionError(
                    f"Execution '{execution_id}' cannot be closed. {eligibility.reason}",
                    missing_required_steps=eligibility.missing_required_steps,
                    missing_evidence_steps=eligibility.missing_evidence_steps,
                )

            # a resolution that predates this close must survive a rollback
            was_resolved = self._alerts.get_alert(original.alert_id).is_resolved

            now = self._engine.clock()
            closed = original.model_copy(
                update={
                    "status": ExecutionStatus.CLOSED,
                    "completed_at": now,
                    "completed_by": actor_id,
                    "closure_notes": notes,
                },
                deep=True,
            )
            store.save(closed)

            try:
                self._alerts.resolve_alert(
                    closed.alert_id,
                    resolved_at=now,
                    resolved_by=actor_id,
                    resolution_notes=notes,
                )
            except Exception as exc:
                # compensate: put the execution back exactly as it was
                store.save(original)
                # the collaborator may have applied the resolution before failing
                alert_reopened = False
                if not was_resolved:
                    try:
                        self._alerts.reopen_alert(original.alert_id)
                        alert_reopened = True
                    except Exception as reopen_exc:
                        logger.error(
                            "Alert %s could not be reopened during rollback: %s",
                            original.alert_id, reopen_exc,
                        )
                self._audit_log.record(
                    AuditEventType.CLOSURE_ROLLED_BACK,
                    org_id=original.org_id,
                    actor_id=actor_id,
                    target_entity=execution_id,
                    metadata={
                        "alert_id": original.alert_id,
                        "error": str(exc),
                        "alert_reopened": alert_reopened,
                    },
                )
                logger.error(
                    "Alert %s could not be resolved; execution %s restored to %s",
                    original.alert_id, execution_id, original.status.value,
                )
                raise AlertResolutionError(original.alert_id, execution_id, exc) from exc

        self._audit_log.record(
            AuditEventType.EXECUTION_CLOSED,
            org_id=closed.org_id,
            actor_id=actor_id,
            target_entity=execution_id,
            metadata={
                "alert_id": closed.alert_id,
                "previous_status": original.status.value,
                "notes": notes or "",
            },
        )
        logger.info("Execution %s closed by %s", execution_id, actor_id)
        return closed.model_copy(deep=True)
