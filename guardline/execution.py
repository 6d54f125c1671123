"""
Protocol Execution Engine.

An execution is one enactment of a protocol checklist against a specific
alert.  This module implements its lifecycle as an explicit state
machine and owns the step-completion ledger.

**State machine:**

    (none) -> IN_PROGRESS -> ESCALATED -> CLOSED
                    \\_____________________/

``ESCALATED`` may be re-entered (a second escalation updates the
escalation fields).  ``CLOSED`` is terminal.

**Invariants enforced here:**

* At most one non-closed execution per alert.  The check and the insert
  happen under one lock in ``ExecutionStore``, so concurrent starts for
  the same alert produce exactly one execution; the loser gets
  ``ExecutionConflictError`` naming the winner.
* At most one ``StepCompletion`` per step order.  Completing a step again
  replaces its record (last write wins).
* Steps may be completed in any order.  Responders act on concurrent
  priorities, so sequence is not enforced.

The checklist an execution is validated against is its *effective steps*:
the steps of the template it started with (resolved even if that template
was later soft-deleted), or the default catalog for its alert type.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from guardline.audit import AuditEventType, AuditLog
from guardline.catalog import default_steps_for
from guardline.errors import (
    ExecutionConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    OrgMismatchError,
    StepNotFoundError,
)
from guardline.models import (
    Alert,
    ExecutionStatus,
    ProtocolExecution,
    ProtocolStep,
    ProtocolTemplate,
    StepCompletion,
    utcnow,
    validate_actor,
)
from guardline.templates import TemplateStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.IN_PROGRESS: {ExecutionStatus.ESCALATED, ExecutionStatus.CLOSED},
    ExecutionStatus.ESCALATED: {ExecutionStatus.ESCALATED, ExecutionStatus.CLOSED},
    ExecutionStatus.CLOSED: set(),  # terminal state
}


def validate_transition(execution: ProtocolExecution, target: ExecutionStatus) -> None:
    """Raise InvalidTransitionError if ``execution`` cannot move to ``target``."""
    allowed = _VALID_TRANSITIONS[execution.status]
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition execution '{execution.execution_id}' from "
            f"{execution.status.value} to {target.value}. "
            f"Allowed transitions: {sorted(s.value for s in allowed)}"
        )


# ---------------------------------------------------------------------------
# Pure checklist queries
# ---------------------------------------------------------------------------

def is_step_completed(execution: ProtocolExecution, step_order: int) -> bool:
    return execution.completion_for(step_order) is not None


def missing_required_steps(
    execution: ProtocolExecution, steps: Iterable[ProtocolStep]
) -> list[int]:
    """Orders of required steps that have no completion yet."""
    return [
        s.order for s in steps
        if s.is_required and not is_step_completed(execution, s.order)
    ]


def all_required_steps_complete(
    execution: ProtocolExecution, steps: Iterable[ProtocolStep]
) -> bool:
    """True iff every required step has a completion.  Optional steps are ignored."""
    return not missing_required_steps(execution, steps)


class ExecutionProgress(BaseModel):
    """Checklist progress counters for dashboards."""

    total_steps: int
    completed_steps: int
    required_steps: int
    completed_required_steps: int

    @property
    def percent_complete(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return round(100.0 * self.completed_steps / self.total_steps, 1)


# ---------------------------------------------------------------------------
# Storage with the one-open-execution-per-alert constraint
# ---------------------------------------------------------------------------

class ExecutionStore:
    """In-memory execution storage.

    ``lock`` is re-entrant and is held by every read-modify-write in the
    engine, escalation manager and closure gate.
    """

    def __init__(self) -> None:
        self._executions: dict[str, ProtocolExecution] = {}
        self._open_by_alert: dict[str, str] = {}
        self.lock = threading.RLock()

    def insert_open(self, execution: ProtocolExecution) -> None:
        """Insert a new open execution, enforcing uniqueness per alert.

        Raises:
            ExecutionConflictError: The alert already has an open execution.
        """
        with self.lock:
            existing_id = self._open_by_alert.get(execution.alert_id)
            if existing_id is not None:
                raise ExecutionConflictError(execution.alert_id, existing_id)
            self._executions[execution.execution_id] = execution
            self._open_by_alert[execution.alert_id] = execution.execution_id

    def require(self, execution_id: str) -> ProtocolExecution:
        """Return the stored object (not a copy)."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def save(self, execution: ProtocolExecution) -> None:
        """Replace a stored execution, releasing the alert slot once closed."""
        with self.lock:
            self.require(execution.execution_id)
            self._executions[execution.execution_id] = execution
            if execution.is_closed:
                if self._open_by_alert.get(execution.alert_id) == execution.execution_id:
                    del self._open_by_alert[execution.alert_id]
            else:
                self._open_by_alert[execution.alert_id] = execution.execution_id

    def open_for_alert(self, alert_id: str) -> Optional[ProtocolExecution]:
        with self.lock:
            execution_id = self._open_by_alert.get(alert_id)
            return self._executions[execution_id] if execution_id else None

    def values(self) -> list[ProtocolExecution]:
        with self.lock:
            return list(self._executions.values())

    def __len__(self) -> int:
        return len(self._executions)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ProtocolExecutionEngine:
    """Starts executions and records step completions.

    Escalation and closure live in ``EscalationManager`` and
    ``ClosureGate``; both share this engine's ``store`` and checklist
    resolution.
    """

    def __init__(
        self,
        templates: TemplateStore,
        audit_log: AuditLog,
        store: Optional[ExecutionStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.templates = templates
        self.store = store or ExecutionStore()
        self.clock = clock
        self._audit_log = audit_log

    # -- checklist resolution --

    def effective_template(self, execution: ProtocolExecution) -> Optional[ProtocolTemplate]:
        """The template the execution started with, deleted or not; None for defaults."""
        if execution.template_id is None:
            return None
        return self.templates.get_template(execution.template_id, include_deleted=True)

    def effective_steps(self, execution: ProtocolExecution) -> list[ProtocolStep]:
        template = self.effective_template(execution)
        if template is not None and template.steps:
            return template.steps
        return default_steps_for(execution.alert_type)

    # -- queries --

    def get_execution(self, execution_id: str) -> ProtocolExecution:
        with self.store.lock:
            return self.store.require(execution_id).model_copy(deep=True)

    def get_open_execution(self, alert_id: str) -> Optional[ProtocolExecution]:
        execution = self.store.open_for_alert(alert_id)
        return execution.model_copy(deep=True) if execution else None

    def list_executions(
        self, org_id: str, status: Optional[ExecutionStatus] = None
    ) -> list[ProtocolExecution]:
        """Executions for one organization, oldest first."""
        matches = [
            e for e in self.store.values()
            if e.org_id == org_id and (status is None or e.status == status)
        ]
        matches.sort(key=lambda e: e.started_at)
        return [e.model_copy(deep=True) for e in matches]

    def is_step_completed(self, execution: ProtocolExecution, step_order: int) -> bool:
        return is_step_completed(execution, step_order)

    def all_required_steps_complete(
        self,
        execution: ProtocolExecution,
        steps: Optional[Iterable[ProtocolStep]] = None,
    ) -> bool:
        if steps is None:
            steps = self.effective_steps(execution)
        return all_required_steps_complete(execution, steps)

    def progress(self, execution: ProtocolExecution) -> ExecutionProgress:
        steps = self.effective_steps(execution)
        required = [s for s in steps if s.is_required]
        return ExecutionProgress(
            total_steps=len(steps),
            completed_steps=sum(1 for s in steps if is_step_completed(execution, s.order)),
            required_steps=len(required),
            completed_required_steps=sum(
                1 for s in required if is_step_completed(execution, s.order)
            ),
        )

    # -- lifecycle operations --

    def start_execution(
        self,
        alert: Alert,
        actor_id: str,
        template: Optional[ProtocolTemplate] = None,
    ) -> ProtocolExecution:
        """Start working an alert.

        Uses ``template`` when given, otherwise the organization's active
        template for the alert type, otherwise the default catalog
        (``template_id`` stays ``None``).

        Raises:
            ActorValidationError: Empty ``actor_id``.
            ExecutionConflictError: The alert already has an open execution.
            OrgMismatchError: ``template`` belongs to another organization.
            TemplateNotFoundError: ``template`` has been deleted.
        """
        actor_id = validate_actor(actor_id)
        if template is not None:
            if template.org_id != alert.org_id:
                raise OrgMismatchError(
                    f"Template org_id '{template.org_id}' does not match alert "
                    f"org_id '{alert.org_id}'."
                )
            # must still exist and not be deleted
            template = self.templates.get_template(template.template_id)
        else:
            template = self.templates.get_active_template(alert.org_id, alert.alert_type)

        execution = ProtocolExecution(
            org_id=alert.org_id,
            alert_id=alert.alert_id,
            alert_type=alert.alert_type,
            template_id=template.template_id if template else None,
            status=ExecutionStatus.IN_PROGRESS,
            started_at=self.clock(),
            started_by=actor_id,
        )

        try:
            self.store.insert_open(execution)
        except ExecutionConflictError as exc:
            logger.warning(
                "Rejected start for alert %s: execution %s already open",
                alert.alert_id, exc.existing_execution_id,
            )
            raise

        self._audit_log.record(
            AuditEventType.EXECUTION_STARTED,
            org_id=execution.org_id,
            actor_id=actor_id,
            target_entity=execution.execution_id,
            metadata={
                "alert_id": alert.alert_id,
                "alert_type": alert.alert_type,
                "template_id": execution.template_id,
                "default_catalog": execution.template_id is None,
            },
        )
        logger.info(
            "Started execution %s for alert %s (template=%s)",
            execution.execution_id, alert.alert_id, execution.template_id or "default",
        )
        return execution.model_copy(deep=True)

    def complete_step(
        self,
        execution_id: str,
        step_order: int,
        actor_id: str,
        notes: Optional[str] = None,
        evidence_ref: Optional[str] = None,
    ) -> ProtocolExecution:
        """Record (or re-record) completion of one checklist step.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            ExecutionNotFoundError: Unknown execution.
            InvalidTransitionError: The execution is closed.
            StepNotFoundError: ``step_order`` is not in the effective checklist.
        """
        actor_id = validate_actor(actor_id)
        with self.store.lock:
            execution = self.store.require(execution_id)
            if execution.is_closed:
                raise InvalidTransitionError(
                    f"Execution '{execution_id}' is closed; steps can no longer be completed."
                )

            valid_orders = [s.order for s in self.effective_steps(execution)]
            if step_order not in valid_orders:
                logger.warning(
                    "Rejected completion of unknown step %s on execution %s",
                    step_order, execution_id,
                )
                raise StepNotFoundError(step_order, valid_orders)

            completion = StepCompletion(
                step_order=step_order,
                completed_at=self.clock(),
                completed_by=actor_id,
                notes=notes,
                evidence_ref=evidence_ref,
            )
            replaced = is_step_completed(execution, step_order)
            ledger = [c for c in execution.steps_completed if c.step_order != step_order]
            ledger.append(completion)
            ledger.sort(key=lambda c: c.step_order)

            updated = execution.model_copy(update={"steps_completed": ledger}, deep=True)
            self.store.save(updated)

        self._audit_log.record(
            AuditEventType.STEP_COMPLETED,
            org_id=updated.org_id,
            actor_id=actor_id,
            target_entity=execution_id,
            metadata={
                "step_order": step_order,
                "replaced": replaced,
                "evidence_ref": evidence_ref,
                "notes": notes or "",
            },
        )
        logger.info(
            "Step %d %s on execution %s by %s",
            step_order, "re-recorded" if replaced else "completed", execution_id, actor_id,
        )
        return updated.model_copy(deep=True)
