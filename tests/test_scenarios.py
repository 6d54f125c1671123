"""
End-to-end walkthroughs of an alert from start to closure.

Each test drives the full stack (templates, engine, escalation, closure,
SLA and the alert store) through one realistic incident.
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from guardline.audit import AuditEventType
from guardline.errors import ClosurePreconditionError, ExecutionConflictError, StepNotFoundError
from guardline.models import ExecutionStatus

PANIC_STEPS = [
    {"title": "Locate person", "is_required": True},
    {"title": "Assess danger", "is_required": True},
    {"title": "Request backup", "is_required": False},
    {"title": "Document", "is_required": True, "photo_required": True},
]


def test_panic_response_checklist_to_closure(stack, clock):
    template = stack.templates.create_template(
        org_id="org_a", alert_type="panic", name="Panic Response",
        steps=PANIC_STEPS, sla_minutes=5,
    )
    alert = stack.new_alert("panic")
    t0 = clock()
    execution = stack.engine.start_execution(alert, "guard_1")
    assert execution.template_id == template.template_id
    assert execution.started_at == t0

    clock.advance(minutes=1)
    stack.engine.complete_step(execution.execution_id, 1, "guard_1")
    stack.engine.complete_step(execution.execution_id, 2, "guard_1")

    clock.set(t0 + timedelta(minutes=2))
    with pytest.raises(ClosurePreconditionError) as exc_info:
        stack.closure.close_execution(execution.execution_id, "guard_1")
    assert exc_info.value.missing_required_steps == [4]
    assert stack.alerts.get_alert(alert.alert_id).resolved_at is None

    clock.set(t0 + timedelta(minutes=3))
    stack.engine.complete_step(execution.execution_id, 4, "guard_1", evidence_ref="p1")

    clock.set(t0 + timedelta(minutes=4))
    closed = stack.closure.close_execution(execution.execution_id, "guard_1", notes="all clear")

    assert closed.status == ExecutionStatus.CLOSED
    assert closed.completed_at == t0 + timedelta(minutes=4)
    resolved = stack.alerts.get_alert(alert.alert_id)
    assert resolved.resolved_at == t0 + timedelta(minutes=4)
    assert resolved.resolved_by == "guard_1"
    assert stack.sla.overdue(closed) is False


def test_fire_alert_runs_on_default_catalog(stack):
    execution = stack.engine.start_execution(stack.new_alert("fire"), "guard_1")
    assert execution.template_id is None

    for order in range(1, 11):
        stack.engine.complete_step(execution.execution_id, order, "guard_1")
    with pytest.raises(StepNotFoundError):
        stack.engine.complete_step(execution.execution_id, 11, "guard_1")

    assert len(stack.engine.get_execution(execution.execution_id).steps_completed) == 10


def test_two_responders_start_the_same_alert(stack):
    alert = stack.new_alert("medical")
    barrier = threading.Barrier(2)
    started, conflicts = [], []

    def _start(actor_id: str) -> None:
        barrier.wait()
        try:
            started.append(stack.engine.start_execution(alert, actor_id))
        except ExecutionConflictError as exc:
            conflicts.append(exc)

    threads = [threading.Thread(target=_start, args=(a,)) for a in ("guard_1", "guard_2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(started) == 1
    assert len(conflicts) == 1
    assert conflicts[0].existing_execution_id == started[0].execution_id
    assert len(stack.engine.list_executions("org_a")) == 1


def test_escalation_with_open_required_steps(stack):
    stack.templates.create_template(
        org_id="org_a", alert_type="fire", name="Plant Fire",
        steps=[{"title": f"Step {i}"} for i in range(1, 5)],
    )
    execution = stack.engine.start_execution(stack.new_alert("fire"), "guard_1")
    stack.engine.complete_step(execution.execution_id, 1, "guard_1")
    stack.engine.complete_step(execution.execution_id, 2, "guard_1")

    escalated = stack.escalation.escalate(execution.execution_id, "guard_1", "fire spreading")

    assert escalated.status == ExecutionStatus.ESCALATED
    assert escalated.escalation_reason == "fire spreading"
    entry = stack.audit_log.query(
        "org_a", event_type=AuditEventType.EXECUTION_ESCALATED
    )[0]
    assert entry.metadata["open_required_steps"] == [3, 4]


def test_overdue_until_closed(stack, clock):
    template = stack.templates.create_template(
        org_id="org_a", alert_type="panic", name="Panic Response",
        steps=PANIC_STEPS, sla_minutes=5,
    )
    execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
    start = execution.started_at

    assert stack.sla.overdue(execution) is False
    clock.set(start + timedelta(minutes=5, seconds=1))
    assert stack.sla.overdue(execution) is True

    for order in (1, 2, 4):
        stack.engine.complete_step(execution.execution_id, order, "guard_1", evidence_ref="p")
    closed = stack.closure.close_execution(execution.execution_id, "guard_1")

    clock.advance(days=7)
    assert stack.sla.overdue(closed) is False
    assert stack.sla.status(closed).overdue is False
    assert template.sla_minutes == 5
