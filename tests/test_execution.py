"""
Tests for guardline.execution -- Protocol Execution Engine.

Covers: starting on an active template or the default catalog, explicit
templates, one open execution per alert (including concurrent starts),
step completion replacement, unknown steps, closed executions, required
step predicates, historical template references and progress counters.
"""

from __future__ import annotations

import threading

import pytest

from guardline.audit import AuditEventType
from guardline.errors import (
    ActorValidationError,
    ExecutionConflictError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    OrgMismatchError,
    PreconditionFailedError,
    StepNotFoundError,
    TemplateNotFoundError,
)
from guardline.execution import all_required_steps_complete, missing_required_steps
from guardline.models import ExecutionStatus, ProtocolStep


def _make_template(stack, alert_type: str = "panic", org_id: str = "org_a", sla_minutes: int = 5):
    return stack.templates.create_template(
        org_id=org_id,
        alert_type=alert_type,
        name="Panic Response",
        sla_minutes=sla_minutes,
        steps=[
            {"title": "Locate person", "is_required": True},
            {"title": "Assess danger", "is_required": True},
            {"title": "Request backup", "is_required": False},
            {"title": "Document", "is_required": True, "photo_required": True},
        ],
    )


# ---------------------------------------------------------------------------
# 1. Starting executions
# ---------------------------------------------------------------------------

class TestStartExecution:
    def test_start_uses_active_template(self, stack, clock):
        template = _make_template(stack)
        alert = stack.new_alert("panic")

        execution = stack.engine.start_execution(alert, "guard_1")

        assert execution.status == ExecutionStatus.IN_PROGRESS
        assert execution.template_id == template.template_id
        assert execution.started_at == clock()
        assert execution.started_by == "guard_1"
        assert execution.steps_completed == []

    def test_start_without_template_uses_default_catalog(self, stack):
        alert = stack.new_alert("medical")
        execution = stack.engine.start_execution(alert, "guard_1")
        assert execution.template_id is None
        assert len(stack.engine.effective_steps(execution)) == 10

    def test_custom_alert_type_falls_back_to_general(self, stack):
        alert = stack.new_alert("gas_leak")
        execution = stack.engine.start_execution(alert, "guard_1")
        steps = stack.engine.effective_steps(execution)
        assert [s.title for s in steps][0] == "Assess the situation"
        assert len(steps) == 6

    def test_explicit_template_overrides_active(self, stack):
        _make_template(stack)
        explicit = stack.templates.create_template(
            org_id="org_a", alert_type="panic", name="Drill",
            steps=[{"title": "Only step"}], is_active=False,
        )
        alert = stack.new_alert("panic")
        execution = stack.engine.start_execution(alert, "guard_1", template=explicit)
        assert execution.template_id == explicit.template_id

    def test_explicit_template_from_other_org_rejected(self, stack):
        foreign = _make_template(stack, org_id="org_b")
        alert = stack.new_alert("panic", org_id="org_a")
        with pytest.raises(OrgMismatchError):
            stack.engine.start_execution(alert, "guard_1", template=foreign)

    def test_explicit_deleted_template_rejected(self, stack):
        template = _make_template(stack)
        stack.templates.delete_template(template.template_id)
        with pytest.raises(TemplateNotFoundError):
            stack.engine.start_execution(stack.new_alert("panic"), "guard_1", template=template)

    def test_start_is_audited(self, stack):
        alert = stack.new_alert("fire")
        execution = stack.engine.start_execution(alert, "guard_1")
        events = stack.audit_log.query("org_a", event_type=AuditEventType.EXECUTION_STARTED)
        assert events[0].target_entity == execution.execution_id
        assert events[0].metadata["default_catalog"] is True

    @pytest.mark.parametrize("actor_id", ["", "  ", None])
    def test_start_requires_actor(self, stack, actor_id):
        alert = stack.new_alert("panic")
        with pytest.raises(ActorValidationError) as exc:
            stack.engine.start_execution(alert, actor_id)
        assert exc.value.field == "actor_id"
        assert stack.engine.get_open_execution(alert.alert_id) is None
        assert len(stack.audit_log) == 0


# ---------------------------------------------------------------------------
# 2. One open execution per alert
# ---------------------------------------------------------------------------

class TestOneOpenExecutionPerAlert:
    def test_second_start_conflicts(self, stack):
        alert = stack.new_alert("panic")
        first = stack.engine.start_execution(alert, "guard_1")

        with pytest.raises(ExecutionConflictError) as exc:
            stack.engine.start_execution(alert, "guard_2")
        assert exc.value.existing_execution_id == first.execution_id
        assert isinstance(exc.value, PreconditionFailedError)

    def test_new_execution_allowed_after_close(self, stack):
        alert = stack.new_alert("general")
        first = stack.engine.start_execution(alert, "guard_1")
        for order in (1, 2, 4, 5, 6):
            stack.engine.complete_step(first.execution_id, order, "guard_1")
        stack.closure.close_execution(first.execution_id, "guard_1")

        second = stack.engine.start_execution(alert, "guard_1")
        assert second.execution_id != first.execution_id
        assert stack.engine.get_open_execution(alert.alert_id).execution_id == second.execution_id

    def test_concurrent_starts_produce_exactly_one_execution(self, stack):
        alert = stack.new_alert("panic")
        barrier = threading.Barrier(8)
        started, conflicts = [], []

        def worker(i: int) -> None:
            barrier.wait()
            try:
                started.append(stack.engine.start_execution(alert, f"guard_{i}"))
            except ExecutionConflictError as exc:
                conflicts.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(started) == 1
        assert len(conflicts) == 7
        assert all(c.existing_execution_id == started[0].execution_id for c in conflicts)
        assert len(stack.engine.list_executions("org_a")) == 1


# ---------------------------------------------------------------------------
# 3. Completing steps
# ---------------------------------------------------------------------------

class TestCompleteStep:
    def test_complete_records_actor_time_notes_and_evidence(self, stack, clock):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        clock.advance(minutes=1)

        updated = stack.engine.complete_step(
            execution.execution_id, 4, "guard_2", notes="north gate", evidence_ref="p1"
        )
        completion = updated.completion_for(4)
        assert completion.completed_by == "guard_2"
        assert completion.completed_at == clock()
        assert completion.notes == "north gate"
        assert completion.evidence_ref == "p1"

    def test_repeat_completion_replaces_record(self, stack, clock):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")

        stack.engine.complete_step(execution.execution_id, 2, "guard_1", notes="first")
        clock.advance(seconds=30)
        updated = stack.engine.complete_step(execution.execution_id, 2, "guard_2", notes="second")

        records = [c for c in updated.steps_completed if c.step_order == 2]
        assert len(records) == 1
        assert records[0].completed_by == "guard_2"
        assert records[0].notes == "second"
        assert records[0].completed_at == clock()

    def test_steps_may_complete_in_any_order(self, stack):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        for order in (4, 1, 3):
            execution = stack.engine.complete_step(execution.execution_id, order, "guard_1")
        assert [c.step_order for c in execution.steps_completed] == [1, 3, 4]

    def test_unknown_step_rejected(self, stack):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        with pytest.raises(StepNotFoundError) as exc:
            stack.engine.complete_step(execution.execution_id, 5, "guard_1")
        assert exc.value.valid_orders == [1, 2, 3, 4]
        assert stack.engine.get_execution(execution.execution_id).steps_completed == []

    def test_unknown_execution_not_found(self, stack):
        with pytest.raises(ExecutionNotFoundError):
            stack.engine.complete_step("nope", 1, "guard_1")

    @pytest.mark.parametrize("actor_id", ["", "  ", None])
    def test_completion_requires_actor(self, stack, actor_id):
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        with pytest.raises(ActorValidationError):
            stack.engine.complete_step(execution.execution_id, 1, actor_id)
        assert stack.engine.get_execution(execution.execution_id).steps_completed == []

    def test_closed_execution_rejects_completion(self, stack):
        alert = stack.new_alert("general")
        execution = stack.engine.start_execution(alert, "guard_1")
        for order in (1, 2, 4, 5, 6):
            stack.engine.complete_step(execution.execution_id, order, "guard_1")
        stack.closure.close_execution(execution.execution_id, "guard_1")

        with pytest.raises(InvalidTransitionError):
            stack.engine.complete_step(execution.execution_id, 3, "guard_1")

    def test_escalated_execution_still_accepts_completion(self, stack):
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        stack.escalation.escalate(execution.execution_id, "guard_1", "armed intruder")
        updated = stack.engine.complete_step(execution.execution_id, 1, "guard_1")
        assert updated.status == ExecutionStatus.ESCALATED
        assert stack.engine.is_step_completed(updated, 1)

    def test_concurrent_same_step_leaves_single_record(self, stack):
        execution = stack.engine.start_execution(stack.new_alert("fire"), "guard_1")
        barrier = threading.Barrier(6)

        def worker(i: int) -> None:
            barrier.wait()
            stack.engine.complete_step(execution.execution_id, 3, f"guard_{i}")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = stack.engine.get_execution(execution.execution_id)
        assert [c.step_order for c in final.steps_completed] == [3]

    def test_template_edit_after_start_keeps_reference(self, stack):
        template = _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        stack.templates.delete_template(template.template_id)

        assert stack.engine.get_execution(execution.execution_id).template_id == template.template_id
        stack.engine.complete_step(execution.execution_id, 4, "guard_1")


# ---------------------------------------------------------------------------
# 4. Required-step predicates
# ---------------------------------------------------------------------------

class TestRequiredSteps:
    def test_predicate_ignores_optional_steps(self, stack):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        steps = stack.engine.effective_steps(execution)

        assert all_required_steps_complete(execution, steps) is False
        for order in (1, 2):
            execution = stack.engine.complete_step(execution.execution_id, order, "guard_1")
        assert missing_required_steps(execution, steps) == [4]

        execution = stack.engine.complete_step(execution.execution_id, 3, "guard_1")
        assert stack.engine.all_required_steps_complete(execution) is False

        execution = stack.engine.complete_step(execution.execution_id, 4, "guard_1")
        assert stack.engine.all_required_steps_complete(execution) is True

    def test_all_optional_checklist_is_complete(self, stack):
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        steps = [ProtocolStep(order=1, title="Optional", is_required=False)]
        assert all_required_steps_complete(execution, steps) is True

    def test_progress_counts(self, stack):
        _make_template(stack)
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        execution = stack.engine.complete_step(execution.execution_id, 1, "guard_1")
        execution = stack.engine.complete_step(execution.execution_id, 3, "guard_1")

        progress = stack.engine.progress(execution)
        assert progress.total_steps == 4
        assert progress.completed_steps == 2
        assert progress.required_steps == 3
        assert progress.completed_required_steps == 1
        assert progress.percent_complete == 50.0


class TestQueries:
    def test_list_executions_filters_by_status(self, stack):
        a = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        stack.engine.start_execution(stack.new_alert("fire"), "guard_1")
        stack.escalation.escalate(a.execution_id, "guard_1", "backup needed")

        escalated = stack.engine.list_executions("org_a", status=ExecutionStatus.ESCALATED)
        assert [e.execution_id for e in escalated] == [a.execution_id]
        assert stack.engine.list_executions("org_b") == []

    def test_returned_executions_are_copies(self, stack):
        execution = stack.engine.start_execution(stack.new_alert("panic"), "guard_1")
        execution.status = ExecutionStatus.CLOSED
        assert stack.engine.get_execution(execution.execution_id).status == ExecutionStatus.IN_PROGRESS
