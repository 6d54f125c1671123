"""
Walkthrough: Working a Panic Alert from Start to Closure
========================================================

This script drives the protocol engine through one synthetic incident at
a security-managed site.  No real people, sites or contact details are
used.

Steps demonstrated:
  1. Load organization settings from YAML
  2. Seed the default protocol templates for the organization
  3. Start an execution for a panic alert
  4. Complete checklist steps (out of order, with photo evidence)
  5. Attempt an early closure and inspect why it is refused
  6. Escalate, then close and resolve the alert
  7. Check the SLA, generate an execution report, export the audit log

Usage:
    python -m examples.alert_walkthrough
    # or: python examples/alert_walkthrough.py
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from guardline.alerts import InMemoryAlertStore
from guardline.audit import AuditLog
from guardline.closure import ClosureGate
from guardline.config import SettingsRegistry, load_settings_from_yaml
from guardline.errors import ClosurePreconditionError
from guardline.escalation import EscalationManager
from guardline.execution import ProtocolExecutionEngine
from guardline.models import Alert, AlertType
from guardline.report import generate_execution_report
from guardline.sla import SlaTracker
from guardline.templates import TemplateStore


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    _banner("Guardline Walkthrough: Panic Alert")

    # ------------------------------------------------------------------
    # Step 1: Organization settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Organization Settings")

    settings = SettingsRegistry()
    for entry in load_settings_from_yaml(Path(__file__).parent / "org_settings.yaml"):
        settings.register(entry)
    org_id = "plant_riyadh"
    org_settings = settings.get(org_id)
    print(f"Registered orgs: {settings.list_orgs()}")
    print(f"  {org_id}: photo evidence enforced = {org_settings.enforce_photo_evidence}")

    # ------------------------------------------------------------------
    # Step 2: Wire the engine and seed templates
    # ------------------------------------------------------------------
    _banner("Step 2: Seed Default Protocol Templates")

    audit_log = AuditLog()
    alerts = InMemoryAlertStore()
    templates = TemplateStore(audit_log, settings)
    engine = ProtocolExecutionEngine(templates, audit_log)
    escalation = EscalationManager(engine, audit_log)
    closure = ClosureGate(engine, alerts, audit_log, settings)
    sla = SlaTracker(engine, settings)

    for template in templates.seed_defaults(org_id, actor_id="admin_1"):
        print(f"  {template.alert_type:<16} {len(template.steps):>2} steps  "
              f"SLA {template.sla_minutes} min  {template.name}")

    # ------------------------------------------------------------------
    # Step 3: Start an execution
    # ------------------------------------------------------------------
    _banner("Step 3: Start Execution for a Panic Alert")

    alert = alerts.add(Alert(org_id=org_id, alert_type=AlertType.PANIC.value))
    execution = engine.start_execution(alert, actor_id="guard_1")
    steps = engine.effective_steps(execution)
    print(f"Execution {execution.execution_id} ({execution.status.value})")
    for step in steps:
        flags = []
        if step.is_required:
            flags.append("required")
        if step.photo_required:
            flags.append("photo")
        print(f"  {step.order}. {step.title} [{', '.join(flags) or 'optional'}]")

    # ------------------------------------------------------------------
    # Step 4: Complete steps
    # ------------------------------------------------------------------
    _banner("Step 4: Complete Checklist Steps")

    for order in (2, 1, 3):
        engine.complete_step(execution.execution_id, order, actor_id="guard_1")
    execution = engine.get_execution(execution.execution_id)
    print(f"Progress: {engine.progress(execution).percent_complete:.0f}%")

    # ------------------------------------------------------------------
    # Step 5: Early closure is refused
    # ------------------------------------------------------------------
    _banner("Step 5: Attempt Early Closure")

    print(f"Eligibility: {closure.check_closure(execution.execution_id).reason}")
    try:
        closure.close_execution(execution.execution_id, actor_id="guard_1")
    except ClosurePreconditionError as exc:
        print(f"Refused. Missing required steps: {exc.missing_required_steps}")

    # ------------------------------------------------------------------
    # Step 6: Escalate, finish and close
    # ------------------------------------------------------------------
    _banner("Step 6: Escalate and Close")

    execution = escalation.escalate(
        execution.execution_id, actor_id="guard_1",
        reason="Person unresponsive", escalate_to="supervisor_1",
    )
    print(f"Escalated to {execution.escalated_to}. State: {execution.status.value}")

    for step in steps:
        if step.is_required and not engine.is_step_completed(execution, step.order):
            evidence = "photo://synthetic/1" if step.photo_required else None
            execution = engine.complete_step(
                execution.execution_id, step.order, actor_id="supervisor_1",
                evidence_ref=evidence,
            )

    execution = closure.close_execution(
        execution.execution_id, actor_id="supervisor_1",
        notes="Synthetic resolution: person escorted to medical bay.",
    )
    print(f"Closed. State: {execution.status.value}")
    print(f"Alert resolved at: {alerts.get_alert(alert.alert_id).resolved_at}")

    # ------------------------------------------------------------------
    # Step 7: SLA, report and audit export
    # ------------------------------------------------------------------
    _banner("Step 7: SLA, Execution Report and Audit Export")

    status = sla.status(execution)
    print(f"SLA {status.sla_minutes} min, overdue: {status.overdue}")

    report = generate_execution_report(execution, steps, status)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    export = audit_log.export_for_review(org_id=org_id)
    print(json.dumps(export["export_metadata"], indent=2))

    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")


if __name__ == "__main__":
    main()
