"""
Tests for guardline.audit -- hash-chained audit trail.

Covers: chain linking, tamper detection, org-scoped queries, export
format and contact-detail redaction.
"""

from __future__ import annotations

from guardline.audit import (
    AuditEntry,
    AuditEventType,
    AuditLog,
    redact_contact_details,
)


def _make_entry(
    org_id: str = "org_a",
    actor_id: str = "guard_1",
    event_type: AuditEventType = AuditEventType.STEP_COMPLETED,
    target_entity: str = "exec_1",
    metadata: dict | None = None,
) -> AuditEntry:
    return AuditEntry(
        org_id=org_id,
        actor_id=actor_id,
        event_type=event_type,
        target_entity=target_entity,
        metadata=metadata or {},
    )


class TestChain:
    def test_entries_are_linked(self):
        log = AuditLog()
        e1 = log.append(_make_entry(actor_id="a"))
        e2 = log.append(_make_entry(actor_id="b"))
        assert e1.previous_hash == ""
        assert e2.previous_hash == e1.compute_hash()
        assert log.verify_chain() == (True, None)

    def test_empty_log_is_valid(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_tampering_detected(self):
        log = AuditLog()
        for i in range(3):
            log.append(_make_entry(actor_id=f"a{i}"))
        log._entries[1].metadata = {"tampered": True}
        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)


class TestQuery:
    def test_scoped_by_org(self):
        log = AuditLog()
        log.record(AuditEventType.EXECUTION_STARTED, "org_a", "guard_1", "exec_1")
        log.record(AuditEventType.EXECUTION_STARTED, "org_b", "guard_2", "exec_2")
        assert [e.target_entity for e in log.query("org_a")] == ["exec_1"]

    def test_filter_by_target_and_event(self):
        log = AuditLog()
        log.record(AuditEventType.EXECUTION_STARTED, "org_a", "guard_1", "exec_1")
        log.record(AuditEventType.STEP_COMPLETED, "org_a", "guard_1", "exec_1")
        log.record(AuditEventType.STEP_COMPLETED, "org_a", "guard_1", "exec_2")
        results = log.query(
            "org_a", event_type=AuditEventType.STEP_COMPLETED, target_entity="exec_1"
        )
        assert len(results) == 1

    def test_query_returns_copies(self):
        log = AuditLog()
        log.append(_make_entry())
        log.query("org_a")[0].actor_id = "MUTATED"
        assert log.verify_chain() == (True, None)


class TestRedaction:
    def test_contact_keys_blanked(self):
        redacted = redact_contact_details({"phone": "0551234567", "step_order": 3})
        assert redacted["phone"] == "[REDACTED]"
        assert redacted["step_order"] == 3

    def test_contact_patterns_scrubbed_from_notes(self):
        redacted = redact_contact_details(
            {"notes": "Called 555-123-4567 and mailed ops@example.com"}
        )
        assert "555-123-4567" not in redacted["notes"]
        assert "[REDACTED-EMAIL]" in redacted["notes"]

    def test_nested_metadata(self):
        redacted = redact_contact_details({"outer": {"email": "a@b.io", "k": 1}})
        assert redacted["outer"] == {"email": "[REDACTED]", "k": 1}


class TestExport:
    def test_export_format_and_redaction(self):
        log = AuditLog()
        log.append(_make_entry(metadata={"notes": "reach me at 555-123-4567"}))
        log.append(_make_entry(org_id="org_b"))
        export = log.export_for_review("org_a")

        meta = export["export_metadata"]
        assert meta["entry_count"] == 1
        assert meta["chain_integrity"] == "VALID"
        assert "555-123-4567" not in export["entries"][0]["metadata"]["notes"]
        assert isinstance(export["entries"][0]["timestamp"], str)
