"""
Append-Only, Hash-Chained Audit Trail.

Template changes and every execution transition (start, step completion,
escalation, closure) are recorded as structured audit entries.  Entries
are linked by a SHA-256 hash chain so that modification after the fact is
detectable by ``verify_chain()``.

Queries and exports are scoped by ``org_id``.  Exports strip contact
details (phone numbers, e-mail addresses) from free-text metadata, since
responder notes often contain them.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditEventType(str, enum.Enum):
    """Auditable actions of the protocol engine."""

    # Template management
    TEMPLATE_CREATED = "TEMPLATE_CREATED"
    TEMPLATE_UPDATED = "TEMPLATE_UPDATED"
    TEMPLATE_DELETED = "TEMPLATE_DELETED"
    TEMPLATES_SEEDED = "TEMPLATES_SEEDED"

    # Execution lifecycle
    EXECUTION_STARTED = "EXECUTION_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    EXECUTION_ESCALATED = "EXECUTION_ESCALATED"
    EXECUTION_CLOSED = "EXECUTION_CLOSED"
    CLOSURE_ROLLED_BACK = "CLOSURE_ROLLED_BACK"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


class AuditEntry(BaseModel):
    """A single audit record with a link to its predecessor."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    org_id: str = Field(..., description="Organization scope of the entry.")
    actor_id: str = Field(..., description="Who performed the action.")
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Template or execution identifier the action applied to.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "org_id": self.org_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Contact-detail redaction
# ---------------------------------------------------------------------------

_CONTACT_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+?\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"),
}

_CONTACT_KEYS = {"email", "phone", "mobile", "address"}


def redact_contact_details(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with contact details replaced.

    Keys that name a contact field are blanked entirely; string values are
    scrubbed of anything that looks like a phone number or e-mail address.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _CONTACT_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            scrubbed = value
            for kind, pattern in _CONTACT_PATTERNS.items():
                scrubbed = pattern.sub(f"[REDACTED-{kind.upper()}]", scrubbed)
            redacted[key] = scrubbed
        elif isinstance(value, dict):
            redacted[key] = redact_contact_details(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``append`` is serialized with a lock so
    that concurrent writers never fork the chain.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the chain and store it."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        org_id: str,
        actor_id: str,
        target_entity: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        return self.append(AuditEntry(
            org_id=org_id,
            actor_id=actor_id,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first bad entry, or ``None``.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = "" if i == 0 else self._entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        org_id: str,
        event_type: Optional[AuditEventType] = None,
        target_entity: Optional[str] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Return copies of the matching entries for one organization."""
        results = []
        for entry in self._entries:
            if entry.org_id != org_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        org_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, redacted export for one organization."""
        entries = self.query(org_id, time_start=time_start, time_end=time_end)

        exported = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_contact_details(entry.metadata)
            exported.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "org_id": org_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": exported,
        }

    def __len__(self) -> int:
        return len(self._entries)
