"""
Per-Organization Engine Settings.

Each organization running the protocol engine can tune how strictly the
checklist is enforced.  The settings cover the questions that product
owners answer differently per deployment:

* whether only one template per alert type may be active at a time,
* whether photo evidence is a hard closure requirement,
* whether an escalated execution can still be closed through the normal
  required-steps gate,
* whether one SLA target overrides the default catalog's per-type SLAs.

Settings are validated pydantic objects, held in a ``SettingsRegistry``
keyed by ``org_id`` and optionally loaded from YAML.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Protocol engine behaviour for a single organization."""

    org_id: str = Field(
        ...,
        min_length=1,
        description="Organization these settings apply to.",
    )
    default_sla_minutes: Optional[int] = Field(
        default=None,
        gt=0,
        description=(
            "SLA target used when an execution has no template attached "
            "(default catalog in use).  None keeps the catalog's per-type "
            "SLA.  Must be > 0 when set."
        ),
    )
    enforce_single_active: bool = Field(
        default=False,
        description=(
            "When true, at most one non-deleted template per alert type may "
            "be active; activating a second one is rejected.  When false, the "
            "most recently created active template wins."
        ),
    )
    enforce_photo_evidence: bool = Field(
        default=False,
        description=(
            "When true, steps flagged photo_required must carry an evidence "
            "reference before the execution can be closed.  When false the "
            "flag is tracked but not enforced."
        ),
    )
    allow_close_when_escalated: bool = Field(
        default=True,
        description=(
            "When true, an escalated execution closes through the normal "
            "required-steps gate.  When false, escalation is a one-way exit "
            "to an externally resolved process and closure is refused."
        ),
    )


DEFAULT_SETTINGS = EngineSettings(org_id="default")
"""Settings applied to organizations that have not registered their own."""


# ---------------------------------------------------------------------------
# Registry (multi-tenant)
# ---------------------------------------------------------------------------

class SettingsRegistry:
    """In-memory registry of ``EngineSettings`` keyed by ``org_id``.

    Lookups return deep copies; mutate through ``update()``.
    """

    def __init__(self) -> None:
        self._settings: dict[str, EngineSettings] = {}

    def register(self, settings: EngineSettings) -> None:
        """Register settings for a new organization.

        Raises:
            ValueError: If ``org_id`` is already registered.
        """
        if settings.org_id in self._settings:
            raise ValueError(
                f"Settings for org_id '{settings.org_id}' already registered. "
                "Use update() to modify existing settings."
            )
        self._settings[settings.org_id] = copy.deepcopy(settings)
        logger.info("Registered engine settings for org %s", settings.org_id)

    def get(self, org_id: str) -> EngineSettings:
        """Return the settings for ``org_id``.

        Raises:
            KeyError: If nothing is registered for ``org_id``.
        """
        if org_id not in self._settings:
            raise KeyError(f"No settings registered for org_id '{org_id}'")
        return copy.deepcopy(self._settings[org_id])

    def get_or_default(self, org_id: str) -> EngineSettings:
        """Return the org's settings, or ``DEFAULT_SETTINGS`` re-keyed to it."""
        if org_id in self._settings:
            return copy.deepcopy(self._settings[org_id])
        return DEFAULT_SETTINGS.model_copy(update={"org_id": org_id})

    def update(self, settings: EngineSettings) -> None:
        """Replace the settings of an already registered organization.

        Raises:
            KeyError: If ``org_id`` is not registered.
        """
        if settings.org_id not in self._settings:
            raise KeyError(
                f"Cannot update: no settings registered for org_id '{settings.org_id}'"
            )
        self._settings[settings.org_id] = copy.deepcopy(settings)
        logger.info("Updated engine settings for org %s", settings.org_id)

    def list_orgs(self) -> list[str]:
        return sorted(self._settings.keys())

    def __len__(self) -> int:
        return len(self._settings)

    def __contains__(self, org_id: str) -> bool:
        return org_id in self._settings


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> list[EngineSettings]:
    """Load organization settings from a YAML file.

    Expected structure::

        organizations:
          - org_id: "plant_riyadh"
            default_sla_minutes: 8
            enforce_photo_evidence: true

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the top-level structure is wrong.
        pydantic.ValidationError: If an entry fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "organizations" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'organizations' key with a list of settings objects."
        )

    entries = raw["organizations"]
    if not isinstance(entries, list):
        raise ValueError("'organizations' must be a list of settings objects.")

    loaded: list[EngineSettings] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Settings entry at index {idx} must be a mapping.")
        loaded.append(EngineSettings(**entry))

    logger.info("Loaded %d organization settings from %s", len(loaded), path)
    return loaded
