from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class FunnelError(Exception):
    """Business failure rendered to the caller as {"ok": false, "error": code}."""

    status_code = 400

    def __init__(self, code: str, status_code: Optional[int] = None):
        super().__init__(code)
        self.code = code
        if status_code is not None:
            self.status_code = status_code


class HearingError(FunnelError):
    status_code = 400


INVALID_PLAN = "INVALID_PLAN"
INVALID_AREA_COUNT = "INVALID_AREA_COUNT"
INVALID_AREA_GROUPS_EXPLORER = "INVALID_AREA_GROUPS_EXPLORER"
INVALID_AREA_GROUPS_COUNT_CONNOISSEUR = "INVALID_AREA_GROUPS_COUNT_CONNOISSEUR"
DUPLICATE_AREA_GROUPS = "DUPLICATE_AREA_GROUPS"
INVALID_VIBES_COUNT = "INVALID_VIBES_COUNT"


# -----------------------------------------------------------------------------
# Preference model
# -----------------------------------------------------------------------------
class Plan(str, Enum):
    EXPLORER = "explorer"
    CONNOISSEUR = "connoisseur"

    @property
    def area_count(self) -> int:
        return 1 if self is Plan.EXPLORER else 4

    @property
    def display(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class Preferences:
    plan: Plan
    area_groups: tuple[str, ...]
    who: str
    vibes: tuple[str, ...] = ()
    no_preference: bool = False

    def to_metadata(self) -> dict[str, str]:
        """Flat Stripe metadata (string values only) plus the structured blob."""
        blob = {
            "plan": self.plan.value,
            "area_groups": list(self.area_groups),
            "who": self.who,
            "vibes": list(self.vibes),
            "no_preference": self.no_preference,
        }
        return {
            "plan": self.plan.value,
            "area_groups": ",".join(self.area_groups),
            "who": self.who,
            "vibes": ",".join(self.vibes),
            "no_preference": "true" if self.no_preference else "false",
            "hearing": json.dumps(blob, ensure_ascii=False, separators=(",", ":")),
        }


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------
# canonical name -> accepted aliases, tried in order after the canonical name
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "plan": (),
    "area_groups": ("areaGroups", "areas"),
    "who": (),
    "vibes": ("vibe",),
    "no_preference": ("noPreference",),
}

TRUTHY = {"true", "1", "yes", "on"}


def split_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value if v is not None]
    else:
        items = str(value).split(",")
    return [s.strip() for s in items if s and s.strip()]


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY


def _structured_blob(metadata: Mapping[str, Any]) -> dict[str, Any]:
    raw = metadata.get("hearing")
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        data = json.loads(str(raw))
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _lookup(source: Mapping[str, Any], canonical: str) -> Any:
    for key in (canonical, *FIELD_ALIASES[canonical]):
        value = source.get(key)
        if value not in (None, "", []):
            return value
    return None


def _field(blob: Mapping[str, Any], flat: Mapping[str, Any], canonical: str) -> Any:
    value = _lookup(blob, canonical)
    if value is None:
        value = _lookup(flat, canonical)
    return value


def parse_hearing(metadata: Mapping[str, Any]) -> Preferences:
    """Build a validated Preferences from checkout metadata or a purchase record.

    The structured ``hearing`` blob wins over flat fields key by key. Raises
    HearingError with the first failing rule's code.
    """
    blob = _structured_blob(metadata)

    raw_plan = str(_field(blob, metadata, "plan") or "").strip().lower()
    try:
        plan = Plan(raw_plan)
    except ValueError:
        raise HearingError(INVALID_PLAN) from None

    areas = split_tags(_field(blob, metadata, "area_groups"))
    if not areas:
        raise HearingError(INVALID_AREA_COUNT)
    if len(areas) != plan.area_count:
        if plan is Plan.EXPLORER:
            raise HearingError(INVALID_AREA_GROUPS_EXPLORER)
        raise HearingError(INVALID_AREA_GROUPS_COUNT_CONNOISSEUR)
    if len({a.casefold() for a in areas}) != len(areas):
        raise HearingError(DUPLICATE_AREA_GROUPS)

    # optional; empty means no companion match
    who = str(_field(blob, metadata, "who") or "").strip()

    no_preference = as_bool(_field(blob, metadata, "no_preference"))
    vibes = split_tags(_field(blob, metadata, "vibes"))
    if not no_preference and not 1 <= len(vibes) <= 2:
        raise HearingError(INVALID_VIBES_COUNT)

    return Preferences(
        plan=plan,
        area_groups=tuple(areas),
        who=who,
        vibes=tuple(vibes),
        no_preference=no_preference,
    )
