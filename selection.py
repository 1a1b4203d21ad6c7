from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Sequence

from hearing import FunnelError, Preferences, split_tags

INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"

EXPLORER_TOTAL = 7
CONNOISSEUR_TOTAL = 7
FAIRNESS_CAP = 3


class InsufficientInventory(FunnelError):
    status_code = 409

    def __init__(self, required: int, found: int):
        super().__init__(INSUFFICIENT_INVENTORY)
        self.required = required
        self.found = found


# -----------------------------------------------------------------------------
# Shop records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Shop:
    shop_id: str
    shop_name: str
    area_group: str = ""
    status: str = ""
    best_with: tuple[str, ...] = ()
    best_vibe: tuple[str, ...] = ()
    fields: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Shop":
        """Accepts a raw Airtable record ({"id", "fields"}) or a flat field dict."""
        flat = dict(record.get("fields") or {}) if "fields" in record else dict(record)
        if "id" in record and "fields" in record:
            flat.setdefault("record_id", record["id"])
        return cls(
            shop_id=str(flat.get("shop_id") or "").strip(),
            shop_name=str(flat.get("shop_name") or "").strip(),
            area_group=str(flat.get("area_group") or "").strip(),
            status=str(flat.get("status") or "").strip(),
            best_with=tuple(split_tags(flat.get("best_with"))),
            best_vibe=tuple(split_tags(flat.get("best_vibe"))),
            fields=flat,
        )


def _norm(tags: Iterable[str]) -> set[str]:
    return {t.strip().lower() for t in tags if t and t.strip()}


# -----------------------------------------------------------------------------
# Matcher
# -----------------------------------------------------------------------------
class MatchTier(Enum):
    BOTH = "both"
    COMPANION = "companion"
    VIBE = "vibe"
    ANY = "any"


def is_eligible(shop: Shop) -> bool:
    return shop.status.lower() == "active" and bool(shop.shop_id) and bool(shop.shop_name)


def matches_companion(shop: Shop, prefs: Preferences) -> bool:
    who = prefs.who.strip().lower()
    if not who:
        return False
    return who in _norm(shop.best_with)


def matches_vibe(shop: Shop, prefs: Preferences) -> bool:
    # an empty vibe list means "no constraint", not "reject everything"
    if prefs.no_preference or not prefs.vibes:
        return True
    return bool(_norm(shop.best_vibe) & _norm(prefs.vibes))


def score(shop: Shop, prefs: Preferences) -> int:
    return 2 * matches_companion(shop, prefs) + 2 * matches_vibe(shop, prefs)


def match_tier(shop: Shop, prefs: Preferences) -> MatchTier:
    companion = matches_companion(shop, prefs)
    vibe = matches_vibe(shop, prefs)
    if companion and vibe:
        return MatchTier.BOTH
    if companion:
        return MatchTier.COMPANION
    if vibe:
        return MatchTier.VIBE
    return MatchTier.ANY


def seeded_shuffle(items: Sequence[Any], seed: str) -> list[Any]:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    out = list(items)
    random.Random(int.from_bytes(digest[:8], "big")).shuffle(out)
    return out


# -----------------------------------------------------------------------------
# Allocation
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Pick:
    shop: Shop
    area: str
    tier: MatchTier


class _Picker:
    """Per-request pick list with shop_id dedup and per-area counts."""

    def __init__(self, target: int):
        self.target = target
        self.picks: list[Pick] = []
        self.seen: set[str] = set()
        self.per_area: dict[str, int] = {}

    @property
    def full(self) -> bool:
        return len(self.picks) >= self.target

    def take(self, shop: Shop, area: str, tier: MatchTier) -> bool:
        if self.full or shop.shop_id in self.seen:
            return False
        self.seen.add(shop.shop_id)
        self.picks.append(Pick(shop=shop, area=area, tier=tier))
        self.per_area[area] = self.per_area.get(area, 0) + 1
        return True


def explorer_passes(prefs: Preferences) -> list[tuple[MatchTier, Callable[[Shop], bool]]]:
    def both(s: Shop) -> bool:
        return matches_companion(s, prefs) and matches_vibe(s, prefs)

    def companion(s: Shop) -> bool:
        return matches_companion(s, prefs)

    def vibe(s: Shop) -> bool:
        return matches_vibe(s, prefs)

    return [
        (MatchTier.BOTH, both),
        (MatchTier.COMPANION, companion),
        (MatchTier.VIBE, vibe),
        (MatchTier.ANY, lambda s: True),
    ]


def allocate_explorer(pool: Sequence[Shop], prefs: Preferences, target: int = EXPLORER_TOTAL) -> list[Pick]:
    area = prefs.area_groups[0] if prefs.area_groups else ""
    eligible = [s for s in pool if is_eligible(s)]
    picker = _Picker(target)
    for tier, predicate in explorer_passes(prefs):
        for shop in eligible:
            if picker.full:
                return picker.picks
            if predicate(shop):
                picker.take(shop, area, tier)
    return picker.picks


def allocate_connoisseur(
    pools: Mapping[str, Sequence[Shop]],
    prefs: Preferences,
    target: int = CONNOISSEUR_TOTAL,
    fairness_cap: int = FAIRNESS_CAP,
) -> list[Pick]:
    """Spread ``target`` picks over the selected areas.

    Stage 1 gives each area (in selection order) its share of the target from
    its best-scored records. Stage 2 fills by global score while skipping areas
    already holding ``fairness_cap`` picks. Stage 3 ignores the cap.
    """
    areas = list(prefs.area_groups)
    if not areas:
        return []
    share = max(1, target // len(areas))
    picker = _Picker(target)

    ranked: dict[str, list[Shop]] = {}
    for area in areas:
        eligible = [s for s in pools.get(area, ()) if is_eligible(s)]
        ranked[area] = sorted(eligible, key=lambda s: score(s, prefs), reverse=True)

    for area in areas:
        taken = 0
        for shop in ranked[area]:
            if taken >= share or picker.full:
                break
            if picker.take(shop, area, match_tier(shop, prefs)):
                taken += 1

    merged = [(area, shop) for area in areas for shop in ranked[area]]
    merged.sort(key=lambda pair: score(pair[1], prefs), reverse=True)

    for area, shop in merged:
        if picker.full:
            return picker.picks
        if picker.per_area.get(area, 0) >= fairness_cap:
            continue
        picker.take(shop, area, match_tier(shop, prefs))

    for area, shop in merged:
        if picker.full:
            break
        picker.take(shop, area, match_tier(shop, prefs))
    return picker.picks


def ensure_inventory(picks: Sequence[Pick], required: int) -> None:
    if len(picks) < required:
        raise InsufficientInventory(required=required, found=len(picks))


# -----------------------------------------------------------------------------
# Reasons
# -----------------------------------------------------------------------------
def _label(tag: str) -> str:
    return tag.replace("_", " ").strip()


def _vibe_label(shop: Shop, prefs: Preferences) -> str:
    wanted = _norm(prefs.vibes)
    for tag in shop.best_vibe:
        if tag.strip().lower() in wanted:
            return _label(tag)
    if shop.best_vibe:
        return _label(shop.best_vibe[0])
    return "easygoing"


def reason_for(pick: Pick, prefs: Preferences) -> str:
    area = pick.area or pick.shop.area_group
    who = _label(prefs.who)
    if pick.tier is MatchTier.BOTH:
        return f"Best for {who} + {_vibe_label(pick.shop, prefs)} in {area}."
    if pick.tier is MatchTier.COMPANION:
        return f"Fits {who} in {area}."
    if pick.tier is MatchTier.VIBE:
        vibe = _vibe_label(pick.shop, prefs)
        return f"{vibe[:1].upper()}{vibe[1:]} vibe pick in {area}."
    return f"Local daily staple in {area}."


def assemble(picks: Sequence[Pick], prefs: Preferences) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for pick in picks:
        item = dict(pick.shop.fields)
        item["reason"] = reason_for(pick, prefs)
        out.append(item)
    return out
