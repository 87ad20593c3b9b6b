from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from app.services.parcel_registry import BuildingUnit, ParcelRecord, ParcelRegistry
from app.services.unit_normalizer import (
    compact_address_key,
    extract_lot_token,
    normalize_address,
    normalize_dong,
    normalize_ho,
)

logger = logging.getLogger(__name__)

MatchStatus = Literal["matched", "unmatched", "ambiguous"]


@dataclass(frozen=True)
class MatchOutcome:
    status: MatchStatus
    pnu: str | None = None
    building_unit_id: str | None = None
    matched_address: str | None = None
    candidate_pnus: tuple[str, ...] = ()
    reason: str | None = None

    @property
    def matched(self) -> bool:
        return self.status == "matched"

    def storage_fields(self) -> dict:
        """Columns persisted on a pre-registered member; ambiguous stores like unmatched."""
        return {
            "pnu": self.pnu if self.matched else None,
            "building_unit_id": self.building_unit_id if self.matched else None,
            "matched_address": self.matched_address if self.matched else None,
            "match_status": self.status,
            "match_reason": self.reason,
        }


def _dedupe(parcels: list[ParcelRecord]) -> list[ParcelRecord]:
    seen: set[str] = set()
    out: list[ParcelRecord] = []
    for parcel in parcels:
        if parcel.pnu in seen:
            continue
        seen.add(parcel.pnu)
        out.append(parcel)
    return out


def rank_parcels(address: str, parcels: list[ParcelRecord]) -> tuple[list[ParcelRecord], str]:
    """Narrow registry hits to the best tier: exact, containment, then lot number only."""
    key = compact_address_key(address)
    lot_token = extract_lot_token(address)

    exact = [p for p in parcels if compact_address_key(p.address) == key]
    if exact:
        return _dedupe(exact), "exact"

    contained = []
    for parcel in parcels:
        parcel_key = compact_address_key(parcel.address)
        if not (key in parcel_key or parcel_key in key):
            continue
        # "123-4" is a substring of "123-45"; require the lot numbers to agree.
        if lot_token and extract_lot_token(parcel.address) != lot_token:
            continue
        contained.append(parcel)
    if contained:
        return _dedupe(contained), "contains"

    if lot_token:
        same_lot = [p for p in parcels if extract_lot_token(p.address) == lot_token]
        if same_lot:
            return _dedupe(same_lot), "lot_number"
    return [], "none"


def _match_units(units: list[BuildingUnit], dong: str | None, ho: str | None) -> list[BuildingUnit]:
    hits = [u for u in units if (dong is None or u.dong == dong) and (ho is None or u.ho == ho)]
    if hits or dong is None or ho is None:
        return hits
    # Single-building parcels often carry no dong at all.
    return [u for u in units if u.dong is None and u.ho == ho]


class GisMatcher:
    def __init__(self, registry: ParcelRegistry):
        self.registry = registry

    def match(self, union_id: str, address: str | None, dong: str | None = None, ho: str | None = None) -> MatchOutcome:
        address_text = normalize_address(address)
        if not address_text:
            return MatchOutcome(status="unmatched", reason="missing property address")

        parcels, tier = rank_parcels(address_text, self.registry.search_parcels(union_id, address_text))
        if not parcels:
            return MatchOutcome(status="unmatched", reason="no parcel found for address")

        dong = normalize_dong(dong)
        ho = normalize_ho(ho)
        has_unit = dong is not None or ho is not None

        if len(parcels) == 1:
            parcel = parcels[0]
            if not has_unit:
                return MatchOutcome(status="matched", pnu=parcel.pnu, matched_address=parcel.address, reason=tier)
            hits = _match_units(self.registry.list_building_units([parcel.pnu]), dong, ho)
            if len(hits) == 1:
                return MatchOutcome(
                    status="matched",
                    pnu=parcel.pnu,
                    building_unit_id=hits[0].id,
                    matched_address=parcel.address,
                    reason=tier,
                )
            reason = "building unit not found" if not hits else "building unit not unique"
            return MatchOutcome(status="matched", pnu=parcel.pnu, matched_address=parcel.address, reason=reason)

        candidate_pnus = tuple(p.pnu for p in parcels)
        if not has_unit:
            logger.debug("gis_match_ambiguous address=%s candidates=%s", address_text, len(candidate_pnus))
            return MatchOutcome(
                status="ambiguous",
                candidate_pnus=candidate_pnus,
                reason=f"{len(candidate_pnus)} parcels match; dong/ho required",
            )

        hits = _match_units(self.registry.list_building_units(list(candidate_pnus)), dong, ho)
        if len(hits) == 1:
            parcel = next(p for p in parcels if p.pnu == hits[0].pnu)
            return MatchOutcome(
                status="matched",
                pnu=parcel.pnu,
                building_unit_id=hits[0].id,
                matched_address=parcel.address,
                reason=f"{tier}+unit",
            )
        return MatchOutcome(
            status="ambiguous",
            candidate_pnus=candidate_pnus,
            reason=f"{len(candidate_pnus)} parcels match; dong/ho did not disambiguate",
        )
