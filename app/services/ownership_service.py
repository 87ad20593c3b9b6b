from __future__ import annotations

import logging
from dataclasses import dataclass

from app.services.conflict_detector import ConflictCheckResult, PendingUser, equity_conflicts
from app.services.errors import NotFoundError, NotMatchedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalResult:
    approved: bool
    member_id: str
    property_unit_id: str
    ownership_id: str | None = None
    conflict: ConflictCheckResult | None = None


def _initial_share_ratio(pre: dict) -> float | None:
    if pre.get("building_unit_id") and pre.get("building_share_ratio") is not None:
        return float(pre["building_share_ratio"])
    if pre.get("land_share_ratio") is not None:
        return float(pre["land_share_ratio"])
    return None


def approve_pre_registered_member(repo, pre_member_id: str) -> ApprovalResult:
    """Promote a matched pre-registered member to canonical ownership.

    When the unit already has another equity holder nothing becomes canonical; the
    conflict is returned for an operator to resolve.
    """
    with repo.transaction():
        pre = repo.get_pre_registered_member(pre_member_id)
        if not pre:
            raise NotFoundError(f"pre-registered member not found: {pre_member_id}")
        if pre.get("match_status") != "matched" or not pre.get("pnu"):
            raise NotMatchedError("pre-registered member is not matched to a parcel")

        member = repo.get_member(pre["member_id"]) if pre.get("member_id") else None
        if member is None:
            member = repo.insert_member(
                union_id=pre["union_id"],
                name=pre["owner_name"],
                phone=pre.get("phone"),
                resident_address=pre.get("resident_address"),
                property_address=pre.get("property_address"),
                notes=pre.get("notes"),
            )
            repo.update_pre_registered_member(pre_member_id, {"member_id": member["id"]})
        member_id = str(member["id"])

        unit = repo.get_or_create_property_unit(
            union_id=pre["union_id"],
            pnu=pre["pnu"],
            building_unit_id=pre.get("building_unit_id"),
            dong=pre.get("dong"),
            ho=pre.get("ho"),
            address=pre.get("matched_address") or pre.get("property_address"),
        )
        unit = repo.lock_property_unit(unit["id"])
        unit_id = str(unit["id"])
        ownerships = repo.fetch_active_ownerships(unit_id)

        held = next((row for row in ownerships if str(row["member_id"]) == member_id), None)
        if held is not None:
            return ApprovalResult(approved=True, member_id=member_id, property_unit_id=unit_id, ownership_id=str(held["id"]))

        conflicts = equity_conflicts(unit, ownerships, member_id)
        if conflicts:
            logger.info("approval_conflict pre_member_id=%s unit_id=%s conflicts=%s", pre_member_id, unit_id, len(conflicts))
            check = ConflictCheckResult(
                has_conflict=True,
                conflicts=conflicts,
                pending_user=PendingUser(
                    id=member_id,
                    name=member.get("name") or pre["owner_name"],
                    phone=member.get("phone"),
                    property_address=pre.get("property_address"),
                ),
            )
            return ApprovalResult(approved=False, member_id=member_id, property_unit_id=unit_id, conflict=check)

        ownership = repo.insert_ownership(
            property_unit_id=unit_id,
            member_id=member_id,
            ownership_type="OWNER",
            share_ratio=_initial_share_ratio(pre),
        )
        repo.update_member(member_id, {"status": "APPROVED"})

    return ApprovalResult(approved=True, member_id=member_id, property_unit_id=unit_id, ownership_id=str(ownership["id"]))
