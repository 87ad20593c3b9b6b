from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from app.services.errors import NotFoundError

EQUITY_OWNERSHIP_TYPES = ("OWNER", "CO_OWNER")


@dataclass(frozen=True)
class ExistingOwner:
    user_id: str
    name: str
    phone: str | None
    ownership_type: str | None
    share_ratio: float | None
    status: str | None
    ownership_id: str | None = None


@dataclass(frozen=True)
class PropertyConflict:
    property_unit_id: str
    building_unit_id: str | None
    pnu: str | None
    dong: str | None
    ho: str | None
    address: str
    existing_owner: ExistingOwner


@dataclass(frozen=True)
class PendingUser:
    id: str
    name: str
    phone: str | None
    property_address: str | None


@dataclass(frozen=True)
class ConflictCheckResult:
    has_conflict: bool
    pending_user: PendingUser
    conflicts: list[PropertyConflict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _ratio(value: Any) -> float | None:
    return None if value is None else float(value)


def equity_conflicts(unit: dict[str, Any], ownerships: list[dict[str, Any]], pending_member_id: str) -> list[PropertyConflict]:
    """ACTIVE equity holders of the unit other than the pending person.

    Identity is the member id; an identical display name on a different member is
    still a conflict, and archived or delegate-only records never are.
    """
    conflicts: list[PropertyConflict] = []
    for row in ownerships:
        if row.get("status") != "ACTIVE":
            continue
        if row.get("ownership_type") not in EQUITY_OWNERSHIP_TYPES:
            continue
        if str(row["member_id"]) == str(pending_member_id):
            continue
        conflicts.append(
            PropertyConflict(
                property_unit_id=str(unit["id"]),
                building_unit_id=_str_or_none(unit.get("building_unit_id")),
                pnu=unit.get("pnu"),
                dong=unit.get("dong"),
                ho=unit.get("ho"),
                address=unit.get("address") or "",
                existing_owner=ExistingOwner(
                    user_id=str(row["member_id"]),
                    name=row.get("member_name") or "",
                    phone=row.get("member_phone"),
                    ownership_type=row.get("ownership_type"),
                    share_ratio=_ratio(row.get("share_ratio")),
                    status=row.get("member_status"),
                    ownership_id=_str_or_none(row.get("id")),
                ),
            )
        )
    return conflicts


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


class ConflictDetector:
    def __init__(self, repo):
        self.repo = repo

    def check(self, *, pending_member_id: str, property_unit_id: str) -> ConflictCheckResult:
        member = self.repo.get_member(pending_member_id)
        if not member:
            raise NotFoundError(f"member not found: {pending_member_id}")
        unit = self.repo.get_property_unit(property_unit_id)
        if not unit:
            raise NotFoundError(f"property unit not found: {property_unit_id}")

        conflicts = equity_conflicts(unit, self.repo.fetch_active_ownerships(property_unit_id), pending_member_id)
        return ConflictCheckResult(
            has_conflict=bool(conflicts),
            conflicts=conflicts,
            pending_user=PendingUser(
                id=str(member["id"]),
                name=member.get("name") or "",
                phone=member.get("phone"),
                property_address=member.get("property_address") or unit.get("address"),
            ),
        )
