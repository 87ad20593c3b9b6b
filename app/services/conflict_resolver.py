from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.services.conflict_detector import EQUITY_OWNERSHIP_TYPES
from app.services.errors import ConflictResolutionError

logger = logging.getLogger(__name__)

RATIO_TOLERANCE = 1e-6
FULL_SHARE = 100.0
NOTES_SEPARATOR = "\n---\n"


@dataclass(frozen=True)
class ConflictResolutionResult:
    success: bool
    message: str
    resolved_user_id: str | None = None


def _ratio(value: Any) -> float:
    # A null ratio is a delegate or "undefined" share and adds nothing to the sum.
    return 0.0 if value is None else float(value)


def merge_notes(current: str | None, incoming: str | None) -> str | None:
    current = (current or "").strip()
    incoming = (incoming or "").strip()
    if not incoming or incoming in current:
        return current or None
    if not current:
        return incoming
    return f"{current}{NOTES_SEPARATOR}{incoming}"


def equity_total(ownerships: list[dict[str, Any]], *, exclude_ids: set[str] = frozenset()) -> float:
    return sum(
        _ratio(row.get("share_ratio"))
        for row in ownerships
        if row.get("status") == "ACTIVE"
        and row.get("ownership_type") in EQUITY_OWNERSHIP_TYPES
        and str(row["id"]) not in exclude_ids
    )


def _check_equity(total: float) -> None:
    if total > FULL_SHARE + RATIO_TOLERANCE:
        raise ConflictResolutionError(f"share ratios on the unit would total {total:g}%, above 100%", status_code=400)


class ConflictResolver:
    """Applies one operator-chosen resolution to a conflicted property unit atomically."""

    def __init__(self, repo):
        self.repo = repo

    def resolve(self, request) -> ConflictResolutionResult:
        if str(request.pending_user_id) == str(request.existing_user_id):
            raise ConflictResolutionError("pending and existing user are the same member", status_code=400)

        handlers = {
            "update": self._apply_update,
            "transfer": self._apply_transfer,
            "add_co_owner": self._apply_add_co_owner,
            "add_proxy": self._apply_add_proxy,
        }
        handler = handlers.get(request.action)
        if handler is None:
            raise ConflictResolutionError(f"unsupported resolution action: {request.action}", status_code=400)

        with self.repo.transaction():
            unit = self.repo.lock_property_unit(request.conflicted_property_unit_id)
            if not unit:
                raise ConflictResolutionError("property unit not found", status_code=404)
            pending = self.repo.get_member(request.pending_user_id)
            existing = self.repo.get_member(request.existing_user_id)
            if not pending or not existing:
                raise ConflictResolutionError("member not found", status_code=404)

            ownerships = self.repo.fetch_active_ownerships(request.conflicted_property_unit_id)
            existing_record = next(
                (
                    row
                    for row in ownerships
                    if str(row["member_id"]) == str(request.existing_user_id)
                    and row.get("status") == "ACTIVE"
                    and row.get("ownership_type") in EQUITY_OWNERSHIP_TYPES
                ),
                None,
            )
            if existing_record is None:
                raise ConflictResolutionError(
                    "existing owner no longer holds an active share on this unit; re-check the conflict",
                    status_code=409,
                )
            if any(str(row["member_id"]) == str(request.pending_user_id) for row in ownerships):
                raise ConflictResolutionError("pending member already holds this unit", status_code=409)

            result = handler(request, unit, pending, existing, existing_record, ownerships)

        logger.info(
            "conflict_resolved action=%s unit_id=%s pending=%s existing=%s",
            request.action,
            request.conflicted_property_unit_id,
            request.pending_user_id,
            request.existing_user_id,
        )
        return result

    def _history(self, unit, change_type, *, from_member=None, to_member=None, previous=None, new=None, notes=None):
        self.repo.insert_ownership_history(
            property_unit_id=str(unit["id"]),
            change_type=change_type,
            from_member_id=from_member,
            to_member_id=to_member,
            previous_share_ratio=previous,
            new_share_ratio=new,
            notes=notes,
        )

    def _apply_update(self, request, unit, pending, existing, existing_record, ownerships):
        fields = {
            key: pending.get(key)
            for key in ("name", "phone", "resident_address")
            if pending.get(key)
        }
        fields["notes"] = merge_notes(existing.get("notes"), pending.get("notes"))
        self.repo.update_member(request.existing_user_id, fields)
        self.repo.update_member(request.pending_user_id, {"status": "REJECTED"})
        ratio = existing_record.get("share_ratio")
        self._history(
            unit,
            "INFO_UPDATED",
            from_member=str(request.pending_user_id),
            to_member=str(request.existing_user_id),
            previous=ratio,
            new=ratio,
            notes="merged pending registration into existing owner",
        )
        return ConflictResolutionResult(
            success=True,
            message="existing owner information updated",
            resolved_user_id=str(request.existing_user_id),
        )

    def _apply_transfer(self, request, unit, pending, existing, existing_record, ownerships):
        new_ratio = FULL_SHARE if request.share_ratio is None else float(request.share_ratio)
        _check_equity(equity_total(ownerships, exclude_ids={str(existing_record["id"])}) + new_ratio)

        self.repo.archive_ownership(existing_record["id"])
        self.repo.insert_ownership(
            property_unit_id=str(unit["id"]),
            member_id=str(request.pending_user_id),
            ownership_type="OWNER",
            share_ratio=new_ratio,
        )
        self.repo.update_member(request.pending_user_id, {"status": "APPROVED"})

        remaining = [
            row
            for row in self.repo.fetch_member_ownerships(request.existing_user_id)
            if row.get("status") == "ACTIVE" and row.get("ownership_type") in EQUITY_OWNERSHIP_TYPES
        ]
        if not remaining:
            self.repo.update_member(request.existing_user_id, {"status": "TRANSFERRED"})

        self._history(
            unit,
            "TRANSFER",
            from_member=str(request.existing_user_id),
            to_member=str(request.pending_user_id),
            previous=existing_record.get("share_ratio"),
            new=new_ratio,
        )
        return ConflictResolutionResult(
            success=True,
            message="ownership transferred",
            resolved_user_id=str(request.pending_user_id),
        )

    def _apply_add_co_owner(self, request, unit, pending, existing, existing_record, ownerships):
        for_existing = float(request.share_ratio_for_existing)
        for_new = float(request.share_ratio_for_new)
        others = equity_total(ownerships, exclude_ids={str(existing_record["id"])})
        _check_equity(others + for_existing + for_new)

        self.repo.update_ownership(
            existing_record["id"],
            {"ownership_type": "CO_OWNER", "share_ratio": for_existing},
        )
        self.repo.insert_ownership(
            property_unit_id=str(unit["id"]),
            member_id=str(request.pending_user_id),
            ownership_type="CO_OWNER",
            share_ratio=for_new,
        )
        self.repo.update_member(request.pending_user_id, {"status": "APPROVED"})

        self._history(
            unit,
            "RATIO_CHANGED",
            to_member=str(request.existing_user_id),
            previous=existing_record.get("share_ratio"),
            new=for_existing,
        )
        self._history(
            unit,
            "CO_OWNER_ADDED",
            from_member=str(request.existing_user_id),
            to_member=str(request.pending_user_id),
            new=for_new,
        )
        return ConflictResolutionResult(
            success=True,
            message="co-owner added",
            resolved_user_id=str(request.pending_user_id),
        )

    def _apply_add_proxy(self, request, unit, pending, existing, existing_record, ownerships):
        self.repo.insert_ownership(
            property_unit_id=str(unit["id"]),
            member_id=str(request.pending_user_id),
            ownership_type=request.relationship_type,
            share_ratio=None,
        )
        self.repo.insert_member_relationship(
            owner_member_id=str(request.existing_user_id),
            delegate_member_id=str(request.pending_user_id),
            relationship_type=request.relationship_type,
        )
        self.repo.update_member(request.pending_user_id, {"status": "APPROVED"})
        self._history(
            unit,
            "PROXY_ADDED",
            from_member=str(request.existing_user_id),
            to_member=str(request.pending_user_id),
            notes=request.relationship_type,
        )
        return ConflictResolutionResult(
            success=True,
            message=f"{request.relationship_type.lower()} added",
            resolved_user_id=str(request.existing_user_id),
        )
