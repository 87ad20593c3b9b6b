from __future__ import annotations

import logging
from typing import Any, Sequence

from app.jobs.job_tracker import JOB_FATAL_ERRORS, JobResult
from app.services.errors import DuplicateMemberError, NotFoundError
from app.services.fingerprint import build_member_fingerprint
from app.services.gis_matcher import GisMatcher, MatchOutcome
from app.services.parcel_registry import LandLotRegistry
from app.services.row_expansion import CandidateRecord, expand_row
from app.services.unit_normalizer import normalize_address, normalize_dong, normalize_ho

logger = logging.getLogger(__name__)

# Row expansion fields that are not stored on the member record.
_TRANSIENT_FIELDS = {"row_number", "legal_district", "lot_number"}


def build_matcher(repo) -> GisMatcher:
    return GisMatcher(LandLotRegistry(repo))


def match_candidate(matcher: GisMatcher, union_id: str, candidate: CandidateRecord) -> MatchOutcome:
    outcome = matcher.match(union_id, candidate.property_address, candidate.dong, candidate.ho)
    if outcome.status == "unmatched" and candidate.road_address:
        fallback = matcher.match(union_id, candidate.road_address, candidate.dong, candidate.ho)
        if fallback.status != "unmatched":
            return fallback
    return outcome


def _member_fields(candidate: CandidateRecord) -> dict[str, Any]:
    return {key: value for key, value in candidate.to_dict().items() if key not in _TRANSIENT_FIELDS}


def _count_outcome(result: JobResult, outcome: MatchOutcome) -> None:
    if outcome.matched:
        result.matched += 1
        return
    # Ambiguous addresses are stored and counted as unmatched; the extra counter is diagnostic.
    result.unmatched += 1
    if outcome.status == "ambiguous":
        result.ambiguous += 1


def save_candidate(
    repo,
    matcher: GisMatcher,
    *,
    union_id: str,
    candidate: CandidateRecord,
    job_id: str | None = None,
    update_existing: bool = False,
) -> tuple[str, MatchOutcome | None]:
    """Match and persist one candidate; returns ("saved"|"updated"|"duplicate", outcome)."""
    fingerprint = build_member_fingerprint(
        owner_name=candidate.owner_name,
        property_address=candidate.property_address,
        dong=candidate.dong,
        ho=candidate.ho,
    )
    existing = repo.find_pre_registered_by_fingerprint(union_id, fingerprint)
    if existing and not update_existing:
        return "duplicate", None

    outcome = match_candidate(matcher, union_id, candidate)
    fields = {**_member_fields(candidate), **outcome.storage_fields(), "fingerprint": fingerprint}
    if job_id:
        fields["source_job_id"] = job_id

    if existing:
        repo.update_pre_registered_member(existing["id"], fields)
        return "updated", outcome
    repo.insert_pre_registered_member(union_id, fields)
    return "saved", outcome


def process_pre_register_chunk(
    repo,
    rows: Sequence[Any],
    offset: int,
    *,
    union_id: str,
    job_id: str | None = None,
    update_existing: bool = False,
    max_errors: int = 20,
) -> JobResult:
    result = JobResult(max_errors=max_errors)
    matcher = build_matcher(repo)
    for index, row in enumerate(rows):
        row_number = offset + index + 1
        candidates, rejection = expand_row(row if isinstance(row, dict) else {}, row_number)
        if rejection is not None:
            logger.info("pre_register_row_rejected job_id=%s row=%s reason=%s", job_id, row_number, rejection.reason)
            result.record_failure(rejection.message())
            continue

        for candidate in candidates:
            try:
                with repo.savepoint():
                    action, outcome = save_candidate(
                        repo,
                        matcher,
                        union_id=union_id,
                        candidate=candidate,
                        job_id=job_id,
                        update_existing=update_existing,
                    )
            except JOB_FATAL_ERRORS:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("pre_register_row_failed job_id=%s row=%s error=%s", job_id, row_number, exc)
                result.record_failure(f"row {row_number} ({candidate.owner_name}): {exc}")
                continue

            if action == "duplicate":
                result.duplicate += 1
                continue
            _count_outcome(result, outcome)
            if action == "updated":
                result.updated += 1
            else:
                result.saved += 1
    return result


def rematch_pre_registered_member(
    repo,
    member_id: str,
    *,
    property_address: str | None = None,
    dong: str | None = None,
    ho: str | None = None,
) -> MatchOutcome:
    """Re-run matching for one member after an operator correction, updating it in place."""
    pre = repo.get_pre_registered_member(member_id)
    if not pre:
        raise NotFoundError(f"pre-registered member not found: {member_id}")

    address = normalize_address(property_address) or pre.get("property_address")
    dong = normalize_dong(dong) if dong is not None else pre.get("dong")
    ho = normalize_ho(ho) if ho is not None else pre.get("ho")

    fingerprint = build_member_fingerprint(owner_name=pre["owner_name"], property_address=address, dong=dong, ho=ho)
    clash = repo.find_pre_registered_by_fingerprint(pre["union_id"], fingerprint)
    if clash and str(clash["id"]) != str(member_id):
        raise DuplicateMemberError("another pre-registered member already has this owner, address and unit")

    outcome = build_matcher(repo).match(pre["union_id"], address, dong, ho)
    repo.update_pre_registered_member(
        member_id,
        {
            "property_address": address,
            "dong": dong,
            "ho": ho,
            "fingerprint": fingerprint,
            **outcome.storage_fields(),
        },
    )
    logger.info("pre_register_rematched member_id=%s status=%s", member_id, outcome.status)
    return outcome


def list_pre_registered_members(repo, union_id: str, *, match_status: str | None = None, limit: int = 100, offset: int = 0):
    return repo.list_pre_registered_members(union_id, match_status=match_status, limit=limit, offset=offset)


def delete_pre_registered_member(repo, member_id: str) -> None:
    if not repo.delete_pre_registered_member(member_id):
        raise NotFoundError(f"pre-registered member not found: {member_id}")


def reset_pre_registered_members(repo, union_id: str) -> int:
    deleted = repo.delete_all_pre_registered_members(union_id)
    logger.info("pre_register_reset union_id=%s deleted=%s", union_id, deleted)
    return deleted
