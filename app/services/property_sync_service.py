from __future__ import annotations

import logging
from typing import Any, Sequence

from app.jobs.job_tracker import JOB_FATAL_ERRORS, JobResult
from app.services.gis_registry_client import GisRegistryClient
from app.services.pre_register_service import build_matcher
from app.services.unit_normalizer import normalize_address

logger = logging.getLogger(__name__)

_OUTCOME_KEYS = ("pnu", "building_unit_id", "match_status")


def _outcome_changed(stored: dict[str, Any], fields: dict[str, Any]) -> bool:
    return any(
        (None if stored.get(key) is None else str(stored.get(key))) != (None if fields.get(key) is None else str(fields.get(key)))
        for key in _OUTCOME_KEYS
    )


def process_sync_properties_chunk(repo, member_ids: Sequence[str], offset: int, *, union_id: str, max_errors: int = 20) -> JobResult:
    """Re-match stored members against the current registry, in place."""
    result = JobResult(max_errors=max_errors)
    matcher = build_matcher(repo)
    for member_id in member_ids:
        try:
            with repo.savepoint():
                pre = repo.get_pre_registered_member(member_id)
                if not pre:
                    result.skipped += 1
                    continue
                outcome = matcher.match(union_id, pre.get("property_address"), pre.get("dong"), pre.get("ho"))
                fields = outcome.storage_fields()
                changed = _outcome_changed(pre, fields)
                if changed:
                    repo.update_pre_registered_member(member_id, fields)
        except JOB_FATAL_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("sync_properties_member_failed member_id=%s error=%s", member_id, exc)
            result.record_failure(f"member {member_id}: {exc}")
            continue

        if outcome.matched:
            result.matched += 1
        else:
            result.unmatched += 1
            if outcome.status == "ambiguous":
                result.ambiguous += 1
        if changed:
            result.synced += 1
        else:
            result.skipped += 1
    return result


def process_gis_collect_chunk(
    repo,
    addresses: Sequence[Any],
    offset: int,
    *,
    union_id: str,
    client: GisRegistryClient,
    max_errors: int = 20,
) -> JobResult:
    """Look addresses up upstream and upsert the parcels into the union's registry."""
    result = JobResult(max_errors=max_errors)
    for index, raw in enumerate(addresses):
        address = normalize_address(raw)
        position = offset + index + 1
        if not address:
            result.record_failure(f"address {position}: blank address")
            continue

        # RegistryUnavailableError propagates and fails the job.
        parcel = client.lookup_parcel(address)
        if parcel is None:
            result.skipped += 1
            result.add_error(f"address {position} ({address}): not found in registry")
            continue

        try:
            with repo.savepoint():
                inserted = repo.upsert_land_lot(union_id, parcel)
                for unit in parcel.units:
                    repo.upsert_building_unit(unit)
        except JOB_FATAL_ERRORS:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("gis_collect_parcel_failed pnu=%s error=%s", parcel.pnu, exc)
            result.record_failure(f"address {position} ({address}): {exc}")
            continue

        if inserted:
            result.saved += 1
        else:
            result.updated += 1
    return result
