from __future__ import annotations

import logging
from functools import partial
from typing import Any

from app.config import get_settings
from app.jobs.job_tracker import (
    ACTIVE_JOB_STATUSES,
    describe_fatal_error,
    run_chunked_job,
)
from app.services.consent_service import process_consent_chunk
from app.services.errors import EmptyBatchError, InvalidJobStateError, NotFoundError
from app.services.pre_register_service import process_pre_register_chunk
from app.services.property_sync_service import process_gis_collect_chunk, process_sync_properties_chunk
from app.services.row_expansion import expand_rows
from app.services.unit_normalizer import normalize_address

logger = logging.getLogger(__name__)

STALE_JOB_REASON = "interrupted: worker process restarted"


def _prepare_pre_register(repo, job, *, max_errors, registry_client=None):
    payload = job.get("input_payload") or {}
    chunk = partial(
        process_pre_register_chunk,
        union_id=job["union_id"],
        job_id=str(job["id"]),
        update_existing=bool(payload.get("update_existing")),
        max_errors=max_errors,
    )
    return list(payload.get("rows") or []), chunk


def _prepare_sync_properties(repo, job, *, max_errors, registry_client=None):
    member_ids = repo.list_pre_registered_member_ids(job["union_id"])
    chunk = partial(process_sync_properties_chunk, union_id=job["union_id"], max_errors=max_errors)
    return member_ids, chunk


def _prepare_gis_collect(repo, job, *, max_errors, registry_client=None):
    if registry_client is None:
        raise InvalidJobStateError("parcel registry client is not available")
    payload = job.get("input_payload") or {}
    chunk = partial(process_gis_collect_chunk, union_id=job["union_id"], client=registry_client, max_errors=max_errors)
    return list(payload.get("addresses") or []), chunk


def _prepare_consent_bulk(repo, job, *, max_errors, registry_client=None):
    payload = job.get("input_payload") or {}
    chunk = partial(process_consent_chunk, union_id=job["union_id"], stage_id=payload["stage_id"], max_errors=max_errors)
    return list(payload.get("rows") or []), chunk


JOB_PREPARERS = {
    "PRE_REGISTER": _prepare_pre_register,
    "SYNC_PROPERTIES": _prepare_sync_properties,
    "GIS_COLLECT": _prepare_gis_collect,
    "CONSENT_BULK": _prepare_consent_bulk,
}


def execute_sync_job(
    repo,
    job_id: str,
    *,
    registry_client=None,
    chunk_size: int | None = None,
    max_errors: int | None = None,
) -> str | None:
    """Worker entry point: run a PENDING job to COMPLETED or FAILED."""
    job = repo.get_sync_job(job_id)
    if not job:
        logger.warning("sync_job_missing job_id=%s", job_id)
        return None
    if job["status"] != "PENDING":
        logger.warning("sync_job_not_pending job_id=%s status=%s", job_id, job["status"])
        return job["status"]

    if chunk_size is None or max_errors is None:
        settings = get_settings()
        chunk_size = settings.job_chunk_size if chunk_size is None else chunk_size
        max_errors = settings.job_max_error_messages if max_errors is None else max_errors

    try:
        items, process_chunk = JOB_PREPARERS[job["kind"]](
            repo, job, max_errors=max_errors, registry_client=registry_client
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("sync_job_prepare_failed job_id=%s kind=%s", job_id, job["kind"])
        repo.rollback()
        repo.fail_job(job_id, describe_fatal_error(exc), None)
        return "FAILED"

    return run_chunked_job(repo, job_id, items, process_chunk, chunk_size=chunk_size, max_errors=max_errors)


def _submit(repo, pool, *, union_id, kind, total_count, input_payload, registry_client=None) -> dict[str, Any]:
    job = repo.create_sync_job(union_id=union_id, kind=kind, total_count=total_count, input_payload=input_payload)
    logger.info("sync_job_created job_id=%s union_id=%s kind=%s total=%s", job["id"], union_id, kind, total_count)
    pool.submit(str(job["id"]), partial(execute_sync_job, registry_client=registry_client))
    return job


def submit_pre_register_job(repo, pool, *, union_id: str, rows: list[dict[str, Any]], update_existing: bool = False):
    candidates, rejections = expand_rows(rows)
    if not candidates:
        raise EmptyBatchError("no usable rows after lot expansion and filtering")
    if rejections:
        logger.info("pre_register_rows_rejected union_id=%s count=%s", union_id, len(rejections))
    return _submit(
        repo,
        pool,
        union_id=union_id,
        kind="PRE_REGISTER",
        total_count=len(rows),
        input_payload={"rows": rows, "update_existing": update_existing},
    )


def submit_sync_properties_job(repo, pool, *, union_id: str):
    member_count = len(repo.list_pre_registered_member_ids(union_id))
    return _submit(repo, pool, union_id=union_id, kind="SYNC_PROPERTIES", total_count=member_count, input_payload={})


def submit_gis_collect_job(repo, pool, *, union_id: str, addresses: list[str], registry_client):
    cleaned = []
    for raw in addresses:
        address = normalize_address(raw)
        if address and address not in cleaned:
            cleaned.append(address)
    if not cleaned:
        raise EmptyBatchError("no addresses to collect")
    return _submit(
        repo,
        pool,
        union_id=union_id,
        kind="GIS_COLLECT",
        total_count=len(cleaned),
        input_payload={"addresses": cleaned},
        registry_client=registry_client,
    )


def submit_consent_bulk_job(repo, pool, *, union_id: str, stage_id: str, rows: list[dict[str, Any]]):
    if not rows:
        raise EmptyBatchError("no consent rows submitted")
    return _submit(
        repo,
        pool,
        union_id=union_id,
        kind="CONSENT_BULK",
        total_count=len(rows),
        input_payload={"stage_id": stage_id, "rows": rows},
    )


def retry_sync_job(repo, pool, job_id: str, *, registry_client=None):
    job = repo.get_sync_job(job_id)
    if not job:
        raise NotFoundError(f"job not found: {job_id}")
    if job["status"] != "FAILED":
        raise InvalidJobStateError(f"only FAILED jobs can be retried (status={job['status']})")
    payload = job.get("input_payload") or {}
    if job["kind"] == "SYNC_PROPERTIES":
        return submit_sync_properties_job(repo, pool, union_id=job["union_id"])
    return _submit(
        repo,
        pool,
        union_id=job["union_id"],
        kind=job["kind"],
        total_count=int(job.get("total_count") or 0),
        input_payload=payload,
        registry_client=registry_client,
    )


def get_sync_job(repo, job_id: str) -> dict[str, Any]:
    job = repo.get_sync_job(job_id)
    if not job:
        raise NotFoundError(f"job not found: {job_id}")
    return job


def publish_sync_job(repo, job_id: str) -> int:
    job = get_sync_job(repo, job_id)
    if job["status"] != "COMPLETED":
        raise InvalidJobStateError(f"only COMPLETED jobs can be published (status={job['status']})")
    published = repo.publish_sync_job(job_id)
    logger.info("sync_job_published job_id=%s members=%s", job_id, published)
    return published


def delete_sync_job(repo, job_id: str) -> None:
    job = get_sync_job(repo, job_id)
    if job["status"] in ACTIVE_JOB_STATUSES:
        raise InvalidJobStateError("job is still running; wait for it to finish")
    repo.delete_sync_job(job_id)


def recover_stale_jobs(repo) -> int:
    count = repo.fail_stale_jobs(STALE_JOB_REASON)
    if count:
        logger.warning("sync_jobs_recovered count=%s reason=%s", count, STALE_JOB_REASON)
    return count
