from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import psycopg

from app.db import DatabaseConnectionError
from app.services.errors import RegistryUnavailableError

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = ("PENDING", "PROCESSING")
DEFAULT_MAX_ERRORS = 20

# Errors that stop the chunk loop itself; anything else raised for a row is absorbed.
JOB_FATAL_ERRORS = (RegistryUnavailableError, DatabaseConnectionError, psycopg.OperationalError)

COUNT_FIELDS = ("matched", "unmatched", "ambiguous", "saved", "updated", "duplicate", "synced", "skipped", "failed")


@dataclass
class JobResult:
    matched: int = 0
    unmatched: int = 0
    ambiguous: int = 0
    saved: int = 0
    updated: int = 0
    duplicate: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    max_errors: int = DEFAULT_MAX_ERRORS

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.add_error(message)

    def add_error(self, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(message)

    def merged(self, other: "JobResult") -> "JobResult":
        out = JobResult(max_errors=self.max_errors, errors=list(self.errors))
        for name in COUNT_FIELDS:
            setattr(out, name, getattr(self, name) + getattr(other, name))
        for message in other.errors:
            out.add_error(message)
        return out

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {f"{name}_count": getattr(self, name) for name in COUNT_FIELDS}
        payload["errors"] = list(self.errors)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None, *, max_errors: int = DEFAULT_MAX_ERRORS) -> "JobResult":
        out = cls(max_errors=max_errors)
        if not payload:
            return out
        for name in COUNT_FIELDS:
            setattr(out, name, int(payload.get(f"{name}_count") or 0))
        out.errors = list(payload.get("errors") or [])[:max_errors]
        return out


ChunkProcessor = Callable[[Any, Sequence[Any], int], JobResult]


def compute_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return max(0, min(100, round(processed / total * 100)))


def describe_fatal_error(exc: BaseException) -> str:
    """Human-readable, never-empty summary for a FAILED job."""
    detail = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {detail}" if detail else name


def run_chunked_job(
    repo,
    job_id: str,
    items: Sequence[Any],
    process_chunk: ChunkProcessor,
    *,
    chunk_size: int = 50,
    max_errors: int = DEFAULT_MAX_ERRORS,
) -> str:
    """Drive one job through PROCESSING to a terminal status.

    Chunks run in input order. Each chunk's writes commit together with its progress
    write, so a fatal error keeps earlier chunks and the partial summary intact.
    """
    total = len(items)
    chunk_size = max(1, int(chunk_size))
    result = JobResult(max_errors=max_errors)
    processed = 0
    progress = 0

    try:
        repo.mark_job_processing(job_id)
        for start in range(0, total, chunk_size):
            chunk = items[start : start + chunk_size]
            with repo.transaction():
                merged = result.merged(process_chunk(repo, chunk, start))
                progress = max(progress, compute_progress(start + len(chunk), total))
                repo.update_job_progress(
                    job_id,
                    progress=progress,
                    processed_count=start + len(chunk),
                    result=merged.to_dict(),
                )
            result = merged
            processed = start + len(chunk)
        repo.complete_job(job_id, result.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.exception("sync_job_failed job_id=%s processed=%s total=%s", job_id, processed, total)
        repo.rollback()
        repo.fail_job(job_id, describe_fatal_error(exc), result.to_dict())
        return "FAILED"

    logger.info(
        "sync_job_completed job_id=%s total=%s failed=%s",
        job_id,
        total,
        result.failed,
    )
    return "COMPLETED"
