from functools import lru_cache
from secrets import compare_digest

from fastapi import Header, HTTPException
import psycopg

from app.config import get_settings

from app.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection
from app.jobs.worker_pool import JobWorkerPool
from app.services.gis_registry_client import GisRegistryClient, GisRegistryConfig
from app.services.repository import PostgresRepository, open_repository


def _database_unavailable(exc: Exception) -> HTTPException:
    """503 for any database failure; only the reason code or SQLSTATE reaches the client."""
    if isinstance(exc, DatabaseConfigurationError):
        detail = "database is not configured"
    elif isinstance(exc, DatabaseConnectionError):
        detail = str(exc)
    else:
        detail = f"database query failed ({getattr(exc, 'sqlstate', None) or 'unknown'})"
    return HTTPException(status_code=503, detail=detail)


def get_repository():
    """Request-scoped repository; the connection closes when the response is done."""
    try:
        with get_connection() as conn:
            yield PostgresRepository(conn)
    except (DatabaseConfigurationError, DatabaseConnectionError, psycopg.Error) as exc:
        raise _database_unavailable(exc) from exc


@lru_cache(maxsize=1)
def get_job_pool() -> JobWorkerPool:
    try:
        workers = get_settings().job_worker_count
    except Exception:  # noqa: BLE001
        workers = 4
    return JobWorkerPool(open_repository, max_workers=workers)


@lru_cache(maxsize=1)
def get_gis_registry_client() -> GisRegistryClient:
    try:
        settings = get_settings()
        cfg = GisRegistryConfig(
            endpoint_url=settings.gis_registry_endpoint_url,
            service_key=settings.gis_registry_service_key,
            timeout_sec=settings.gis_registry_timeout_sec,
            max_retries=settings.gis_registry_max_retries,
            cache_ttl_sec=settings.gis_registry_cache_ttl_sec,
            requests_per_sec=settings.gis_registry_requests_per_sec,
        )
    except Exception:  # noqa: BLE001
        cfg = GisRegistryConfig(endpoint_url="", service_key=None)
    return GisRegistryClient(cfg)


def _bearer_token(authorization: str | None) -> str | None:
    scheme, _, credentials = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def require_internal_job_token(authorization: str | None = Header(default=None)) -> None:
    """Guard for job-mutating routes: ``Authorization: Bearer <INTERNAL_JOB_TOKEN>``."""
    configured = get_settings().internal_job_token
    if not configured:
        raise HTTPException(status_code=503, detail="internal job token is not configured")

    presented = _bearer_token(authorization)
    if presented is None:
        raise HTTPException(status_code=401, detail="missing bearer token")
    if not compare_digest(presented.encode("utf-8"), configured.encode("utf-8")):
        raise HTTPException(status_code=403, detail="invalid bearer token")
