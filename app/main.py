import os
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import psycopg

from app.api.dependencies import get_job_pool
from app.api.routes import router as api_router
from app.config import get_settings
from app.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection, run_schema
from app.services.repository import open_repository
from app.services.sync_job_service import recover_stale_jobs

DEFAULT_CORS_ALLOW_ORIGINS = "http://127.0.0.1:3000,http://localhost:3000"

logger = logging.getLogger(__name__)

STARTUP_STATE: dict = {"schema_applied": False, "recovered_jobs": 0, "detail": None}


def _resolve_cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ALLOW_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="Union Ownership Sync", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.on_event("startup")
def startup_jobs():
    try:
        if get_settings().auto_apply_schema_on_startup:
            run_schema()
            STARTUP_STATE["schema_applied"] = True
        with open_repository() as repo:
            STARTUP_STATE["recovered_jobs"] = recover_stale_jobs(repo)
    except (DatabaseConfigurationError, DatabaseConnectionError, psycopg.Error) as exc:
        STARTUP_STATE["detail"] = str(exc)
        logger.warning("startup_job_recovery_skipped detail=%s", exc)
    get_job_pool().start()
    logger.info(
        "startup_jobs schema_applied=%s recovered_jobs=%s",
        STARTUP_STATE["schema_applied"],
        STARTUP_STATE["recovered_jobs"],
    )


@app.on_event("shutdown")
def shutdown_jobs():
    get_job_pool().shutdown(wait=True)


@app.exception_handler(psycopg.Error)
def handle_psycopg_error(_, exc: psycopg.Error):  # noqa: ANN001
    sqlstate = getattr(exc, "sqlstate", None)
    detail = f"database query failed ({sqlstate})" if sqlstate else "database query failed"
    logger.warning("db_query_failed sqlstate=%s", sqlstate)
    return JSONResponse(status_code=503, content={"detail": detail})


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/db")
def health_db_check():
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                row = cur.fetchone() or {}
    except DatabaseConfigurationError as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_not_configured", "detail": str(exc)},
        )
    except DatabaseConnectionError as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_connection_failed", "detail": str(exc)},
        )
    except psycopg.Error as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_query_failed", "sqlstate": exc.sqlstate},
        )

    return {"status": "ok", "db": "ok", "ping": row.get("ok") == 1, "startup": STARTUP_STATE}
