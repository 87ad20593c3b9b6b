import logging
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote, unquote

import psycopg
from psycopg.rows import dict_row

from app.config import get_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

# (substring of the lowercased driver message, reason), first hit wins.
_CONNECTION_MESSAGE_REASONS = (
    ("password authentication failed", "auth_failed"),
    ("pg_hba.conf", "auth_error"),
    ("could not translate host name", "invalid_host_or_uri"),
    ("connection refused", "connection_refused"),
    ("timeout expired", "network_timeout"),
    ("timed out", "network_timeout"),
    ("server closed the connection", "network_error"),
    ("connection reset", "network_error"),
    ("sslmode", "ssl_required"),
)


class DatabaseConfigurationError(RuntimeError):
    """Raised when DB settings are missing or invalid."""


class DatabaseConnectionError(RuntimeError):
    """Raised when a DB connection cannot be established."""


def _classify_connection_error(exc: psycopg.Error) -> str:
    """Short reason code for a failed connect; the raw message may carry credentials."""
    sqlstate = str(getattr(exc, "sqlstate", "") or "").upper()
    if sqlstate == "28P01":
        return "auth_failed"
    if sqlstate.startswith("28"):
        return "auth_error"
    if sqlstate.startswith("08"):
        return "network_error"

    message = str(exc).lower()
    for needle, reason in _CONNECTION_MESSAGE_REASONS:
        if needle in message:
            return reason
    if "ssl" in message and "required" in message:
        return "ssl_required"
    return "unknown"


def _normalize_database_url(database_url: str) -> str:
    """Percent-encode the password of a postgres URL so '@' or '!' in it survive parsing."""
    text = str(database_url or "").strip()
    scheme, sep, remainder = text.partition("://")
    if not sep or not scheme.startswith("postgres") or "@" not in remainder:
        return text

    credentials, host_part = remainder.rsplit("@", 1)
    username, colon, raw_password = credentials.partition(":")
    if not colon or not username:
        return text
    return f"{scheme}://{username}:{quote(unquote(raw_password), safe='')}@{host_part}"


@contextmanager
def get_connection():
    try:
        settings = get_settings()
    except Exception as exc:  # noqa: BLE001
        raise DatabaseConfigurationError("database settings are not configured") from exc

    database_url = _normalize_database_url(settings.database_url)
    if not database_url:
        raise DatabaseConfigurationError("DATABASE_URL is empty")

    try:
        conn = psycopg.connect(database_url, row_factory=dict_row)
    except psycopg.Error as exc:
        reason = _classify_connection_error(exc)
        logger.warning("db_connect_failed reason=%s", reason)
        raise DatabaseConnectionError(f"database connection failed ({reason})") from exc

    try:
        yield conn
    finally:
        conn.close()


def run_schema(schema_path: str | Path = SCHEMA_PATH) -> None:
    """Apply the idempotent DDL file in one transaction."""
    ddl = Path(schema_path).read_text(encoding="utf-8")
    with get_connection() as conn:
        with conn.transaction():
            conn.execute(ddl)
    logger.info("db_schema_applied path=%s", schema_path)
