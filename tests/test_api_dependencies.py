from contextlib import contextmanager

import psycopg
import pytest
from fastapi import HTTPException

import app.api.dependencies as deps
from app.db import DatabaseConnectionError
from app.services.repository import PostgresRepository


@contextmanager
def _fake_connection():
    yield object()


def _make_psycopg_error(sqlstate: str) -> psycopg.Error:
    err = psycopg.ProgrammingError("boom")
    err.sqlstate = sqlstate
    return err


def test_get_repository_wraps_the_connection(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(deps, "get_connection", _fake_connection)

    gen = deps.get_repository()
    repo = next(gen)

    assert isinstance(repo, PostgresRepository)


def test_get_repository_db_error_keeps_sqlstate_detail(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(deps, "get_connection", _fake_connection)

    gen = deps.get_repository()
    _ = next(gen)

    with pytest.raises(HTTPException) as exc_info:
        gen.throw(_make_psycopg_error("40001"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail == "database query failed (40001)"


def test_get_repository_connection_failure_is_unavailable(monkeypatch: pytest.MonkeyPatch):
    @contextmanager
    def _broken_connection():
        raise DatabaseConnectionError("database connection failed (connection_refused)")
        yield  # pragma: no cover

    monkeypatch.setattr(deps, "get_connection", _broken_connection)

    with pytest.raises(HTTPException) as exc_info:
        next(deps.get_repository())

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail == "database connection failed (connection_refused)"


def test_registry_client_follows_settings(monkeypatch: pytest.MonkeyPatch):
    from app.config import get_settings

    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/test")
    monkeypatch.setenv("GIS_REGISTRY_ENDPOINT_URL", "https://registry.example.test/parcels")
    monkeypatch.setenv("GIS_REGISTRY_MAX_RETRIES", "5")
    get_settings.cache_clear()
    deps.get_gis_registry_client.cache_clear()
    try:
        client = deps.get_gis_registry_client()
        assert client.is_configured()
        assert client.config.max_retries == 5
    finally:
        deps.get_gis_registry_client.cache_clear()
        get_settings.cache_clear()


def test_job_token_checks(monkeypatch: pytest.MonkeyPatch):
    from app.config import get_settings

    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/test")
    monkeypatch.delenv("INTERNAL_JOB_TOKEN", raising=False)
    get_settings.cache_clear()
    try:
        with pytest.raises(HTTPException) as exc_info:
            deps.require_internal_job_token("Bearer x")
        assert exc_info.value.status_code == 503

        monkeypatch.setenv("INTERNAL_JOB_TOKEN", "secret")
        get_settings.cache_clear()
        with pytest.raises(HTTPException) as exc_info:
            deps.require_internal_job_token(None)
        assert exc_info.value.status_code == 401
        with pytest.raises(HTTPException) as exc_info:
            deps.require_internal_job_token("Bearer wrong")
        assert exc_info.value.status_code == 403
        assert deps.require_internal_job_token("Bearer secret") is None
    finally:
        get_settings.cache_clear()


@pytest.mark.parametrize(
    ("header", "status"),
    [
        ("bearer secret", None),
        ("  Bearer   secret  ", None),
        ("Basic secret", 401),
        ("Bearer", 401),
        ("Bearer    ", 401),
        ("Bearersecret", 401),
        ("Bearer secret2", 403),
    ],
)
def test_job_token_header_parsing(monkeypatch: pytest.MonkeyPatch, header, status):
    from app.config import get_settings

    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/test")
    monkeypatch.setenv("INTERNAL_JOB_TOKEN", "secret")
    get_settings.cache_clear()
    try:
        if status is None:
            assert deps.require_internal_job_token(header) is None
        else:
            with pytest.raises(HTTPException) as exc_info:
                deps.require_internal_job_token(header)
            assert exc_info.value.status_code == status
    finally:
        get_settings.cache_clear()


def test_get_repository_hides_unconfigured_database(monkeypatch: pytest.MonkeyPatch):
    from app.db import DatabaseConfigurationError

    @contextmanager
    def _unconfigured():
        raise DatabaseConfigurationError("DATABASE_URL is empty")
        yield  # pragma: no cover

    monkeypatch.setattr(deps, "get_connection", _unconfigured)

    with pytest.raises(HTTPException) as exc_info:
        next(deps.get_repository())

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail == "database is not configured"
