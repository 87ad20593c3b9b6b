from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    internal_job_token: str | None = None
    app_env: str = "dev"
    auto_apply_schema_on_startup: bool = False
    job_chunk_size: int = 50
    job_max_error_messages: int = 20
    job_worker_count: int = 4
    gis_registry_endpoint_url: str = ""
    gis_registry_service_key: str | None = None
    gis_registry_timeout_sec: float = 5.0
    gis_registry_max_retries: int = 2
    gis_registry_requests_per_sec: float = 5.0
    gis_registry_cache_ttl_sec: int = 600

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
