from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "dataguard"
    app_env: str = "local"
    database_url: str = "sqlite+pysqlite:///:memory:"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_seconds: int = 86400
    session_cache_ttl_seconds: int = 300
    session_cache_max_entries: int = 10000
    oauth2_state_ttl_seconds: int = 600
    oauth2_state_sweep_seconds: int = 300
    oauth2_http_timeout_seconds: float = 10.0
    oauth2_default_session_seconds: int = 86400
    rule_store_timeout_seconds: float = 5.0
    background_workers: int = 4
    background_queue_size: int = 1000
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
