from functools import lru_cache
from urllib.parse import quote

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "pollux"
    app_version: str = "0.1.0"
    environment: str = "dev"
    database_url: str | None = None
    db_host: str | None = None
    db_port: int = 5432
    db_user: str | None = None
    db_password: str | None = None
    db_name: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    db_connect_retries: int = 5
    db_connect_backoff_seconds: float = 1.0
    db_connect_max_backoff_seconds: float = 30.0
    github_api_url: str = "https://api.github.com"
    github_api_token: str | None = None
    github_username: str | None = None
    github_per_page: int = 30
    gitlab_api_url: str = "https://gitlab.com"
    gitlab_api_token: str | None = None
    gitlab_user_id: str | None = None
    gitlab_per_page: int = 20
    resync_interval_seconds: float = 900.0
    scheduler_enabled: bool = True
    development_mode: bool = False
    initial_lookback_days: int = 90
    default_query_days: int = 30
    http_timeout_seconds: float = 10.0
    fetch_timeout_seconds: float = 120.0
    reconcile_timeout_seconds: float = 120.0
    otel_enabled: bool = True
    otel_service_name: str = "pollux"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="POLLUX_", extra="ignore")

    def configured_platforms(self) -> list[str]:
        platforms: list[str] = []
        if self.github_api_token and self.github_username:
            platforms.append("github")
        if self.gitlab_api_token and self.gitlab_user_id:
            platforms.append("gitlab")
        return platforms

    def resolved_database_url(self) -> str | None:
        if self.database_url:
            return self.database_url
        if not (self.db_host and self.db_user and self.db_name):
            return None
        credentials = quote(self.db_user, safe="")
        if self.db_password:
            credentials = f"{credentials}:{quote(self.db_password, safe='')}"
        return f"postgresql://{credentials}@{self.db_host}:{self.db_port}/{self.db_name}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
