from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "stack-signal"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-5-mini"
    openai_reasoning_effort: str = "medium"
    analysis_timeout_seconds: float = 60.0
    analysis_max_attempts: int = 3
    analysis_retry_base_seconds: float = 2.0
    analysis_max_description_chars: int = 12000
    batch_default_limit: int = 100
    batch_max_limit: int = 500
    batch_delay_seconds: float = 1.0
    skip_identified_companies: bool = False
    dedupe_similarity_threshold: float = 0.7
    queue_default_priority: int = 50
    queue_default_max_attempts: int = 3
    queue_max_size: int = 1000
    worker_enabled: bool = False
    worker_poll_interval_seconds: float = 2.0
    worker_max_backoff_seconds: float = 15.0
    worker_batch_interval_seconds: float = 0.0
    worker_batch_limit: int = 100
    worker_queue_batch_size: int = 5
    otel_enabled: bool = True
    otel_service_name: str = "stack-signal"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SS_", extra="ignore")

    @property
    def otlp_headers(self) -> dict[str, str]:
        """`SS_OTEL_EXPORTER_OTLP_HEADERS` as a dict; items without `key=` are dropped."""
        headers: dict[str, str] = {}
        for item in (self.otel_exporter_otlp_headers or "").split(","):
            key, separator, value = item.partition("=")
            if separator and key.strip():
                headers[key.strip()] = value.strip()
        return headers


@lru_cache
def get_settings() -> Settings:
    return Settings()
