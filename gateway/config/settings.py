from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GATEWAY_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"
    service_name: str = "llm-api-gateway"
    version: str = "0.4.0"

    # Inference backend (generate / embeddings / tags)
    inference_base_url: str = "http://localhost:11434"
    internal_token: str = Field(default="", description="Trust token for privileged backends")
    internal_token_header: str = "X-Internal-Token"
    default_model: str = "llama3.2"
    default_embedding_model: str = "nomic-embed-text"
    generation_timeout_s: float = 30.0
    metadata_timeout_s: float = 5.0

    # Search backend
    search_base_url: str = "http://localhost:8787"
    search_result_count: int = 10
    search_vector_lookup: bool = False
    search_timeout_s: float = 10.0

    # Optional passthrough backends
    documents_base_url: str | None = None
    agents_base_url: str | None = None

    # Rate limiting
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 100
    counter_backend: str = "memory"
    counter_redis_url: str | None = None
    counter_key_prefix: str = "rate"

    # Identity
    identity_backend: str = "sqlite"
    identity_db_path: Path = Path("artifacts/gateway/identity.db")
    session_ttl_seconds: int = 86_400
    api_key_prefix: str = "llm_"

    # Audit
    audit_backend: str = "jsonl"
    audit_log_path: Path = Path("artifacts/audit/events.jsonl")
    audit_db_path: Path = Path("artifacts/audit/audit.db")

    client_ip_header: str = "CF-Connecting-IP"
    cors_allow_origin: str = "*"
    metrics_enabled: bool = True

    @property
    def counter_backend_normalized(self) -> str:
        return self.counter_backend.strip().lower()

    @property
    def identity_backend_normalized(self) -> str:
        return self.identity_backend.strip().lower()

    @property
    def audit_backend_normalized(self) -> str:
        return self.audit_backend.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
