"""Core configuration via environment variables."""

from __future__ import annotations

from pydantic import SecretStr
from pydantic_settings import BaseSettings


class CoreSettings(BaseSettings):
    """All configuration loaded from LEXCORE_* env vars or .env file."""

    # Relational store
    database_url: str = "postgresql+asyncpg://lexcore@localhost:5432/lexcore"
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_echo: bool = False

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db_cache: int = 0
    redis_db_events: int = 2
    redis_max_connections: int = 20

    # Cache
    cache_key_prefix: str = "lex"
    cache_default_ttl_seconds: int = 600
    cache_list_ttl_seconds: int = 120  # list queries stay short-lived
    cache_ttl_jitter_ratio: float = 0.1
    invalidation_channel: str = "lexcore:changes"
    invalidation_max_retries: int = 5
    invalidation_retry_backoff_seconds: float = 0.1
    invalidation_reconnect_max_seconds: float = 30.0

    # Key rotation
    rotation_batch_size: int = 500
    rotation_max_batch_retries: int = 3
    rotation_retry_backoff_seconds: float = 0.5
    rotation_lease_seconds: int = 300
    key_retention_days: int = 30

    # Local KMS master key, urlsafe base64 of 32 bytes
    kms_master_key: SecretStr | None = None

    model_config = {"env_prefix": "LEXCORE_", "env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}
