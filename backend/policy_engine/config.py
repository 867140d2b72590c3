"""
Configuração do motor via Pydantic Settings.

Valores vêm de variáveis de ambiente (sem prefixo, case-insensitive) ou de
``backend/.env``. ``get_settings()`` é cacheado; testes constroem ``Settings``
direto com overrides.
"""

import math
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[1] / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), case_sensitive=False, extra="ignore")

    app_name: str = "Zero-Trust Policy Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Stores e throttle: memory para dev/testes
    store_backend: Literal["memory", "postgres"] = "memory"
    alert_throttle_backend: Literal["memory", "redis"] = "memory"

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "policy_engine"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_pool_size: int = 20
    postgres_max_overflow: int = 10
    # Schema via `alembic upgrade head`; create_all só para dev/testes
    db_create_tables: bool = False

    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None

    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Caminho de decisão
    catalog_cache_ttl_seconds: float = 30.0
    role_cache_ttl_seconds: float = 30.0
    grant_cache_ttl_seconds: float = 15.0
    cache_max_entries: int = 10_000
    lookup_timeout_seconds: float = 0.5
    high_risk_permission_patterns: List[str] = ["admin:**", "system:**", "*:delete"]
    # Políticas e regras de alerta padrão na subida, se o store estiver vazio
    seed_defaults: bool = True

    # Trust score
    trust_weight_device: float = 0.25
    trust_weight_network: float = 0.20
    trust_weight_behavior: float = 0.30
    trust_weight_authentication: float = 0.15
    trust_weight_location: float = 0.10
    trust_score_half_life_minutes: float = 60.0
    trust_suspicious_countries: List[str] = ["XX", "UNKNOWN"]

    alert_auto_resolve_hours: int = 24
    alert_webhook_url: str | None = None
    alert_webhook_timeout_seconds: float = 8.0

    audit_event_retention_days: int = 365
    trust_history_retention_days: int = 90

    metrics_enabled: bool = True

    @field_validator("trust_suspicious_countries")
    @classmethod
    def _upper_countries(cls, value: List[str]) -> List[str]:
        return [country.strip().upper() for country in value if country.strip()]

    @field_validator("lookup_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("trust_score_half_life_minutes")
    @classmethod
    def _non_negative_half_life(cls, value: float) -> float:
        # 0 desliga o decaimento
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "Settings":
        total = sum(self.trust_weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"trust weights must sum to 1.0 (got {total:.4f})")
        return self

    @property
    def trust_weights(self) -> dict[str, float]:
        return {
            "device": self.trust_weight_device,
            "network": self.trust_weight_network,
            "behavior": self.trust_weight_behavior,
            "authentication": self.trust_weight_authentication,
            "location": self.trust_weight_location,
        }

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache()
def get_settings() -> Settings:
    """Instância única de Settings, carregada na primeira chamada."""
    return Settings()
