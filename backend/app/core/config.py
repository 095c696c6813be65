"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    app_mode: str = "demo"

    # Entity store; one sqlite file holds every tenant, rows keyed by tenant_id.
    tms_db_path: str = "./data/tms_state.db"
    store_busy_timeout_seconds: float = 30.0

    # Tenancy / auth
    auth_enabled: bool = False
    default_tenant_id: str = "demo"
    tenant_tokens: str = ""

    # Numbering
    load_number_start: int = 301
    invoice_number_start: int = 1001
    settlement_number_start: int = 1001

    # Billing
    invoice_net_days: int = 30
    payment_tolerance_ratio: float = 0.01

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"

    def is_demo_mode(self) -> bool:
        return self.normalized_app_mode() == "demo"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
