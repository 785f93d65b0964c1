from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OPERATOR_API_KEY = "fs-operator-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="FS_", extra="ignore")

    app_name: str = "Order Fulfillment Sync"
    env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./fulfillment.db"

    fulfillment_environment: Literal["test", "production"] = "test"

    order_number_width: int = Field(default=7, ge=3, le=12)
    order_number_prefix_test: str = "TEST"
    order_number_prefix_production: str = "TGF"

    feature_ffl_hold: bool = True
    feature_multi_firearm_hold: bool = True
    policy_firearm_limit: int = Field(default=5, ge=1)
    policy_firearm_window_days: int = Field(default=30, ge=1)

    # Distributor order intake: engine | fake
    distributor_backend: str = "engine"
    distributor_engine_url: str = "https://engine.example.com/webhook/api/rsr/create-order"
    distributor_api_key: str | None = None
    distributor_store_name: str = "THE GUN FIRM"
    distributor_ffl_fallback: str = ""
    distributor_timeout_seconds: float = Field(default=30.0, gt=0)
    distributor_max_attempts: int = Field(default=3, ge=1, le=10)
    distributor_backoff_base_seconds: float = Field(default=0.5, ge=0)
    distributor_backoff_max_seconds: float = Field(default=8.0, ge=0)

    # CRM deals: zoho | memory
    crm_backend: str = "zoho"
    crm_api_base: str = "https://www.zohoapis.com/crm/v2"
    crm_access_token: str | None = None
    crm_timeout_seconds: float = Field(default=15.0, gt=0)
    crm_max_attempts: int = Field(default=3, ge=1, le=10)

    auth_enabled: bool = True
    operator_api_key: str = DEFAULT_OPERATOR_API_KEY

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        if self.operator_api_key == DEFAULT_OPERATOR_API_KEY:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: FS_OPERATOR_API_KEY"
            )

    def order_number_prefix(self, environment: str) -> str:
        if environment == "production":
            return self.order_number_prefix_production
        return self.order_number_prefix_test


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
