from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="POS Till", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    database_url: str = Field(default="sqlite:///./till.db", alias="DATABASE_URL")

    # ERP remoto (productos, tasas, ventas, cambio)
    erp_base_url: str = Field(default="http://127.0.0.1:4000", alias="ERP_BASE_URL")
    erp_token: str = Field(default="", alias="ERP_TOKEN")
    erp_timeout: float = Field(default=10.0, alias="ERP_TIMEOUT")

    # Moneda local sin monedas por debajo de 1000
    sos_step: int = Field(default=1000, alias="SOS_STEP")
    usd_epsilon: str = Field(default="0.01", alias="USD_EPSILON")
    pricing_rate: Literal["accounting", "sell"] = Field(default="accounting", alias="PRICING_RATE")

    # Escáner
    scan_lock_ms: int = Field(default=700, alias="SCAN_LOCK_MS")
    scan_dedup_ms: int = Field(default=1000, alias="SCAN_DEDUP_MS")
    scan_feedback_ms: int = Field(default=1300, alias="SCAN_FEEDBACK_MS")

    first_cart_id: str = Field(default="A", alias="FIRST_CART_ID")
    audit_file: str = Field(default="data/checkout_audit.jsonl", alias="AUDIT_FILE")

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True, extra="ignore")


settings = Settings()


def get_settings() -> Settings:
    """Dependencia FastAPI: `Depends(get_settings)`; en tests se sobreescribe."""
    return settings
