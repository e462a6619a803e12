"""Library configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

CONCRETE_SET_DIALECT = "http://www.onvif.org/ver10/tev/topicExpression/ConcreteSet"


class Settings(BaseSettings):
    """ONVIF client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ONVIF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # WSDL location (None = wsdl/ directory bundled with the onvif package)
    wsdl_dir: Optional[Path] = None

    # HTTP transport
    connect_timeout: float = 36.0
    receive_timeout: float = 32.0
    log_soap_messages: bool = False

    # Device
    device_service_path: str = "/onvif/device_service"

    # PullPoint subscriptions
    subscription_lifetime: str = "PT1M"
    topic_dialect: str = CONCRETE_SET_DIALECT
    pull_timeout: float = 10.0  # Seconds the device may hold a pull open
    pull_message_limit: int = 10
    pull_retry_delay: float = 2.0
    pull_fault_retries: int = 3
    renew_margin: float = 10.0  # Seconds before expiry to renew (0 = never)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
