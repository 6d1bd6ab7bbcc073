from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["sandbox", "simulation", "production"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./fatoora.db"
    LOG_LEVEL: str = "INFO"

    # ZATCA Fatoora gateways
    ZATCA_SANDBOX_BASE_URL: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/developer-portal"
    ZATCA_SIMULATION_BASE_URL: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/simulation"
    ZATCA_PRODUCTION_BASE_URL: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/core"
    ZATCA_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Key material
    ZATCA_KEY_ALGORITHM: Literal["rsa", "ec"] = "rsa"
    ZATCA_RSA_KEY_SIZE: int = Field(default=2048, ge=2048)
    ZATCA_KEY_PASSPHRASE: str = ""

    # Invoices under this total (SAR) always go through clearance
    ZATCA_CLEARANCE_THRESHOLD: Decimal = Decimal("1000")
    ZATCA_ONBOARDING_ENVIRONMENT: Environment = "sandbox"


settings = Settings()


@dataclass(frozen=True)
class ZatcaConfig:
    """Immutable engine configuration, built once and passed to collaborators."""

    sandbox_base_url: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/developer-portal"
    simulation_base_url: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/simulation"
    production_base_url: str = "https://gw-fatoora.zatca.gov.sa/e-invoicing/core"
    http_timeout: float = 30.0
    key_algorithm: str = "rsa"
    rsa_key_size: int = 2048
    key_passphrase: str = ""
    clearance_threshold: Decimal = Decimal("1000")
    onboarding_environment: Environment = "sandbox"

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> ZatcaConfig:
        s = source or settings
        return cls(
            sandbox_base_url=s.ZATCA_SANDBOX_BASE_URL,
            simulation_base_url=s.ZATCA_SIMULATION_BASE_URL,
            production_base_url=s.ZATCA_PRODUCTION_BASE_URL,
            http_timeout=s.ZATCA_HTTP_TIMEOUT_SECONDS,
            key_algorithm=s.ZATCA_KEY_ALGORITHM,
            rsa_key_size=s.ZATCA_RSA_KEY_SIZE,
            key_passphrase=s.ZATCA_KEY_PASSPHRASE,
            clearance_threshold=s.ZATCA_CLEARANCE_THRESHOLD,
            onboarding_environment=s.ZATCA_ONBOARDING_ENVIRONMENT,
        )

    def base_url_for(self, environment: Environment) -> str:
        urls = {
            "sandbox": self.sandbox_base_url,
            "simulation": self.simulation_base_url,
            "production": self.production_base_url,
        }
        if environment not in urls:
            raise ValueError(f"Unknown ZATCA environment: {environment}")
        return urls[environment]
