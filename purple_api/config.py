"""
Application Configuration - Pydantic Settings for type-safe config.

FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


IAP_ENVIRONMENTS = ("Sandbox", "Production")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Deployment - "production", "staging" or "test"
    deployment: str = "production"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Purple API"
    api_version: str = "0.1.0"
    api_description: str = "Checkout and entitlement service for Purple subscriptions"
    service_name: str = "purple-api"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Record store - empty means in-memory (single process, non-durable)
    database_url: str = ""
    database_pool_size: int = 10
    store_max_cas_retries: int = 5

    # Apple In-App Purchase verification
    iap_root_ca_dir: str = "./apple-root-ca"
    iap_bundle_id: str = ""
    iap_app_apple_id: int | None = None  # Required by Apple for Production verification
    iap_environment: str = "Production"  # "Sandbox" or "Production"
    iap_issuer_id: str = ""
    iap_key_id: str = ""
    iap_private_key_path: str = ""
    iap_online_checks: bool = True  # OCSP checks while verifying certificate chains

    # Substitutes a fixed one-year entitlement for real verification (test deployments only)
    mock_verify_receipt: bool = False

    # Lightning node (Core Lightning REST)
    ln_rest_url: str = ""
    ln_rest_rune: str = ""  # Server-side rune (invoice + listinvoices)
    ln_node_id: str = ""
    ln_node_address: str = ""
    ln_client_rune: str = ""  # Handed to clients so they can watch their invoice
    ln_request_timeout: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The mock verification provider grants a year of access to anyone,
        so it is refused outside an explicit test deployment.
        """
        errors: list[str] = []

        if self.mock_verify_receipt and self.deployment != "test":
            errors.append(
                f"MOCK_VERIFY_RECEIPT is only allowed when DEPLOYMENT=test "
                f"(got DEPLOYMENT={self.deployment})"
            )

        if self.iap_environment not in IAP_ENVIRONMENTS:
            errors.append(
                f"IAP_ENVIRONMENT must be one of {', '.join(IAP_ENVIRONMENTS)}, "
                f"got: {self.iap_environment}"
            )
        elif (
            self.iap_environment == "Production"
            and self.iap_app_apple_id is None
            and not self.mock_verify_receipt
            and self.iap_bundle_id
        ):
            errors.append("IAP_APP_APPLE_ID is required when IAP_ENVIRONMENT=Production")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def is_sandbox(self) -> bool:
        """Whether IAP verification targets Apple's sandbox."""
        return self.iap_environment == "Sandbox"


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
