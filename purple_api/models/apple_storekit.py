"""
Apple StoreKit configuration model.

Apple App Store Server API v2 uses JWS (JSON Web Signature) format for
transaction data; verification needs the expected app identity and
Apple's root certificates.
"""

from dataclasses import dataclass

from appstoreserverlibrary.models.Environment import Environment


@dataclass(frozen=True)
class AppStoreConfig:
    """Configuration for verifying App Store transactions."""

    bundle_id: str  # App bundle ID
    environment: str  # "Production" or "Sandbox"
    root_ca_dir: str  # Directory holding Apple root certificates
    app_apple_id: int | None = None  # Required for Production
    online_checks: bool = True  # OCSP checks during chain verification

    # App Store Server API credentials
    key_id: str = ""
    issuer_id: str = ""
    private_key_path: str = ""

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.bundle_id:
            raise ValueError("StoreKit bundle_id is required")
        if self.environment not in ("Production", "Sandbox"):
            raise ValueError("Environment must be 'Production' or 'Sandbox'")
        if self.environment == "Production" and self.app_apple_id is None:
            raise ValueError("app_apple_id is required in Production")

    @property
    def apple_environment(self) -> Environment:
        """Environment enum expected by Apple's library."""
        if self.environment == "Sandbox":
            return Environment.SANDBOX
        return Environment.PRODUCTION
