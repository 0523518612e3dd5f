"""
Apple StoreKit verification providers.

Uses Apple App Store Server API v2 for transaction verification.
https://developer.apple.com/documentation/appstoreserverapi

Two interchangeable providers sit behind VerificationProvider:
- AppStoreVerificationProvider: real history lookup + JWS chain verification
- FixedVerificationProvider: one fixed year of access (test deployments only)
"""

from pathlib import Path
from typing import Protocol

from appstoreserverlibrary.api_client import AsyncAppStoreServerAPIClient
from structlog import get_logger

from purple_api.config import ConfigurationError, Settings
from purple_api.models.apple_storekit import AppStoreConfig
from purple_api.models.domain import (
    SECONDS_PER_DAY,
    AuthenticatedIdentity,
    Transaction,
    TransactionType,
)
from purple_api.services.clock import Clock, current_time
from purple_api.services.receipt_verifier import (
    extract_transaction_id,
    fetch_validated_transactions,
    fetch_validated_transactions_from_order_id,
)
from purple_api.services.trust_anchors import TrustAnchorCache

logger = get_logger(__name__)

MOCK_TRANSACTION_ID = "1"
MOCK_ENTITLEMENT_SECONDS = 365 * SECONDS_PER_DAY


class VerificationProvider(Protocol):
    """
    Verification provider protocol.

    Every operation returns the validated canonical transactions, or None
    when nothing was found for the caller ("no entitlement").
    """

    async def verify_receipt(
        self, receipt_data: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        ...

    async def verify_transaction_id(
        self, transaction_id: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        ...

    async def lookup_order_id(
        self, order_id: str, identity: AuthenticatedIdentity | None = None
    ) -> list[Transaction] | None:
        ...


class AppStoreVerificationProvider:
    """
    Apple App Store Server API provider.

    Trust anchors are read through a shared cache; the API client is
    owned by the caller and closed on shutdown.
    """

    def __init__(
        self,
        config: AppStoreConfig,
        trust_anchor_cache: TrustAnchorCache,
        client: AsyncAppStoreServerAPIClient,
    ) -> None:
        """
        Initialize the provider.

        Args:
            config: Expected app identity and root certificate directory
            trust_anchor_cache: Process-wide certificate cache
            client: Authenticated App Store Server API client
        """
        self.config = config
        self.trust_anchor_cache = trust_anchor_cache
        self.client = client

        logger.info(
            "apple_storekit_provider_initialized",
            bundle_id=config.bundle_id,
            environment=config.environment,
        )

    async def verify_receipt(
        self, receipt_data: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        """
        Verify a base64 app receipt for the authenticated account.

        Raises:
            MalformedReceiptError: If receipt_data is not base64
            VerificationFailedError: If any signed transaction is rejected
        """
        transaction_id = extract_transaction_id(receipt_data)
        logger.info(
            "receipt_transaction_id_extracted",
            pubkey=identity.pubkey,
            found=transaction_id is not None,
        )
        if transaction_id is None:
            return None
        return await self.verify_transaction_id(transaction_id, identity)

    async def verify_transaction_id(
        self, transaction_id: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        """Verify the history of transaction_id for the authenticated account."""
        trust_anchors = await self.trust_anchor_cache.get_trust_anchors(self.config.root_ca_dir)
        return await fetch_validated_transactions(
            self.client,
            transaction_id,
            trust_anchors,
            self.config.apple_environment,
            self.config.bundle_id,
            identity.account_token,
            self.config.app_apple_id,
            self.config.online_checks,
        )

    async def lookup_order_id(
        self, order_id: str, identity: AuthenticatedIdentity | None = None
    ) -> list[Transaction] | None:
        """
        Verify the transactions behind a receipt-email order id.

        Without an identity no account filter is applied.
        """
        trust_anchors = await self.trust_anchor_cache.get_trust_anchors(self.config.root_ca_dir)
        return await fetch_validated_transactions_from_order_id(
            self.client,
            order_id,
            trust_anchors,
            self.config.apple_environment,
            self.config.bundle_id,
            identity.account_token if identity else None,
            self.config.app_apple_id,
            self.config.online_checks,
        )

    async def close(self) -> None:
        await self.client.async_close()


class FixedVerificationProvider:
    """Grants a fixed one-year IAP transaction to every caller."""

    def __init__(self, clock: Clock = current_time) -> None:
        self.clock = clock
        logger.warning("fixed_verification_provider_enabled")

    def _mock_transactions(self) -> list[Transaction]:
        now = self.clock()
        return [
            Transaction(
                type=TransactionType.IAP,
                id=MOCK_TRANSACTION_ID,
                start_date=now,
                end_date=now + MOCK_ENTITLEMENT_SECONDS,
                purchased_date=now,
                duration=None,
            )
        ]

    async def verify_receipt(
        self, receipt_data: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        return self._mock_transactions()

    async def verify_transaction_id(
        self, transaction_id: str, identity: AuthenticatedIdentity
    ) -> list[Transaction] | None:
        return self._mock_transactions()

    async def lookup_order_id(
        self, order_id: str, identity: AuthenticatedIdentity | None = None
    ) -> list[Transaction] | None:
        return self._mock_transactions()

    async def close(self) -> None:
        pass


def build_app_store_config(settings: Settings) -> AppStoreConfig:
    """Build StoreKit configuration from settings."""
    return AppStoreConfig(
        bundle_id=settings.iap_bundle_id,
        environment=settings.iap_environment,
        root_ca_dir=settings.iap_root_ca_dir,
        app_apple_id=settings.iap_app_apple_id,
        online_checks=settings.iap_online_checks,
        key_id=settings.iap_key_id,
        issuer_id=settings.iap_issuer_id,
        private_key_path=settings.iap_private_key_path,
    )


def build_verification_provider(
    settings: Settings,
    trust_anchor_cache: TrustAnchorCache,
    clock: Clock = current_time,
) -> AppStoreVerificationProvider | FixedVerificationProvider:
    """
    Select the verification provider for this deployment.

    Raises:
        ConfigurationError: If the fixed provider is requested outside a
            test deployment, or the App Store credentials are unusable
    """
    if settings.mock_verify_receipt:
        if settings.deployment != "test":
            raise ConfigurationError("Fixed verification provider requires DEPLOYMENT=test")
        return FixedVerificationProvider(clock)

    try:
        config = build_app_store_config(settings)
        signing_key = Path(config.private_key_path).read_bytes()
    except (ValueError, OSError) as exc:
        raise ConfigurationError(f"App Store verification is misconfigured: {exc}") from exc

    client = AsyncAppStoreServerAPIClient(
        signing_key,
        config.key_id,
        config.issuer_id,
        config.bundle_id,
        config.apple_environment,
    )
    return AppStoreVerificationProvider(config, trust_anchor_cache, client)
