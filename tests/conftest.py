"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Controllable clock
- Fake Lightning node with a simulated payer
- In-memory record store and the services built on it
- Apple decoded transaction payloads
- API test client with services installed on app.state
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

# Set environment variables BEFORE importing purple_api modules
os.environ.setdefault("DEPLOYMENT", "test")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("IAP_ENVIRONMENT", "Sandbox")

from appstoreserverlibrary.models.JWSTransactionDecodedPayload import (
    JWSTransactionDecodedPayload,
)
from fastapi import Request

from purple_api.exceptions import (
    AuthenticationError,
    InvalidAmountError,
    InvoiceNotFoundError,
    NodeUnavailableError,
)
from purple_api.models.domain import AuthenticatedIdentity, ConnectionParams, Invoice
from purple_api.services.apple_storekit_provider import FixedVerificationProvider
from purple_api.services.checkout import CheckoutManager
from purple_api.services.entitlements import EntitlementService
from purple_api.services.store import InMemoryStore

T0 = 1_700_000_000
PUBKEY_1 = "a" * 64
PUBKEY_2 = "b" * 64

# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Clock frozen at a given epoch second until advanced."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at T0."""
    return FakeClock()


# ============================================================================
# Lightning Node
# ============================================================================


class FakeLightningNode:
    """In-process stand-in for a Lightning node."""

    connection_params = ConnectionParams(
        nodeid="03" + "c" * 64,
        address="127.0.0.1:9735",
        rune="client-rune",
    )

    def __init__(self) -> None:
        self.invoices: dict[str, bool] = {}
        self.create_calls = 0
        self.query_calls = 0
        self.unavailable = False

    async def create_invoice(self, amount_msat: int, label: str, description: str) -> Invoice:
        if amount_msat <= 0:
            raise InvalidAmountError(amount_msat)
        if self.unavailable:
            raise NodeUnavailableError("node offline")
        self.create_calls += 1
        # Yield so concurrent callers can interleave
        await asyncio.sleep(0)
        self.invoices[label] = False
        return Invoice(
            bolt11=f"lnbc{amount_msat}n1{label}",
            label=label,
            connection_params=self.connection_params,
        )

    async def query_paid(self, label: str) -> bool:
        if self.unavailable:
            raise NodeUnavailableError("node offline")
        self.query_calls += 1
        if label not in self.invoices:
            raise InvoiceNotFoundError(label)
        return self.invoices[label]

    def pay(self, label: str) -> None:
        """Simulate a payer settling the invoice."""
        self.invoices[label] = True


@pytest.fixture
def lightning_node() -> FakeLightningNode:
    """Fresh fake node."""
    return FakeLightningNode()


# ============================================================================
# Store and Services
# ============================================================================


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory record store."""
    return InMemoryStore()


@pytest.fixture
def entitlements(store: InMemoryStore, clock: FakeClock) -> EntitlementService:
    """Entitlement service over the in-memory store."""
    return EntitlementService(store, clock)


@pytest.fixture
def checkout_manager(
    store: InMemoryStore,
    lightning_node: FakeLightningNode,
    entitlements: EntitlementService,
    clock: FakeClock,
) -> CheckoutManager:
    """Checkout manager wired to the fake node."""
    return CheckoutManager(store, lightning_node, entitlements, clock)


@pytest.fixture
def identity() -> AuthenticatedIdentity:
    """Authenticated identity for PUBKEY_1."""
    return AuthenticatedIdentity(pubkey=PUBKEY_1)


# ============================================================================
# Apple Payloads
# ============================================================================


@pytest.fixture
def decoded_transaction() -> Callable[..., JWSTransactionDecodedPayload]:
    """Factory for decoded App Store transaction payloads (millisecond times)."""

    def _create(
        transaction_id: str = "2000000000000001",
        account_token: str | None = None,
        purchase_date: int = T0,
        expires_date: int | None = T0 + 30 * 86400,
    ) -> JWSTransactionDecodedPayload:
        return JWSTransactionDecodedPayload(
            transactionId=transaction_id,
            originalTransactionId=transaction_id,
            bundleId="com.example.purple",
            productId="purple.monthly",
            purchaseDate=purchase_date * 1000,
            expiresDate=expires_date * 1000 if expires_date is not None else None,
            appAccountToken=account_token,
        )

    return _create


# ============================================================================
# API Client
# ============================================================================


class HeaderIdentityResolver:
    """Trusts an X-Test-Pubkey header. Test-only stand-in for request signing."""

    async def resolve(self, request: Request) -> AuthenticatedIdentity:
        pubkey = request.headers.get("x-test-pubkey")
        if not pubkey:
            raise AuthenticationError("missing X-Test-Pubkey")
        return AuthenticatedIdentity(pubkey=pubkey)


def auth_headers(pubkey: str) -> dict[str, str]:
    """Headers that authenticate as pubkey with HeaderIdentityResolver."""
    return {"X-Test-Pubkey": pubkey, "Authorization": "Test"}


@pytest.fixture
def install_services(
    store: InMemoryStore,
    entitlements: EntitlementService,
    checkout_manager: CheckoutManager,
    clock: FakeClock,
) -> Callable[..., Any]:
    """Install services on the application state."""
    from purple_api.main import app

    def _install(provider: Any | None = None) -> Any:
        app.state.clock = clock
        app.state.store = store
        app.state.entitlements = entitlements
        app.state.checkout_manager = checkout_manager
        app.state.verification_provider = provider or FixedVerificationProvider(clock)
        app.state.identity_resolver = HeaderIdentityResolver()
        return app

    return _install


@pytest.fixture
async def client(install_services: Callable[..., Any]) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with fixed verification."""
    app = install_services()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
