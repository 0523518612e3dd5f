"""
FastAPI Dependencies - identity resolution and service access.

Request-signature authentication is an opaque capability: an
IdentityResolver turns a request into an AuthenticatedIdentity or raises
AuthenticationError. The application installs one on app.state; until a
real resolver is installed every authenticated request is rejected.
"""

from typing import Protocol

from fastapi import Depends, HTTPException, Request, status
from structlog import get_logger

from purple_api.exceptions import AuthenticationError
from purple_api.models.domain import AuthenticatedIdentity
from purple_api.services.apple_storekit_provider import VerificationProvider
from purple_api.services.checkout import CheckoutManager
from purple_api.services.clock import Clock
from purple_api.services.entitlements import EntitlementService
from purple_api.services.store import KeyValueStore

logger = get_logger(__name__)


class IdentityResolver(Protocol):
    """Resolves a request to a verified identity."""

    async def resolve(self, request: Request) -> AuthenticatedIdentity:
        """
        Raises:
            AuthenticationError: If the request carries no valid proof of identity
        """
        ...


class RejectingIdentityResolver:
    """Default resolver: no authentication scheme is installed."""

    async def resolve(self, request: Request) -> AuthenticatedIdentity:
        raise AuthenticationError("no identity resolver configured")


# ============================================================================
# Identity
# ============================================================================


async def get_authenticated_identity(request: Request) -> AuthenticatedIdentity:
    """
    FastAPI dependency resolving the caller's identity.

    Raises:
        HTTPException 401 if the request cannot be authenticated
    """
    resolver: IdentityResolver = request.app.state.identity_resolver
    try:
        return await resolver.resolve(request)
    except AuthenticationError as exc:
        logger.warning("authentication_failed", path=request.url.path, reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc


async def get_optional_identity(request: Request) -> AuthenticatedIdentity | None:
    """Identity when the request carries credentials, None otherwise."""
    if "authorization" not in request.headers:
        return None
    return await get_authenticated_identity(request)


def require_account_owner(
    pubkey: str,
    identity: AuthenticatedIdentity = Depends(get_authenticated_identity),
) -> AuthenticatedIdentity:
    """
    Identity that must match the {pubkey} path parameter.

    Raises:
        HTTPException 403 if the caller acts on another account
    """
    if identity.pubkey != pubkey:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Authenticated pubkey does not match the account",
        )
    return identity


# ============================================================================
# Services
# ============================================================================


def get_store(request: Request) -> KeyValueStore:
    return request.app.state.store  # type: ignore[no-any-return]


def get_checkout_manager(request: Request) -> CheckoutManager:
    return request.app.state.checkout_manager  # type: ignore[no-any-return]


def get_entitlement_service(request: Request) -> EntitlementService:
    return request.app.state.entitlements  # type: ignore[no-any-return]


def get_verification_provider(request: Request) -> VerificationProvider:
    return request.app.state.verification_provider  # type: ignore[no-any-return]


def get_clock(request: Request) -> Clock:
    return request.app.state.clock  # type: ignore[no-any-return]
