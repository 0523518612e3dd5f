"""
API Routes - FastAPI endpoints for checkouts, accounts and Apple IAP.

Routes stay thin: parse, call one service, map domain errors to HTTP.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from purple_api.api.dependencies import (
    get_authenticated_identity,
    get_checkout_manager,
    get_clock,
    get_entitlement_service,
    get_optional_identity,
    get_store,
    get_verification_provider,
    require_account_owner,
)
from purple_api.exceptions import (
    ConcurrencyError,
    InvoicePendingError,
    PurpleError,
    ResourceNotFoundError,
    TrustAnchorError,
    UpstreamUnavailableError,
    ValidationError,
    VerificationFailedError,
)
from purple_api.models.api import (
    AccountResponse,
    AppStoreReceiptRequest,
    CheckoutResponse,
    CreateCheckoutRequest,
    HealthResponse,
    IAPVerificationResponse,
    OrderLookupResponse,
    ProductResponse,
    TransactionIdRequest,
    TransactionResponse,
)
from purple_api.models.domain import AuthenticatedIdentity, Transaction
from purple_api.observability import get_logger, metrics
from purple_api.services.apple_storekit_provider import VerificationProvider
from purple_api.services.checkout import CheckoutManager
from purple_api.services.clock import Clock
from purple_api.services.entitlements import EntitlementService
from purple_api.services.store import ACCOUNTS, KeyValueStore

logger = get_logger(__name__)

router = APIRouter()


def http_error(exc: PurpleError) -> HTTPException:
    """Map a domain error to its HTTP status."""
    if isinstance(exc, ResourceNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (InvoicePendingError, ConcurrencyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, UpstreamUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, VerificationFailedError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal error",
    )


# ============================================================================
# Products
# ============================================================================


@router.get("/products", response_model=dict[str, ProductResponse])
async def list_products(
    manager: CheckoutManager = Depends(get_checkout_manager),
) -> dict[str, ProductResponse]:
    """Product catalog keyed by product template name."""
    return {name: ProductResponse.from_domain(p) for name, p in manager.catalog.items()}


# ============================================================================
# Lightning Checkout
# ============================================================================


@router.post("/ln-checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    manager: CheckoutManager = Depends(get_checkout_manager),
) -> CheckoutResponse:
    """Start a Lightning checkout for a product."""
    try:
        checkout = await manager.create_checkout(request.product_template_name)
    except PurpleError as exc:
        raise http_error(exc) from exc
    return CheckoutResponse.from_domain(checkout)


@router.get("/ln-checkout/{checkout_id}", response_model=CheckoutResponse)
async def get_checkout(
    checkout_id: str,
    manager: CheckoutManager = Depends(get_checkout_manager),
) -> CheckoutResponse:
    """Read checkout state. Clients poll this."""
    try:
        checkout = await manager.get_checkout(checkout_id)
    except PurpleError as exc:
        raise http_error(exc) from exc
    return CheckoutResponse.from_domain(checkout)


@router.put("/ln-checkout/{checkout_id}/verify", response_model=CheckoutResponse)
async def verify_checkout(
    checkout_id: str,
    manager: CheckoutManager = Depends(get_checkout_manager),
    identity: AuthenticatedIdentity = Depends(get_authenticated_identity),
) -> CheckoutResponse:
    """
    Bind the checkout to the caller and issue its invoice.

    Repeated calls return the same invoice.
    """
    try:
        checkout = await manager.issue_invoice(checkout_id, identity)
    except PurpleError as exc:
        raise http_error(exc) from exc
    return CheckoutResponse.from_domain(checkout)


@router.post("/ln-checkout/{checkout_id}/check-invoice", response_model=CheckoutResponse)
async def check_invoice(
    checkout_id: str,
    manager: CheckoutManager = Depends(get_checkout_manager),
) -> CheckoutResponse:
    """Ask the node once whether the checkout's invoice is paid."""
    try:
        checkout = await manager.check_payment(checkout_id)
    except PurpleError as exc:
        raise http_error(exc) from exc
    return CheckoutResponse.from_domain(checkout)


# ============================================================================
# Accounts
# ============================================================================


@router.get("/accounts/{pubkey}", response_model=AccountResponse)
async def get_account(
    pubkey: str,
    entitlements: EntitlementService = Depends(get_entitlement_service),
    clock: Clock = Depends(get_clock),
) -> AccountResponse:
    """Account entitlement state; 404 before the first grant."""
    try:
        account = await entitlements.get_account(pubkey)
    except PurpleError as exc:
        raise http_error(exc) from exc
    return AccountResponse.from_domain(account, clock())


# ============================================================================
# Apple In-App Purchase
# ============================================================================


async def _grant_verified(
    operation: str,
    pubkey: str,
    transactions: list[Transaction] | None,
    entitlements: EntitlementService,
    clock: Clock,
) -> IAPVerificationResponse:
    if transactions is None:
        metrics.record_verification(operation, "no_entitlement")
        logger.info("iap_no_entitlement", operation=operation, pubkey=pubkey)
        return IAPVerificationResponse(transactions=None, account=None)

    account = await entitlements.grant_all(pubkey, transactions)
    metrics.record_verification(operation, "entitled")
    return IAPVerificationResponse(
        transactions=[TransactionResponse.from_domain(t) for t in transactions],
        account=AccountResponse.from_domain(account, clock()),
    )


@router.post(
    "/accounts/{pubkey}/apple-iap/app-store-receipt",
    response_model=IAPVerificationResponse,
)
async def verify_app_store_receipt(
    pubkey: str,
    request: AppStoreReceiptRequest,
    identity: AuthenticatedIdentity = Depends(require_account_owner),
    provider: VerificationProvider = Depends(get_verification_provider),
    entitlements: EntitlementService = Depends(get_entitlement_service),
    clock: Clock = Depends(get_clock),
) -> IAPVerificationResponse:
    """
    Verify an App Store receipt and extend the account.

    transactions is null when the receipt holds nothing for this account.
    """
    try:
        transactions = await provider.verify_receipt(request.receipt, identity)
        return await _grant_verified("receipt", pubkey, transactions, entitlements, clock)
    except TrustAnchorError as exc:
        metrics.record_verification("receipt", "failed")
        logger.error("trust_anchors_unavailable", path=exc.path, reason=exc.reason)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Verification is not available",
        ) from exc
    except PurpleError as exc:
        metrics.record_verification("receipt", "failed")
        raise http_error(exc) from exc


@router.post(
    "/accounts/{pubkey}/apple-iap/transaction-id",
    response_model=IAPVerificationResponse,
)
async def verify_transaction_id(
    pubkey: str,
    request: TransactionIdRequest,
    identity: AuthenticatedIdentity = Depends(require_account_owner),
    provider: VerificationProvider = Depends(get_verification_provider),
    entitlements: EntitlementService = Depends(get_entitlement_service),
    clock: Clock = Depends(get_clock),
) -> IAPVerificationResponse:
    """Verify the history behind an App Store transaction id and extend the account."""
    try:
        transactions = await provider.verify_transaction_id(request.transaction_id, identity)
        return await _grant_verified(
            "transaction_id", pubkey, transactions, entitlements, clock
        )
    except TrustAnchorError as exc:
        metrics.record_verification("transaction_id", "failed")
        logger.error("trust_anchors_unavailable", path=exc.path, reason=exc.reason)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Verification is not available",
        ) from exc
    except PurpleError as exc:
        metrics.record_verification("transaction_id", "failed")
        raise http_error(exc) from exc


@router.get("/apple-iap/order-id/{order_id}", response_model=OrderLookupResponse)
async def lookup_order_id(
    order_id: str,
    identity: AuthenticatedIdentity | None = Depends(get_optional_identity),
    provider: VerificationProvider = Depends(get_verification_provider),
) -> OrderLookupResponse:
    """
    Look up the transactions behind a receipt-email order id.

    Without credentials no account filter is applied (support lookups).
    Lookups never grant entitlement.
    """
    try:
        transactions = await provider.lookup_order_id(order_id, identity)
    except PurpleError as exc:
        metrics.record_verification("order_id", "failed")
        raise http_error(exc) from exc

    metrics.record_verification("order_id", "entitled" if transactions else "no_entitlement")
    return OrderLookupResponse(
        transactions=[TransactionResponse.from_domain(t) for t in transactions]
        if transactions
        else None
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: KeyValueStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies the record store answers.
    """
    try:
        await store.count(ACCOUNTS)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "store": "disconnected",
                "error": str(exc),
                "timestamp": clock(),
            },
        ) from exc

    return HealthResponse(status="healthy", store="connected", timestamp=clock())
