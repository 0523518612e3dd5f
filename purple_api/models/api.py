"""
API Models - Pydantic models for request/response validation.

Response models are built from domain dataclasses via from_domain().
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

from purple_api.models.domain import Account, Checkout, Invoice, Product, Transaction

# ============================================================================
# Product Models
# ============================================================================


class ProductResponse(BaseModel):
    """One entry of GET /products, keyed by product template name."""

    description: str
    special_label: str | None
    amount_msat: int
    expiry: int | None = Field(None, description="Granted time in seconds")

    @classmethod
    def from_domain(cls, product: Product) -> "ProductResponse":
        return cls(
            description=product.description,
            special_label=product.special_label,
            amount_msat=product.amount_msat,
            expiry=product.duration,
        )


# ============================================================================
# Checkout Models
# ============================================================================


class CreateCheckoutRequest(BaseModel):
    """POST /ln-checkout request body."""

    product_template_name: str = Field(..., min_length=1, max_length=255)


class ConnectionParamsResponse(BaseModel):
    """How a client connects to the node to watch its invoice."""

    nodeid: str
    address: str
    rune: str


class InvoiceResponse(BaseModel):
    """Invoice bound to a checkout. paid is omitted until observed."""

    bolt11: str
    label: str
    connection_params: ConnectionParamsResponse
    paid: bool | None = None

    @model_serializer(mode="wrap")
    def omit_unobserved_paid(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        if data.get("paid") is None:
            data.pop("paid", None)
        return data

    @classmethod
    def from_domain(cls, invoice: Invoice) -> "InvoiceResponse":
        return cls(
            bolt11=invoice.bolt11,
            label=invoice.label,
            connection_params=ConnectionParamsResponse(
                nodeid=invoice.connection_params.nodeid,
                address=invoice.connection_params.address,
                rune=invoice.connection_params.rune,
            ),
            paid=invoice.paid,
        )


class CheckoutResponse(BaseModel):
    """Checkout state returned by every checkout endpoint."""

    id: str
    product_template_name: str
    created_at: int
    verified_pubkey: str | None
    invoice: InvoiceResponse | None
    completed: bool

    @classmethod
    def from_domain(cls, checkout: Checkout) -> "CheckoutResponse":
        return cls(
            id=checkout.id,
            product_template_name=checkout.product_template_name,
            created_at=checkout.created_at,
            verified_pubkey=checkout.verified_pubkey,
            invoice=InvoiceResponse.from_domain(checkout.invoice) if checkout.invoice else None,
            completed=checkout.completed,
        )


# ============================================================================
# Account Models
# ============================================================================


class AccountResponse(BaseModel):
    """GET /accounts/{pubkey} response. active is computed at read time."""

    pubkey: str
    created_at: int
    expiry: int
    subscriber_number: int
    active: bool

    @classmethod
    def from_domain(cls, account: Account, now: int) -> "AccountResponse":
        return cls(
            pubkey=account.pubkey,
            created_at=account.created_at,
            expiry=account.expiry,
            subscriber_number=account.subscriber_number,
            active=account.is_active(now),
        )


# ============================================================================
# Apple In-App Purchase Models
# ============================================================================


class AppStoreReceiptRequest(BaseModel):
    """POST /accounts/{pubkey}/apple-iap/app-store-receipt request body."""

    receipt: str = Field(..., min_length=1, description="Base64 encoded app receipt")


class TransactionIdRequest(BaseModel):
    """POST /accounts/{pubkey}/apple-iap/transaction-id request body."""

    transaction_id: str = Field(..., min_length=1, max_length=64)


class TransactionResponse(BaseModel):
    """Canonical transaction."""

    type: Literal["iap", "ln"]
    id: str
    start_date: int
    end_date: int | None
    purchased_date: int
    duration: int | None

    @classmethod
    def from_domain(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            type=transaction.type.value,
            id=transaction.id,
            start_date=transaction.start_date,
            end_date=transaction.end_date,
            purchased_date=transaction.purchased_date,
            duration=transaction.duration,
        )


class IAPVerificationResponse(BaseModel):
    """
    Result of a receipt or transaction-id verification.

    transactions is null when nothing belongs to the account; account is
    null when no grant was applied.
    """

    transactions: list[TransactionResponse] | None
    account: AccountResponse | None


class OrderLookupResponse(BaseModel):
    """GET /apple-iap/order-id/{order_id} response."""

    transactions: list[TransactionResponse] | None


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    store: Literal["connected", "disconnected"]
    timestamp: int
