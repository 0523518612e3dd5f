"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses. Records
cross the store boundary as plain JSON objects via to_record/from_record.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import NAMESPACE_URL, uuid5

SECONDS_PER_DAY = 24 * 60 * 60


class TransactionType(str, Enum):
    """Source of a canonical transaction."""

    IAP = "iap"
    LN = "ln"


@dataclass(frozen=True)
class Product:
    """Static catalog entry. Grants either a duration or a fixed expiry."""

    name: str
    amount_msat: int
    description: str
    special_label: str | None = None
    duration: int | None = None  # seconds
    fixed_expiry: int | None = None  # epoch seconds

    def __post_init__(self) -> None:
        """Validate product configuration."""
        if not self.name:
            raise ValueError("Product name required")
        if self.amount_msat <= 0:
            raise ValueError(f"Amount must be positive: {self.amount_msat}")
        if (self.duration is None) == (self.fixed_expiry is None):
            raise ValueError("Product needs exactly one of duration or fixed_expiry")
        if self.duration is not None and self.duration <= 0:
            raise ValueError(f"Duration must be positive: {self.duration}")


@dataclass(frozen=True)
class ConnectionParams:
    """How a client reaches the node to watch its invoice."""

    nodeid: str
    address: str
    rune: str


@dataclass(frozen=True)
class Invoice:
    """Lightning invoice bound to a checkout. paid is None until observed."""

    bolt11: str
    label: str
    connection_params: ConnectionParams
    paid: bool | None = None

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "bolt11": self.bolt11,
            "label": self.label,
            "connection_params": {
                "nodeid": self.connection_params.nodeid,
                "address": self.connection_params.address,
                "rune": self.connection_params.rune,
            },
        }
        if self.paid is not None:
            record["paid"] = self.paid
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Invoice":
        params = record["connection_params"]
        return cls(
            bolt11=record["bolt11"],
            label=record["label"],
            connection_params=ConnectionParams(
                nodeid=params["nodeid"],
                address=params["address"],
                rune=params["rune"],
            ),
            paid=record.get("paid"),
        )


class CheckoutState(str, Enum):
    """Derived checkout lifecycle state."""

    CREATED = "created"
    INVOICE_ISSUED = "invoice_issued"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Checkout:
    """A purchase attempt for one product."""

    id: str
    product_template_name: str
    created_at: int
    verified_pubkey: str | None = None
    invoice: Invoice | None = None
    completed: bool = False

    @property
    def state(self) -> CheckoutState:
        """Lifecycle state derived from the stored fields."""
        if self.completed:
            return CheckoutState.COMPLETED
        if self.invoice is not None:
            return CheckoutState.INVOICE_ISSUED
        return CheckoutState.CREATED

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_template_name": self.product_template_name,
            "created_at": self.created_at,
            "verified_pubkey": self.verified_pubkey,
            "invoice": self.invoice.to_record() if self.invoice else None,
            "completed": self.completed,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Checkout":
        invoice = record.get("invoice")
        return cls(
            id=record["id"],
            product_template_name=record["product_template_name"],
            created_at=record["created_at"],
            verified_pubkey=record.get("verified_pubkey"),
            invoice=Invoice.from_record(invoice) if invoice else None,
            completed=record.get("completed", False),
        )


@dataclass(frozen=True)
class Transaction:
    """Canonical, source-agnostic payment event.

    end_date is absolute (IAP); duration is relative (Lightning).
    """

    type: TransactionType
    id: str
    start_date: int
    end_date: int | None
    purchased_date: int
    duration: int | None

    def __post_init__(self) -> None:
        """Validate transaction constraints."""
        if not self.id:
            raise ValueError("Transaction id cannot be empty")
        if self.end_date is None and self.duration is None:
            raise ValueError("Transaction needs an end_date or a duration")
        if self.duration is not None and self.duration < 0:
            raise ValueError(f"Duration cannot be negative: {self.duration}")

    @property
    def key(self) -> str:
        """Identity used to make grants idempotent."""
        return f"{self.type.value}:{self.id}"

    def to_record(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "id": self.id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "purchased_date": self.purchased_date,
            "duration": self.duration,
        }


@dataclass(frozen=True)
class Account:
    """Entitlement state of one pubkey. active is always derived."""

    pubkey: str
    created_at: int
    expiry: int
    subscriber_number: int
    applied_transactions: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate account constraints."""
        if self.subscriber_number < 1:
            raise ValueError(f"Subscriber number must be positive: {self.subscriber_number}")

    def is_active(self, now: int) -> bool:
        """True while the entitlement window is open."""
        return self.expiry > now

    def has_applied(self, transaction: Transaction) -> bool:
        return transaction.key in self.applied_transactions

    def to_record(self) -> dict[str, Any]:
        return {
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "expiry": self.expiry,
            "subscriber_number": self.subscriber_number,
            "applied_transactions": list(self.applied_transactions),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Account":
        return cls(
            pubkey=record["pubkey"],
            created_at=record["created_at"],
            expiry=record["expiry"],
            subscriber_number=record["subscriber_number"],
            applied_transactions=tuple(record.get("applied_transactions", ())),
        )


@dataclass(frozen=True)
class TransactionHistory:
    """Signed transactions collected from the history API.

    truncated is True when a page failed and the walk stopped early.
    """

    signed_transactions: tuple[str, ...]
    truncated: bool = False


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Verified caller identity produced by the request authenticator."""

    pubkey: str

    def __post_init__(self) -> None:
        if not self.pubkey:
            raise ValueError("pubkey cannot be empty")

    @property
    def account_token(self) -> str:
        """UUID the iOS client stamps on purchases as appAccountToken."""
        return str(uuid5(NAMESPACE_URL, f"purple:{self.pubkey}"))
