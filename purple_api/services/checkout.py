"""
Checkout Manager - Lightning checkout state machine.

CREATED -> INVOICE_ISSUED -> COMPLETED, strictly forward.

Invoice issuance and payment checks are serialized per checkout id within
the process; compare-and-swap on the checkout record covers other
processes. Payment confirmation is client driven: every check is exactly
one round trip to the node.
"""

from collections.abc import Mapping
from dataclasses import replace
from uuid import uuid4

from structlog import get_logger

from purple_api.exceptions import CheckoutNotFoundError, ConcurrencyError, InvoicePendingError
from purple_api.models.domain import (
    AuthenticatedIdentity,
    Checkout,
    Product,
    Transaction,
    TransactionType,
)
from purple_api.observability.metrics import metrics
from purple_api.services.clock import Clock, current_time
from purple_api.services.entitlements import EntitlementService
from purple_api.services.lightning import LightningInvoiceClient
from purple_api.services.products import PURPLE_PRODUCTS, get_product
from purple_api.services.store import CHECKOUTS, KeyedLock, KeyValueStore, VersionedRecord

logger = get_logger(__name__)


def new_invoice_label() -> str:
    """Unique node-side correlation label for one invoice."""
    return f"purple-{uuid4()}"


class CheckoutManager:
    """Owns checkout records and drives them through their lifecycle."""

    def __init__(
        self,
        store: KeyValueStore,
        lightning: LightningInvoiceClient,
        entitlements: EntitlementService,
        clock: Clock = current_time,
        catalog: Mapping[str, Product] = PURPLE_PRODUCTS,
        locks: KeyedLock | None = None,
    ) -> None:
        """Initialize the checkout manager with its collaborators."""
        self.store = store
        self.lightning = lightning
        self.entitlements = entitlements
        self.clock = clock
        self.catalog = catalog
        self.locks = locks or KeyedLock()

    async def create_checkout(self, product_template_name: str) -> Checkout:
        """
        Start a checkout for a catalog product.

        Raises:
            UnknownProductError: If the product is not in the catalog
        """
        product = get_product(product_template_name, self.catalog)
        checkout = Checkout(
            id=str(uuid4()),
            product_template_name=product.name,
            created_at=self.clock(),
        )
        await self.store.put(CHECKOUTS, checkout.id, checkout.to_record(), expected_version=None)

        metrics.checkouts_created_total.labels(product=product.name).inc()
        logger.info("checkout_created", checkout_id=checkout.id, product=product.name)
        return checkout

    async def get_checkout(self, checkout_id: str) -> Checkout:
        """
        Read a checkout. No side effects.

        Raises:
            CheckoutNotFoundError: If the id is unknown
        """
        record = await self._get_record(checkout_id)
        return Checkout.from_record(record.value)

    async def issue_invoice(
        self, checkout_id: str, identity: AuthenticatedIdentity
    ) -> Checkout:
        """
        Issue the checkout's invoice and bind it to identity.

        Idempotent: a checkout that already has an invoice is returned
        unchanged, whoever asks.

        Raises:
            CheckoutNotFoundError: If the id is unknown
            UnknownProductError: If the product left the catalog
            NodeUnavailableError: If the node cannot create the invoice
        """
        async with self.locks.hold(checkout_id):
            record = await self._get_record(checkout_id)
            checkout = Checkout.from_record(record.value)
            if checkout.invoice is not None:
                return checkout

            product = get_product(checkout.product_template_name, self.catalog)
            invoice = await self.lightning.create_invoice(
                product.amount_msat, new_invoice_label(), product.description
            )
            issued = replace(checkout, verified_pubkey=identity.pubkey, invoice=invoice)

            try:
                await self.store.put(
                    CHECKOUTS, checkout_id, issued.to_record(), expected_version=record.version
                )
            except ConcurrencyError:
                # Another process issued first; its invoice is the checkout's invoice
                winner = await self.get_checkout(checkout_id)
                logger.warning(
                    "invoice_issue_race",
                    checkout_id=checkout_id,
                    orphaned_label=invoice.label,
                )
                if winner.invoice is None:
                    raise
                return winner

        metrics.invoices_issued_total.labels(product=product.name).inc()
        logger.info(
            "invoice_issued",
            checkout_id=checkout_id,
            label=invoice.label,
            pubkey=identity.pubkey,
            amount_msat=product.amount_msat,
        )
        return issued

    async def check_payment(self, checkout_id: str) -> Checkout:
        """
        Poll the node once and complete the checkout if its invoice is paid.

        The entitlement grant runs before the completion write and is
        idempotent, so a check that dies between the two is finished by
        the next check without granting twice.

        Raises:
            CheckoutNotFoundError: If the id is unknown
            InvoicePendingError: If no invoice was issued yet
            NodeUnavailableError: If the node cannot be queried
        """
        async with self.locks.hold(checkout_id):
            record = await self._get_record(checkout_id)
            checkout = Checkout.from_record(record.value)
            if checkout.completed:
                return checkout
            if checkout.invoice is None or checkout.verified_pubkey is None:
                raise InvoicePendingError(checkout_id)

            if not await self.lightning.query_paid(checkout.invoice.label):
                return checkout

            now = self.clock()
            product = get_product(checkout.product_template_name, self.catalog)
            transaction = Transaction(
                type=TransactionType.LN,
                id=checkout.id,
                start_date=now,
                end_date=product.fixed_expiry,
                purchased_date=now,
                duration=product.duration,
            )
            await self.entitlements.grant(checkout.verified_pubkey, transaction, now)

            completed = replace(
                checkout,
                invoice=replace(checkout.invoice, paid=True),
                completed=True,
            )
            try:
                await self.store.put(
                    CHECKOUTS, checkout_id, completed.to_record(), expected_version=record.version
                )
            except ConcurrencyError:
                winner = await self.get_checkout(checkout_id)
                if not winner.completed:
                    raise
                return winner

        metrics.payments_confirmed_total.labels(product=product.name).inc()
        logger.info(
            "payment_confirmed",
            checkout_id=checkout_id,
            label=checkout.invoice.label,
            pubkey=checkout.verified_pubkey,
        )
        return completed

    async def _get_record(self, checkout_id: str) -> VersionedRecord:
        record = await self.store.get(CHECKOUTS, checkout_id)
        if record is None:
            raise CheckoutNotFoundError(checkout_id)
        return record
