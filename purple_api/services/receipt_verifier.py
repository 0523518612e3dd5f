"""
Receipt Verifier - Apple signed transaction pipeline.

history (or order lookup) -> verify + decode -> filter to account -> canonical

Verification is all-or-nothing per batch. History paging is best effort:
a failed page ends the walk and the result is flagged as truncated.
"""

import asyncio
import base64
import binascii
from collections.abc import Sequence

import httpx
from appstoreserverlibrary.api_client import APIException, AsyncAppStoreServerAPIClient
from appstoreserverlibrary.models.Environment import Environment
from appstoreserverlibrary.models.JWSTransactionDecodedPayload import JWSTransactionDecodedPayload
from appstoreserverlibrary.models.TransactionHistoryRequest import (
    Order,
    ProductType,
    TransactionHistoryRequest,
)
from appstoreserverlibrary.receipt_utility import ReceiptUtility
from appstoreserverlibrary.signed_data_verifier import SignedDataVerifier, VerificationException
from structlog import get_logger

from purple_api.exceptions import (
    AppStoreUnavailableError,
    MalformedPayloadError,
    MalformedReceiptError,
    SignatureInvalidError,
)
from purple_api.models.domain import Transaction, TransactionHistory, TransactionType
from purple_api.observability.metrics import metrics

logger = get_logger(__name__)


def extract_transaction_id(receipt_data: str) -> str | None:
    """
    Pull the transaction id out of a base64 app receipt.

    Returns None when the receipt holds no transaction id.

    Raises:
        MalformedReceiptError: If receipt_data is not base64
    """
    try:
        base64.b64decode(receipt_data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedReceiptError("receipt data is not valid base64") from exc

    try:
        return ReceiptUtility().extract_transaction_id_from_app_receipt(receipt_data)
    except Exception as exc:
        logger.warning("receipt_transaction_id_unreadable", error=str(exc))
        return None


async def fetch_history(
    client: AsyncAppStoreServerAPIClient,
    transaction_id: str,
) -> TransactionHistory:
    """
    Walk every history page for a transaction, oldest first.

    Only auto-renewable, non-revoked transactions are requested.
    """
    request = TransactionHistoryRequest(
        sort=Order.ASCENDING,
        revoked=False,
        productTypes=[ProductType.AUTO_RENEWABLE],
    )
    signed_transactions: list[str] = []
    revision: str | None = None
    pages = 0

    while True:
        try:
            response = await client.get_transaction_history(transaction_id, revision, request)
        except Exception as exc:
            # Best effort: a failed page ends the walk, whatever the cause
            logger.warning(
                "history_page_failed",
                transaction_id=transaction_id,
                pages_fetched=pages,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            metrics.history_truncated_total.inc()
            return TransactionHistory(tuple(signed_transactions), truncated=True)

        pages += 1
        if response.signedTransactions:
            signed_transactions.extend(response.signedTransactions)

        if not response.hasMore:
            break
        if not response.revision:
            logger.warning("history_missing_revision", transaction_id=transaction_id)
            metrics.history_truncated_total.inc()
            return TransactionHistory(tuple(signed_transactions), truncated=True)
        revision = response.revision

    logger.info(
        "history_fetched",
        transaction_id=transaction_id,
        pages=pages,
        count=len(signed_transactions),
    )
    return TransactionHistory(tuple(signed_transactions))


async def verify_and_decode(
    signed_transactions: Sequence[str],
    trust_anchors: Sequence[bytes],
    environment: Environment,
    bundle_id: str,
    app_apple_id: int | None = None,
    enable_online_checks: bool = True,
) -> list[JWSTransactionDecodedPayload]:
    """
    Verify each signed transaction against the trust anchors and decode it.

    Output order matches input order.

    Raises:
        SignatureInvalidError: If any chain or signature is rejected
        MalformedPayloadError: If any verified payload lacks required fields
    """
    verifier = SignedDataVerifier(
        list(trust_anchors),
        enable_online_checks,
        environment,
        bundle_id,
        app_apple_id,
    )

    decoded: list[JWSTransactionDecodedPayload] = []
    for signed in signed_transactions:
        try:
            # OCSP checks block, keep them off the event loop
            payload = await asyncio.to_thread(
                verifier.verify_and_decode_signed_transaction, signed
            )
        except VerificationException as exc:
            status = getattr(exc.status, "name", str(exc.status))
            logger.warning("signed_transaction_rejected", status=status)
            raise SignatureInvalidError(status) from exc

        if not payload.transactionId or payload.purchaseDate is None:
            raise MalformedPayloadError("transaction payload lacks transactionId or purchaseDate")
        decoded.append(payload)

    return decoded


def filter_by_account(
    decoded_transactions: Sequence[JWSTransactionDecodedPayload],
    account_token: str,
) -> list[JWSTransactionDecodedPayload]:
    """Keep transactions whose appAccountToken matches, ignoring case."""
    wanted = account_token.upper()
    return [
        decoded
        for decoded in decoded_transactions
        if decoded.appAccountToken and decoded.appAccountToken.upper() == wanted
    ]


def to_canonical(decoded: JWSTransactionDecodedPayload) -> Transaction:
    """Map an App Store payload (millisecond timestamps) to a canonical transaction."""
    if decoded.expiresDate is None:
        raise MalformedPayloadError(
            f"transaction {decoded.transactionId} has no expiresDate"
        )
    purchased = decoded.purchaseDate // 1000
    return Transaction(
        type=TransactionType.IAP,
        id=str(decoded.transactionId),
        start_date=purchased,
        end_date=decoded.expiresDate // 1000,
        purchased_date=purchased,
        duration=None,
    )


def _canonical_or_none(
    decoded: Sequence[JWSTransactionDecodedPayload],
    account_token: str | None,
) -> list[Transaction] | None:
    matching = list(decoded) if account_token is None else filter_by_account(decoded, account_token)
    if not matching:
        return None
    return [to_canonical(d) for d in matching]


async def fetch_validated_transactions(
    client: AsyncAppStoreServerAPIClient,
    transaction_id: str,
    trust_anchors: Sequence[bytes],
    environment: Environment,
    bundle_id: str,
    account_token: str,
    app_apple_id: int | None = None,
    enable_online_checks: bool = True,
) -> list[Transaction] | None:
    """
    Validated transactions for the account behind transaction_id.

    Returns None when nothing in the history belongs to the account.
    """
    history = await fetch_history(client, transaction_id)
    decoded = await verify_and_decode(
        history.signed_transactions,
        trust_anchors,
        environment,
        bundle_id,
        app_apple_id,
        enable_online_checks,
    )
    transactions = _canonical_or_none(decoded, account_token)

    logger.info(
        "validated_transactions",
        transaction_id=transaction_id,
        fetched=len(history.signed_transactions),
        truncated=history.truncated,
        matching=len(transactions) if transactions else 0,
    )
    return transactions


async def fetch_validated_transactions_from_order_id(
    client: AsyncAppStoreServerAPIClient,
    order_id: str,
    trust_anchors: Sequence[bytes],
    environment: Environment,
    bundle_id: str,
    account_token: str | None,
    app_apple_id: int | None = None,
    enable_online_checks: bool = True,
) -> list[Transaction] | None:
    """
    Validated transactions for a receipt-email order id.

    account_token=None skips the account filter (support lookups).

    Raises:
        AppStoreUnavailableError: If the order lookup call fails
    """
    try:
        response = await client.look_up_order_id(order_id)
    except (APIException, httpx.HTTPError) as exc:
        logger.error("order_lookup_failed", order_id=order_id, error=str(exc))
        raise AppStoreUnavailableError(f"order lookup failed: {exc}") from exc

    signed_transactions = response.signedTransactions or []
    decoded = await verify_and_decode(
        signed_transactions,
        trust_anchors,
        environment,
        bundle_id,
        app_apple_id,
        enable_online_checks,
    )
    transactions = _canonical_or_none(decoded, account_token)

    logger.info(
        "order_transactions_validated",
        order_id=order_id,
        fetched=len(signed_transactions),
        filtered=account_token is not None,
        matching=len(transactions) if transactions else 0,
    )
    return transactions
