"""
Entitlement Service - merges payment events into account expiry.

Expiry rules:
- relative transaction (duration): max(expiry, now) + duration
- absolute transaction (end_date): max(expiry, now, end_date)

Grants are idempotent per transaction key, so replaying a grant after a
crash is a no-op. Subscriber numbers come from a counter record seeded
from the number of existing accounts. A number whose account insert fails is
rolled back, so numbers stay gap-free.
"""

import asyncio
from dataclasses import replace
from typing import Any

from structlog import get_logger

from purple_api.exceptions import AccountNotFoundError, ConcurrencyError
from purple_api.models.domain import Account, Transaction
from purple_api.observability.metrics import metrics
from purple_api.services.clock import Clock, current_time
from purple_api.services.store import (
    ACCOUNTS,
    COUNTERS,
    KeyedLock,
    KeyValueStore,
    VersionedRecord,
    update_record,
)

logger = get_logger(__name__)

SUBSCRIBER_COUNTER = "subscriber_number"


def compute_expiry(current_expiry: int | None, transaction: Transaction, now: int) -> int:
    """New expiry after applying transaction. Never earlier than current_expiry."""
    base = now if current_expiry is None else max(current_expiry, now)
    if transaction.end_date is not None:
        return max(base, transaction.end_date)
    assert transaction.duration is not None
    return base + transaction.duration


def apply_transaction(account: Account, transaction: Transaction, now: int) -> Account:
    """Extend account by transaction unless it was already applied."""
    if account.has_applied(transaction):
        return account
    return replace(
        account,
        expiry=compute_expiry(account.expiry, transaction, now),
        applied_transactions=(*account.applied_transactions, transaction.key),
    )


def _next_subscriber_number(
    old: dict[str, Any] | None, pubkey: str, seed: int
) -> dict[str, Any]:
    if old is None:
        return {"value": seed + 1, "pubkey": pubkey}
    # Same pubkey as the last allocation: a retried first grant reuses its number
    if old.get("pubkey") == pubkey:
        return old
    return {"value": old["value"] + 1, "pubkey": pubkey}


class EntitlementService:
    """
    Applies canonical transactions to accounts.

    Grants to one account are serialized by a per-pubkey lock and written
    with compare-and-swap; first grants also take the numbering lock.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = current_time,
        locks: KeyedLock | None = None,
        max_retries: int = 5,
    ) -> None:
        """Initialize entitlement service with its record store."""
        self.store = store
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.max_retries = max_retries
        self._numbering_lock = asyncio.Lock()
        self._unreleased: VersionedRecord | None = None

    async def get_account(self, pubkey: str) -> Account:
        """
        Read an account.

        Raises:
            AccountNotFoundError: If the pubkey never received a grant
        """
        record = await self.store.get(ACCOUNTS, pubkey)
        if record is None:
            raise AccountNotFoundError(pubkey)
        return Account.from_record(record.value)

    async def grant(
        self, pubkey: str, transaction: Transaction, now: int | None = None
    ) -> Account:
        """
        Apply one transaction to pubkey's account, creating it if needed.

        Args:
            pubkey: Account to extend
            transaction: Canonical payment event
            now: Anchor time for relative extensions (defaults to the clock)
        """
        now = self.clock() if now is None else now

        async with self.locks.hold(pubkey):
            if await self.store.get(ACCOUNTS, pubkey) is None:
                created = await self._create_account(pubkey, transaction, now)
                if created is not None:
                    return created

            def extend(old: dict[str, Any] | None) -> dict[str, Any]:
                if old is None:
                    raise AccountNotFoundError(pubkey)
                account = Account.from_record(old)
                return apply_transaction(account, transaction, now).to_record()

            before = await self.get_account(pubkey)
            stored = await update_record(
                self.store, ACCOUNTS, pubkey, extend, max_retries=self.max_retries
            )
            account = Account.from_record(stored.value)

        if before.has_applied(transaction):
            logger.info(
                "entitlement_already_applied",
                pubkey=pubkey,
                transaction_key=transaction.key,
            )
        else:
            metrics.entitlement_grants_total.labels(
                transaction_type=transaction.type.value
            ).inc()
            logger.info(
                "entitlement_granted",
                pubkey=pubkey,
                transaction_key=transaction.key,
                previous_expiry=before.expiry,
                expiry=account.expiry,
            )
        return account

    async def grant_all(self, pubkey: str, transactions: list[Transaction]) -> Account:
        """Apply transactions in order and return the resulting account."""
        if not transactions:
            raise ValueError("grant_all needs at least one transaction")
        account: Account | None = None
        for transaction in transactions:
            account = await self.grant(pubkey, transaction)
        assert account is not None
        return account

    async def _create_account(
        self, pubkey: str, transaction: Transaction, now: int
    ) -> Account | None:
        """
        Create the account with its first grant applied.

        Returns None when another writer created the account first; the
        caller then applies the transaction as an ordinary extension.
        A number allocated for an insert that did not land is handed back.
        """
        async with self._numbering_lock:
            allocation = await self._allocate_subscriber_number(pubkey)
            subscriber_number = int(allocation.value["value"])
            account = Account(
                pubkey=pubkey,
                created_at=now,
                expiry=compute_expiry(None, transaction, now),
                subscriber_number=subscriber_number,
                applied_transactions=(transaction.key,),
            )
            try:
                await self.store.put(ACCOUNTS, pubkey, account.to_record(), expected_version=None)
            except ConcurrencyError:
                logger.warning(
                    "account_creation_race",
                    pubkey=pubkey,
                    unused_subscriber_number=subscriber_number,
                )
                await self._release_subscriber_number(allocation)
                return None
            except Exception:
                await self._release_subscriber_number(allocation)
                raise

        metrics.accounts_created_total.inc()
        metrics.entitlement_grants_total.labels(transaction_type=transaction.type.value).inc()
        logger.info(
            "account_created",
            pubkey=pubkey,
            subscriber_number=subscriber_number,
            transaction_key=transaction.key,
            expiry=account.expiry,
        )
        return account

    async def _allocate_subscriber_number(self, pubkey: str) -> VersionedRecord:
        # Caller holds the numbering lock
        if self._unreleased is not None:
            await self._release_subscriber_number(self._unreleased)

        seed = 0
        if await self.store.get(COUNTERS, SUBSCRIBER_COUNTER) is None:
            seed = await self.store.count(ACCOUNTS)

        return await update_record(
            self.store,
            COUNTERS,
            SUBSCRIBER_COUNTER,
            lambda old: _next_subscriber_number(old, pubkey, seed),
            max_retries=self.max_retries,
        )

    async def _release_subscriber_number(self, allocation: VersionedRecord) -> None:
        """
        Roll the counter back over an allocation whose account was never written.

        Only succeeds while the counter is still at that allocation, so a
        number is never handed out twice. A failed write is retried before
        the next allocation.
        """
        number = int(allocation.value["value"])
        try:
            await self.store.put(
                COUNTERS,
                SUBSCRIBER_COUNTER,
                {"value": number - 1, "pubkey": None},
                expected_version=allocation.version,
            )
        except ConcurrencyError:
            # Another process allocated past it
            self._unreleased = None
            logger.warning("subscriber_number_gap", subscriber_number=number)
            return
        except Exception as exc:
            self._unreleased = allocation
            logger.warning(
                "subscriber_number_release_failed",
                subscriber_number=number,
                error=str(exc),
            )
            return

        self._unreleased = None
        logger.info("subscriber_number_released", subscriber_number=number)
