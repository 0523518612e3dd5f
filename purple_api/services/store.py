"""
Record Store - Versioned key/value persistence with compare-and-swap.

Records live in namespaces (checkouts, accounts, counters). Every write
carries the version it expects to replace; a mismatch raises
ConcurrencyError so callers can re-read and retry. update_record wraps
that loop around a pure old -> new function.
"""

import asyncio
import copy
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from purple_api.db.models import Record
from purple_api.exceptions import ConcurrencyError

logger = get_logger(__name__)

CHECKOUTS = "checkouts"
ACCOUNTS = "accounts"
COUNTERS = "counters"


@dataclass(frozen=True)
class VersionedRecord:
    """A stored value and the version it was read at."""

    value: dict[str, Any]
    version: int


class KeyValueStore(Protocol):
    """
    Persistence protocol consumed by the services.

    put() with expected_version=None inserts only if the key is absent;
    otherwise it replaces only the given version.
    """

    async def get(self, namespace: str, key: str) -> VersionedRecord | None:
        ...

    async def put(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
    ) -> VersionedRecord:
        ...

    async def count(self, namespace: str) -> int:
        ...


class InMemoryStore:
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], VersionedRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, namespace: str, key: str) -> VersionedRecord | None:
        record = self._records.get((namespace, key))
        if record is None:
            return None
        return VersionedRecord(value=copy.deepcopy(record.value), version=record.version)

    async def put(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
    ) -> VersionedRecord:
        async with self._lock:
            current = self._records.get((namespace, key))
            current_version = current.version if current else None
            if current_version != expected_version:
                raise ConcurrencyError(f"{namespace}/{key}")
            stored = VersionedRecord(
                value=copy.deepcopy(value),
                version=(current_version or 0) + 1,
            )
            self._records[(namespace, key)] = stored
            return VersionedRecord(value=copy.deepcopy(value), version=stored.version)

    async def count(self, namespace: str) -> int:
        return sum(1 for ns, _ in self._records if ns == namespace)


class SqlAlchemyStore:
    """
    Store backed by the records table.

    Conditional UPDATE on the version column provides compare-and-swap
    across processes; the primary key rejects concurrent inserts.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, namespace: str, key: str) -> VersionedRecord | None:
        async with self.session_factory() as session:
            stmt = select(Record).where(Record.namespace == namespace, Record.key == key)
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            if record is None:
                return None
            return VersionedRecord(value=dict(record.value), version=record.version)

    async def put(
        self,
        namespace: str,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
    ) -> VersionedRecord:
        async with self.session_factory() as session:
            if expected_version is None:
                session.add(Record(namespace=namespace, key=key, value=value, version=1))
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise ConcurrencyError(f"{namespace}/{key}") from exc
                return VersionedRecord(value=value, version=1)

            stmt = (
                update(Record)
                .where(
                    Record.namespace == namespace,
                    Record.key == key,
                    Record.version == expected_version,
                )
                .values(value=value, version=expected_version + 1)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrencyError(f"{namespace}/{key}")
            await session.commit()
            return VersionedRecord(value=value, version=expected_version + 1)

    async def count(self, namespace: str) -> int:
        async with self.session_factory() as session:
            stmt = select(func.count()).select_from(Record).where(Record.namespace == namespace)
            result = await session.execute(stmt)
            return int(result.scalar_one())


async def update_record(
    store: KeyValueStore,
    namespace: str,
    key: str,
    fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    max_retries: int = 5,
) -> VersionedRecord:
    """
    Apply fn(old) -> new with optimistic retry.

    fn must be pure: it may run several times if other writers interleave.
    An unchanged value is not written back.

    Raises:
        ConcurrencyError: If every attempt lost the race
    """
    for attempt in range(1, max_retries + 1):
        current = await store.get(namespace, key)
        old_value = current.value if current else None
        new_value = fn(copy.deepcopy(old_value))
        if current is not None and new_value == current.value:
            return current
        try:
            return await store.put(
                namespace,
                key,
                new_value,
                expected_version=current.version if current else None,
            )
        except ConcurrencyError:
            logger.info(
                "record_update_conflict",
                namespace=namespace,
                key=key,
                attempt=attempt,
            )

    raise ConcurrencyError(f"{namespace}/{key}")


class KeyedLock:
    """Registry of per-key asyncio locks, dropped when no longer held."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
