"""
Trust Anchor Cache - Apple root certificates, read once per process.

Paths are memoized forever: a file that changes on disk after its first
read is not picked up until restart. Concurrent first reads of one path
share a single read task.
"""

import asyncio
from collections.abc import Callable
from pathlib import Path

from structlog import get_logger

from purple_api.exceptions import TrustAnchorError

logger = get_logger(__name__)


def _read_file(path: Path) -> bytes:
    return path.read_bytes()


class TrustAnchorCache:
    """Memoizes certificate bytes per file path."""

    def __init__(self, reader: Callable[[Path], bytes] = _read_file) -> None:
        self._reader = reader
        self._contents: dict[Path, bytes] = {}
        self._inflight: dict[Path, asyncio.Task[bytes]] = {}

    async def get_trust_anchors(self, directory: str | Path) -> tuple[bytes, ...]:
        """
        Return the contents of every file in directory, in file name order.

        Raises:
            TrustAnchorError: If the directory or a file cannot be read
        """
        root = Path(directory)
        try:
            paths = sorted(p for p in root.iterdir() if p.is_file())
        except OSError as exc:
            raise TrustAnchorError(str(root), str(exc)) from exc

        return tuple([await self._load(path) for path in paths])

    async def _load(self, path: Path) -> bytes:
        cached = self._contents.get(path)
        if cached is not None:
            return cached

        task = self._inflight.get(path)
        if task is None:
            task = asyncio.ensure_future(self._read(path))
            self._inflight[path] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(path, None)

    async def _read(self, path: Path) -> bytes:
        try:
            contents = await asyncio.to_thread(self._reader, path)
        except OSError as exc:
            logger.error("trust_anchor_read_failed", path=str(path), error=str(exc))
            raise TrustAnchorError(str(path), str(exc)) from exc
        self._contents[path] = contents
        logger.info("trust_anchor_loaded", path=str(path), size=len(contents))
        return contents

    def __len__(self) -> int:
        return len(self._contents)
