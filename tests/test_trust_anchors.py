"""
Tests for the trust anchor cache.
"""

import asyncio
import threading
from pathlib import Path

import pytest

from purple_api.exceptions import TrustAnchorError
from purple_api.services.trust_anchors import TrustAnchorCache


@pytest.fixture
def cert_dir(tmp_path: Path) -> Path:
    """Directory with two certificate files."""
    (tmp_path / "AppleRootCA-G2.cer").write_bytes(b"root-g2")
    (tmp_path / "AppleRootCA-G3.cer").write_bytes(b"root-g3")
    return tmp_path


class CountingReader:
    """File reader that counts reads per path."""

    def __init__(self, delay: threading.Event | None = None) -> None:
        self.reads: dict[Path, int] = {}
        self.delay = delay

    def __call__(self, path: Path) -> bytes:
        if self.delay is not None:
            self.delay.wait(timeout=5)
        self.reads[path] = self.reads.get(path, 0) + 1
        return path.read_bytes()


class TestGetTrustAnchors:
    """Loading and memoization."""

    async def test_reads_all_files_in_name_order(self, cert_dir):
        """Every file is returned, ordered by file name."""
        cache = TrustAnchorCache()
        anchors = await cache.get_trust_anchors(cert_dir)
        assert anchors == (b"root-g2", b"root-g3")

    async def test_each_path_read_once(self, cert_dir):
        """Repeated calls hit the cache."""
        reader = CountingReader()
        cache = TrustAnchorCache(reader)

        await cache.get_trust_anchors(cert_dir)
        await cache.get_trust_anchors(str(cert_dir))

        assert set(reader.reads.values()) == {1}
        assert len(cache) == 2

    async def test_changed_file_not_reread(self, cert_dir):
        """Contents are fixed at first read for the process lifetime."""
        cache = TrustAnchorCache()
        await cache.get_trust_anchors(cert_dir)

        (cert_dir / "AppleRootCA-G2.cer").write_bytes(b"rotated")

        assert (await cache.get_trust_anchors(cert_dir))[0] == b"root-g2"

    async def test_new_file_picked_up(self, cert_dir):
        """Files added later are read on the next call."""
        cache = TrustAnchorCache()
        await cache.get_trust_anchors(cert_dir)
        (cert_dir / "AppleRootCA-G4.cer").write_bytes(b"root-g4")

        assert len(await cache.get_trust_anchors(cert_dir)) == 3

    async def test_concurrent_first_reads_coalesce(self, cert_dir):
        """Concurrent first reads of a path share one read."""
        gate = threading.Event()
        reader = CountingReader(delay=gate)
        cache = TrustAnchorCache(reader)

        tasks = [asyncio.ensure_future(cache.get_trust_anchors(cert_dir)) for _ in range(5)]
        await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert all(r == results[0] for r in results)
        assert set(reader.reads.values()) == {1}

    async def test_missing_directory(self, tmp_path):
        """An unreadable directory raises TrustAnchorError."""
        cache = TrustAnchorCache()
        with pytest.raises(TrustAnchorError) as exc_info:
            await cache.get_trust_anchors(tmp_path / "missing")
        assert "missing" in exc_info.value.path

    async def test_failed_read_not_cached(self, cert_dir):
        """A failed read is retried by the next caller."""
        attempts = []

        def flaky(path: Path) -> bytes:
            attempts.append(path)
            if len(attempts) == 1:
                raise PermissionError("denied")
            return path.read_bytes()

        cache = TrustAnchorCache(flaky)
        with pytest.raises(TrustAnchorError):
            await cache.get_trust_anchors(cert_dir)

        assert await cache.get_trust_anchors(cert_dir) == (b"root-g2", b"root-g3")
