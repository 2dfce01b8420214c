"""Fake engine for testing and local runs.

Returns deterministic output based on the staged file's content,
allowing reliable tests without a real inference process.
"""

import asyncio
import hashlib
from collections.abc import Iterable
from pathlib import Path


class FakeEngine:
    """Deterministic in-process engine.

    By default each reply describes the staged file by content hash and size.
    With `replies`, the given lines are returned in call order instead.
    """

    def __init__(
        self,
        latency_ms: float = 0.0,
        replies: Iterable[str] | None = None,
    ):
        """Initialize the fake engine.

        Args:
            latency_ms: Simulated inference latency in milliseconds.
            replies: Fixed replies to return, one per call, in order.
        """
        self._latency_ms = latency_ms
        self._replies = list(replies) if replies is not None else None
        self._call_count = 0
        self._started = False
        self._stopped = False
        self.seen_paths: list[Path] = []

    async def start(self) -> None:
        self._started = True

    async def infer(self, path: Path) -> str:
        """Generate a reply for the staged file at path."""
        if self._latency_ms > 0:
            await asyncio.sleep(self._latency_ms / 1000.0)

        data = path.read_bytes()
        self.seen_paths.append(path)
        index = self._call_count
        self._call_count += 1

        if self._replies is not None:
            return self._replies[index]
        return f"[fake:{self._hash_bytes(data)[:8]}|{len(data)}b]"

    async def stop(self) -> None:
        self._stopped = True

    @property
    def is_alive(self) -> bool:
        return self._started and not self._stopped

    @property
    def call_count(self) -> int:
        """Number of infer calls made."""
        return self._call_count

    @staticmethod
    def expected_reply(data: bytes) -> str:
        """The default reply for a chunk with the given content."""
        return f"[fake:{FakeEngine._hash_bytes(data)[:8]}|{len(data)}b]"

    @staticmethod
    def _hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
