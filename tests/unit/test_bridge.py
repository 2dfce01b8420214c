"""Unit tests for the serialized engine bridge."""

import asyncio
import sys
import threading
from pathlib import Path

import pytest

from stt_relay import staging
from stt_relay.bridge import BridgeRequest, EngineBridge
from stt_relay.engine.fake import FakeEngine
from stt_relay.engine.process import ProcessEngine
from stt_relay.errors import EngineClosedError, EngineNotStartedError, StagingError
from stt_relay.staging import FileStager

LINE_ENGINE = Path(__file__).resolve().parents[1] / "support" / "line_engine.py"


class FailingEngine(FakeEngine):
    """Fake engine whose calls fail for chosen payloads."""

    def __init__(self, fail_on: bytes):
        super().__init__()
        self._fail_on = fail_on

    async def infer(self, path: Path) -> str:
        if path.read_bytes() == self._fail_on:
            self.seen_paths.append(path)
            raise EngineClosedError("engine pipe broken")
        return await super().infer(path)


class OverlapDetectingEngine(FakeEngine):
    """Fake engine that records whether two calls ever overlapped."""

    def __init__(self):
        super().__init__(latency_ms=5)
        self.in_flight = 0
        self.max_in_flight = 0

    async def infer(self, path: Path) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await super().infer(path)
        finally:
            self.in_flight -= 1


class TestEngineBridge:
    """Tests for EngineBridge with fake engines."""

    @pytest.mark.asyncio
    async def test_single_request(self, tmp_path):
        """One chunk should produce the engine's reply for that chunk."""
        bridge = EngineBridge(FakeEngine(), FileStager(tmp_path))
        await bridge.start()
        try:
            result = await bridge.submit(b"chunk-a", "session-1")
            assert result == FakeEngine.expected_reply(b"chunk-a")
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_replies_in_submission_order(self, tmp_path):
        """Sequential chunks from one session keep their order."""
        bridge = EngineBridge(FakeEngine(replies=["hello", "world"]), FileStager(tmp_path))
        await bridge.start()
        try:
            first = await bridge.submit(b"a", "session-1")
            second = await bridge.submit(b"b", "session-1")
            assert [first, second] == ["hello", "world"]
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_own_results(self, tmp_path):
        """Each caller must receive the reply for the file it staged."""
        engine = OverlapDetectingEngine()
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()
        try:
            chunks = [f"chunk-{i}".encode() * (i + 1) for i in range(8)]
            tasks = [
                asyncio.create_task(bridge.submit(chunk, f"session-{i % 2}"))
                for i, chunk in enumerate(chunks)
            ]
            results = await asyncio.gather(*tasks)

            assert results == [FakeEngine.expected_reply(c) for c in chunks]
            assert engine.max_in_flight == 1
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_staged_files_removed_after_success(self, tmp_path):
        engine = FakeEngine()
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()
        try:
            await bridge.submit(b"a", "session-1")
            await bridge.submit(b"b", "session-1")
        finally:
            await bridge.stop()

        assert len(engine.seen_paths) == 2
        assert all(not p.exists() for p in engine.seen_paths)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_engine_failure_propagates_and_cleans_up(self, tmp_path):
        """A failed call raises for its caller and still removes its file."""
        engine = FailingEngine(fail_on=b"bad")
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()
        try:
            with pytest.raises(EngineClosedError):
                await bridge.submit(b"bad", "session-1")
            assert list(tmp_path.iterdir()) == []

            # The bridge keeps serving later requests.
            result = await bridge.submit(b"good", "session-2")
            assert result == FakeEngine.expected_reply(b"good")
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_staging_failure_propagates(self, tmp_path):
        engine = FakeEngine()
        bridge = EngineBridge(engine, FileStager(tmp_path / "missing"))
        await bridge.start()
        try:
            with pytest.raises(StagingError):
                await bridge.submit(b"a", "session-1")
            assert engine.call_count == 0
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_submit_before_start(self, tmp_path):
        bridge = EngineBridge(FakeEngine(), FileStager(tmp_path))
        with pytest.raises(EngineNotStartedError):
            await bridge.submit(b"a", "session-1")

    @pytest.mark.asyncio
    async def test_start_starts_engine(self, tmp_path):
        engine = FakeEngine()
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()
        assert bridge.is_running
        assert bridge.engine_alive

        await bridge.stop()
        assert not bridge.is_running
        assert not bridge.engine_alive

    @pytest.mark.asyncio
    async def test_idempotent_start(self, tmp_path):
        """Multiple starts should be safe."""
        bridge = EngineBridge(FakeEngine(), FileStager(tmp_path))
        await bridge.start()
        await bridge.start()
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_stop_fails_queued_requests(self, tmp_path):
        """Requests still queued at shutdown should not hang forever."""
        bridge = EngineBridge(FakeEngine(), FileStager(tmp_path))
        # Not started: requests stay in the queue.
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        await bridge._queue.put(BridgeRequest(b"a", future, "session-1"))
        assert bridge.queue_size == 1

        await bridge.stop()

        assert bridge.queue_size == 0
        with pytest.raises(EngineNotStartedError):
            future.result()

    @pytest.mark.asyncio
    async def test_stop_while_staging_leaves_no_file(self, tmp_path, monkeypatch):
        """Shutting down mid-write still removes the chunk's staged file."""
        written = threading.Event()
        release = threading.Event()
        real_write = staging.write_chunk

        def slow_write(path, data):
            real_write(path, data)
            written.set()
            release.wait(5)

        monkeypatch.setattr(staging, "write_chunk", slow_write)
        engine = FakeEngine()
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()

        pending = asyncio.create_task(bridge.submit(b"audio", "session-1"))
        loop = asyncio.get_running_loop()
        assert await loop.run_in_executor(None, written.wait, 5)

        stopping = asyncio.create_task(bridge.stop())
        await asyncio.sleep(0.05)
        release.set()
        await asyncio.wait_for(stopping, timeout=5)

        with pytest.raises(asyncio.CancelledError):
            await pending
        assert engine.call_count == 0
        assert list(tmp_path.iterdir()) == []


class TestBridgeWithProcessEngine:
    """Tests for EngineBridge driving a real engine process."""

    @pytest.mark.asyncio
    async def test_interleaved_sessions_see_gap_free_counter(self, tmp_path):
        """Two sessions submitting concurrently split the counter cleanly."""
        engine = ProcessEngine([sys.executable, str(LINE_ENGINE), "counter"])
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()

        async def session(name: str, count: int) -> list[int]:
            replies = []
            for i in range(count):
                replies.append(int(await bridge.submit(f"{name}-{i}".encode(), name)))
            return replies

        try:
            a, b = await asyncio.gather(session("a", 6), session("b", 6))
        finally:
            await bridge.stop()

        assert a == sorted(a)
        assert b == sorted(b)
        assert sorted(a + b) == list(range(1, 13))
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_concurrent_echo_matches_staged_file(self, tmp_path):
        """Replies read back from the pipe belong to the caller's own chunk."""
        engine = ProcessEngine([sys.executable, str(LINE_ENGINE), "echo"])
        bridge = EngineBridge(engine, FileStager(tmp_path))
        await bridge.start()
        try:
            chunks = [f"conn{i % 2}-chunk{i}".encode() for i in range(10)]
            results = await asyncio.gather(
                *(bridge.submit(c, f"conn{i % 2}") for i, c in enumerate(chunks))
            )
        finally:
            await bridge.stop()

        assert results == [f"{len(c)}:{c[:16].decode()}" for c in chunks]
