"""Serialized bridge between WebSocket sessions and the inference engine.

Collects chunk requests from every concurrent session into one queue and
serves them one at a time from a single background task. That task is the
only code that touches the engine's pipes, so a request's path write and
its reply read can never interleave with another request's.
"""

import asyncio
import logging
from dataclasses import dataclass

from stt_relay.engine.protocol import Engine
from stt_relay.errors import EngineNotStartedError
from stt_relay.staging import FileStager

logger = logging.getLogger(__name__)


@dataclass
class BridgeRequest:
    """A single chunk waiting for its turn on the engine."""

    chunk: bytes
    future: asyncio.Future[str]
    session_id: str


class EngineBridge:
    """Owns the engine and serves chunk requests first-come-first-served.

    There are no timeouts: a stalled engine stalls every queued request.
    """

    def __init__(self, engine: Engine, stager: FileStager):
        """Initialize the bridge.

        Args:
            engine: The engine to serve requests with (process or fake).
            stager: Where chunks are written before the engine sees them.
        """
        self._engine = engine
        self._stager = stager
        self._queue: asyncio.Queue[BridgeRequest] = asyncio.Queue()
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the engine and the background request loop."""
        if self._running:
            return
        await self._engine.start()
        self._running = True
        self._task = asyncio.create_task(self._serve_loop())

    async def stop(self) -> None:
        """Stop the request loop, fail anything still queued, stop the engine."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        while not self._queue.empty():
            req = self._queue.get_nowait()
            if not req.future.done():
                req.future.set_exception(EngineNotStartedError("bridge stopped"))

        await self._engine.stop()

    async def submit(self, chunk: bytes, session_id: str) -> str:
        """Queue a chunk and wait for the engine's reply line.

        Args:
            chunk: Raw audio bytes of one frame.
            session_id: Identifier of the submitting session, for logging.

        Returns:
            The engine's reply for this chunk, without line terminator.

        Raises:
            EngineNotStartedError: If the bridge is not running.
            StagingError: If the chunk could not be staged.
            EngineError: If the engine failed on this request.
        """
        if not self._running:
            raise EngineNotStartedError("bridge not running")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        await self._queue.put(BridgeRequest(chunk, future, session_id))
        return await future

    async def _serve_loop(self) -> None:
        """Continuously take the next request and run it to completion."""
        while self._running:
            req = await self._queue.get()
            try:
                await self._process(req)
            finally:
                self._queue.task_done()

    async def _process(self, req: BridgeRequest) -> None:
        """Stage, infer, clean up, and resolve the request's future."""
        try:
            async with self._stager.stage(req.chunk) as path:
                text = await self._engine.infer(path)
        except asyncio.CancelledError:
            if not req.future.done():
                req.future.cancel()
            raise
        except Exception as e:
            logger.error("Request from session %s failed: %s", req.session_id, e)
            if not req.future.done():
                req.future.set_exception(e)
            return

        if not req.future.done():
            req.future.set_result(text)

    @property
    def queue_size(self) -> int:
        """Current number of pending requests."""
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        """Whether the request loop is running."""
        return self._running

    @property
    def engine_alive(self) -> bool:
        """Whether the underlying engine can still serve requests."""
        return self._engine.is_alive
