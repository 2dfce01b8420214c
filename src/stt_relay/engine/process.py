"""Out-of-process inference engine over a line-oriented pipe.

The engine is spawned once and lives for the whole relay process. Each
request writes one path plus a newline to its stdin and reads exactly one
line back from its stdout. Requests are not tagged: the engine must answer
every request with one line, in order, and print nothing else on stdout.
Replies are decoded as UTF-8; invalid bytes are replaced, and logged at
debug level.
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Sequence
from pathlib import Path

from stt_relay.constants import ENGINE_STOP_GRACE_SECONDS, LINE_TERMINATOR
from stt_relay.errors import EngineClosedError, EngineNotStartedError

logger = logging.getLogger(__name__)

# Upper bound for a single reply line from the engine
_READ_LIMIT = 1024 * 1024


class ProcessEngine:
    """Engine backed by a long-lived child process.

    Not safe for concurrent infer() calls; the bridge serializes them.
    """

    def __init__(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        stop_grace_seconds: float = ENGINE_STOP_GRACE_SECONDS,
    ):
        """Initialize the engine handle. Nothing is spawned until start().

        Args:
            command: Program and arguments of the engine.
            cwd: Working directory for the engine process.
            stop_grace_seconds: How long stop() waits before killing.
        """
        if not command:
            raise ValueError("engine command is empty")
        self._command = list(command)
        self._cwd = cwd
        self._stop_grace_seconds = stop_grace_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._closed = False

    async def start(self) -> None:
        """Spawn the engine process.

        Raises:
            OSError: If the command cannot be executed.
            RuntimeError: If the engine was already started.
        """
        if self._process is not None:
            raise RuntimeError("engine already started")

        self._process = await asyncio.create_subprocess_exec(
            *self._command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            limit=_READ_LIMIT,
        )
        logger.info("Spawned engine %s (pid %d)", self._command, self._process.pid)

    async def infer(self, path: Path) -> str:
        """Send one path to the engine and read its one-line reply.

        Raises:
            EngineNotStartedError: If start() has not been called.
            EngineClosedError: If the engine's pipes are closed, now or earlier.
        """
        process = self._process
        if process is None:
            raise EngineNotStartedError("engine not started")
        if self._closed:
            raise EngineClosedError("engine is closed", process.returncode)

        assert process.stdin is not None and process.stdout is not None

        try:
            process.stdin.write(os.fsencode(str(path)) + LINE_TERMINATOR)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._mark_closed()
            raise EngineClosedError(
                f"engine stdin closed: {e}", process.returncode
            ) from e

        try:
            line = await process.stdout.readline()
        except ValueError as e:
            # Reply exceeded the read limit; the stream can no longer be
            # trusted to be aligned with requests.
            self._mark_closed()
            raise EngineClosedError(f"engine reply unreadable: {e}") from e

        if not line.endswith(LINE_TERMINATOR):
            # EOF, possibly after a partial line
            self._mark_closed()
            raise EngineClosedError("engine stdout closed", process.returncode)

        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.debug("Engine reply is not valid UTF-8 (%s): %r", e, line)
            text = line.decode("utf-8", errors="replace")
        return text.rstrip("\r\n")

    async def stop(self) -> None:
        """Close the engine's stdin and wait for it to exit, killing if needed."""
        process = self._process
        if process is None:
            return
        self._closed = True

        if process.returncode is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
                with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                    await process.stdin.wait_closed()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._stop_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Engine did not exit in time, killing pid %d", process.pid)
                process.kill()
                await process.wait()

        logger.info("Engine exited with code %s", process.returncode)

    def _mark_closed(self) -> None:
        if not self._closed:
            self._closed = True
            logger.error("Engine pipe closed; further requests will fail")

    @property
    def is_alive(self) -> bool:
        """Whether the process is running and its pipes are open."""
        return (
            self._process is not None
            and not self._closed
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        """Process id of the engine, if started."""
        return self._process.pid if self._process else None
