"""FastAPI WebSocket server relaying audio chunks to the inference engine.

Each connection streams binary audio chunks; every chunk becomes one engine
request and one transcript line. An empty binary frame ends the stream and
is answered with the whole transcript as a single text frame.
It depends only on the bridge, allowing use with real or fake engines.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from enum import Enum

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from stt_relay.bridge import EngineBridge
from stt_relay.config import RelayConfig
from stt_relay.constants import CLOSE_INTERNAL_ERROR, TRANSCRIPT_SEPARATOR
from stt_relay.engine.process import ProcessEngine
from stt_relay.errors import EngineClosedError, RelayError
from stt_relay.staging import FileStager

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    FLUSHED = "flushed"
    CLOSED = "closed"


class TranscriptSession:
    """Transcript state for a single WebSocket connection."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.state = SessionState.OPEN
        self._lines: list[str] = []

    @property
    def lines(self) -> list[str]:
        """Transcript lines received so far, in chunk order."""
        return list(self._lines)

    @property
    def is_finished(self) -> bool:
        return self.state in (SessionState.FLUSHED, SessionState.CLOSED)

    def append(self, line: str) -> None:
        """Record the engine's reply for the next chunk."""
        if self.is_finished:
            raise RuntimeError(f"session {self.session_id} is {self.state.value}")
        self._lines.append(line)
        self.state = SessionState.ACTIVE

    def flush(self) -> str:
        """Return the full transcript and finish the session."""
        if self.is_finished:
            raise RuntimeError(f"session {self.session_id} is {self.state.value}")
        self.state = SessionState.FLUSHED
        return TRANSCRIPT_SEPARATOR.join(self._lines)

    def close(self) -> None:
        """Finish the session without a reply, discarding the transcript."""
        self._lines.clear()
        self.state = SessionState.CLOSED


def create_app(bridge: EngineBridge) -> FastAPI:
    """Create a FastAPI application serving sessions through the given bridge.

    The bridge (and with it the engine) is started before the server accepts
    connections and stopped on shutdown.

    Args:
        bridge: The one bridge shared by every connection.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await bridge.start()
        yield
        await bridge.stop()

    app = FastAPI(title="STT Relay", lifespan=lifespan)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok" if bridge.engine_alive else "degraded",
            "engine_alive": bridge.engine_alive,
            "queue_size": bridge.queue_size,
        }

    # Any path upgrades, e.g. "/" or "/v1/stream".
    @app.websocket("/{path:path}")
    async def relay_stream(websocket: WebSocket):
        """WebSocket endpoint for chunked transcription.

        Protocol:
        - Client sends binary audio chunks, one engine request per frame
        - Client sends an empty binary frame to signal end of stream
        - Server responds with one text frame: the transcript lines joined by "\\n"
        - Text frames are ignored; pings are answered by the protocol layer
        - Closing the connection early discards the transcript
        """
        await websocket.accept()
        session = TranscriptSession(uuid.uuid4().hex[:12])
        logger.info("Got connection %s", session.session_id)

        try:
            await _run_session(websocket, session, bridge)
        except WebSocketDisconnect:
            session.close()
            logger.info("Connection %s dropped", session.session_id)
        except EngineClosedError as e:
            session.close()
            logger.error(
                "Aborting connection %s: %s (engine exit code %s)",
                session.session_id,
                e,
                e.returncode,
            )
            await _abort(websocket)
        except (RelayError, OSError) as e:
            session.close()
            logger.error("Aborting connection %s: %s", session.session_id, e)
            await _abort(websocket)

        logger.info("Done handling connection %s", session.session_id)

    return app


async def _run_session(
    websocket: WebSocket,
    session: TranscriptSession,
    bridge: EngineBridge,
) -> None:
    """Consume frames until end of stream or close."""
    while not session.is_finished:
        message = await websocket.receive()

        if message["type"] == "websocket.disconnect":
            session.close()
            logger.info(
                "Connection %s closed by client (code %s)",
                session.session_id,
                message.get("code"),
            )
            return

        data = message.get("bytes")
        if data is None:
            logger.debug("Ignoring non-binary frame on %s", session.session_id)
            continue

        if not data:
            reply = session.flush()
            logger.info("Replying to connection %s: %r", session.session_id, reply)
            await websocket.send_text(reply)
            await websocket.close()
            return

        line = await bridge.submit(data, session.session_id)
        session.append(line)


async def _abort(websocket: WebSocket) -> None:
    """Close the socket after a failure, if it is still open."""
    try:
        await websocket.close(code=CLOSE_INTERNAL_ERROR)
    except (RuntimeError, OSError, WebSocketDisconnect) as e:
        logger.debug("Socket already gone while aborting: %s", e)


def create_app_from_config(config: RelayConfig) -> FastAPI:
    """Wire a process engine, stager and bridge from config into an app."""
    engine = ProcessEngine(config.engine_command)
    stager = FileStager(config.staging_dir, suffix=config.staged_suffix)
    return create_app(EngineBridge(engine, stager))
