"""Core constants for the STT relay.

The inference engine is addressed by filename over a line-oriented pipe,
so the only wire-level constants are the terminator and the staged suffix.
"""

# Listener defaults
DEFAULT_HOST: str = "::"  # all interfaces, IPv6 with IPv4 fallback
DEFAULT_PORT: int = 3001

# Engine process
DEFAULT_ENGINE_COMMAND: str = "./model.py"
LINE_TERMINATOR: bytes = b"\n"
ENGINE_STOP_GRACE_SECONDS: float = 5.0

# Staged chunk files (container format is opaque to the relay)
STAGED_SUFFIX: str = ".webm"

# Transcript lines are joined with this in the final reply
TRANSCRIPT_SEPARATOR: str = "\n"

# WebSocket close code used when a session is aborted by an engine failure
CLOSE_INTERNAL_ERROR: int = 1011
