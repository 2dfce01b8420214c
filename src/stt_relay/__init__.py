"""Streaming transcription relay package."""

from stt_relay.constants import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    LINE_TERMINATOR,
    STAGED_SUFFIX,
)

__all__ = [
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "LINE_TERMINATOR",
    "STAGED_SUFFIX",
]
