"""Exceptions raised by the relay.

Everything here is confined to a single session: the handler catches
RelayError, closes that one socket and keeps serving.
"""


class RelayError(Exception):
    """Base class for relay failures."""


class StagingError(RelayError):
    """A chunk could not be written to its staged file."""


class EngineError(RelayError):
    """The inference engine could not serve a request."""


class EngineNotStartedError(EngineError):
    """infer() was called before start() or after stop()."""


class EngineClosedError(EngineError):
    """The engine process closed its pipes or exited.

    Once raised, the engine stays closed: later requests fail immediately
    instead of waiting on a reply that will never come.
    """

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode
