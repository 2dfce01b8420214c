"""Engine protocol defining the interface for inference backends.

This is the boundary between the relay and whatever turns a staged audio
file into text: the real out-of-process engine or an in-process fake.
"""

from pathlib import Path
from typing import Protocol


class Engine(Protocol):
    """Protocol for line-per-request inference engines.

    Implementations must answer every infer() call with exactly one line,
    in call order. The relay never calls infer() concurrently.
    """

    async def start(self) -> None:
        """Bring the engine up. Called once before any infer() call."""
        ...

    async def infer(self, path: Path) -> str:
        """Transcribe the audio file at path.

        Args:
            path: Absolute path of a fully written staged file.

        Returns:
            One line of text, without its line terminator.
        """
        ...

    async def stop(self) -> None:
        """Release the engine. Safe to call more than once."""
        ...

    @property
    def is_alive(self) -> bool:
        """Whether the engine can still serve requests."""
        ...
