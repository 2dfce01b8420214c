"""Runtime configuration for the relay.

Values come from the environment, and the CLI may override any of them.
"""

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from uvicorn.config import LOG_LEVELS

from stt_relay.constants import (
    DEFAULT_ENGINE_COMMAND,
    DEFAULT_HOST,
    DEFAULT_PORT,
    STAGED_SUFFIX,
)


def _default_staging_dir() -> Path:
    return Path(tempfile.gettempdir())


@dataclass
class RelayConfig:
    """Settings for one relay process."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    engine_command: list[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_ENGINE_COMMAND)
    )
    staging_dir: Path = field(default_factory=_default_staging_dir)
    staged_suffix: str = STAGED_SUFFIX
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "RelayConfig":
        """Build a config from STT_RELAY_* variables (and LOG_LEVEL).

        Args:
            env: Mapping to read from; defaults to os.environ.

        Returns:
            Config with defaults for anything unset.
        """
        env = os.environ if env is None else env
        config = cls()

        if env.get("STT_RELAY_HOST"):
            config.host = env["STT_RELAY_HOST"]
        if env.get("STT_RELAY_PORT"):
            config.port = int(env["STT_RELAY_PORT"])
        if env.get("STT_RELAY_ENGINE"):
            config.engine_command = shlex.split(env["STT_RELAY_ENGINE"])
        if env.get("STT_RELAY_STAGING_DIR"):
            config.staging_dir = Path(env["STT_RELAY_STAGING_DIR"]).expanduser()
        if env.get("STT_RELAY_SUFFIX"):
            config.staged_suffix = normalize_suffix(env["STT_RELAY_SUFFIX"])
        config.log_level = env.get("LOG_LEVEL", config.log_level).upper()

        return config

    def validate(self) -> None:
        """Raise ValueError if the config cannot start a relay."""
        if not self.engine_command:
            raise ValueError("engine command is empty")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not self.staging_dir.is_dir():
            raise ValueError(f"staging directory does not exist: {self.staging_dir}")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ValueError(
                f"unknown log level {self.log_level!r}, expected one of {sorted(LOG_LEVELS)}"
            )


def normalize_suffix(suffix: str) -> str:
    return suffix if suffix.startswith(".") else f".{suffix}"
