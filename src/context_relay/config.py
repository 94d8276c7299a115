"""Runtime configuration from ``CONTEXT_RELAY_*`` environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .storage.factory import VALID_BACKENDS
from .telemetry import VALID_EXPORTERS

ENV_PREFIX = "CONTEXT_RELAY_"

_LOG_LEVELS = frozenset({"debug", "info", "warning", "error"})


def _choice(env: Mapping[str, str], name: str, default: str, valid: frozenset[str]) -> str:
    value = env.get(ENV_PREFIX + name, default).strip().lower() or default
    if value not in valid:
        msg = (
            f"Invalid {ENV_PREFIX}{name} '{value}'. "
            f"Valid values: {', '.join(sorted(valid))}"
        )
        raise ValueError(msg)
    return value


@dataclass
class RelayConfig:
    """Settings for a context-relay process."""

    storage: str = "sqlite"
    data_dir: Path = Path("./data")
    host: str = "localhost"
    port: int = 3000
    log_level: str = "info"
    telemetry: str = "none"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RelayConfig:
        """Build a config from *env* (defaults to ``os.environ``).

        Raises:
            ValueError: If a variable holds an unsupported value.
        """
        source = os.environ if env is None else env

        raw_port = source.get(ENV_PREFIX + "PORT", "3000").strip()
        try:
            port = int(raw_port)
        except ValueError:
            msg = f"Invalid {ENV_PREFIX}PORT '{raw_port}': expected an integer"
            raise ValueError(msg) from None
        if not 0 < port < 65536:
            msg = f"Invalid {ENV_PREFIX}PORT {port}: expected 1-65535"
            raise ValueError(msg)

        return cls(
            storage=_choice(source, "STORAGE", "sqlite", VALID_BACKENDS),
            data_dir=Path(source.get(ENV_PREFIX + "DATA_DIR", "./data")),
            host=source.get(ENV_PREFIX + "HOST", "localhost"),
            port=port,
            log_level=_choice(source, "LOG_LEVEL", "info", _LOG_LEVELS),
            telemetry=_choice(source, "TELEMETRY", "none", VALID_EXPORTERS),
        )

    @property
    def logging_level(self) -> int:
        return logging.getLevelName(self.log_level.upper())
