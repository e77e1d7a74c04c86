"""Connection options for the foreverVM API.

Resolved once at startup, then passed explicitly to the client and tools.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_FOREVERVM_SERVER = "https://api.forevervm.com"
CONFIG_PATH = Path.home() / ".config" / "forevervm" / "config.json"


class ConfigError(Exception):
    """No usable credentials could be found."""


@dataclass(frozen=True)
class ForeverVMOptions:
    token: str
    base_url: str = DEFAULT_FOREVERVM_SERVER
    exec_timeout: float | None = None

    def __repr__(self) -> str:
        # keep the token out of logs
        return (
            f"ForeverVMOptions(base_url={self.base_url!r}, "
            f"exec_timeout={self.exec_timeout!r})"
        )


def _parse_timeout(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"FOREVERVM_EXEC_TIMEOUT must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"FOREVERVM_EXEC_TIMEOUT must be positive, got {raw!r}")
    return value


def load_options(
    environ: Mapping[str, str] | None = None,
    config_path: Path | None = None,
) -> ForeverVMOptions:
    """Read options from the environment, falling back to the config file.

    ``FOREVERVM_TOKEN`` wins over the file. Raises ConfigError when neither
    source provides a token.
    """
    env = os.environ if environ is None else environ
    path = CONFIG_PATH if config_path is None else config_path
    timeout = _parse_timeout(env.get("FOREVERVM_EXEC_TIMEOUT"))

    token = env.get("FOREVERVM_TOKEN")
    if token:
        base_url = env.get("FOREVERVM_BASE_URL") or DEFAULT_FOREVERVM_SERVER
        return ForeverVMOptions(
            token=token, base_url=base_url.rstrip("/"), exec_timeout=timeout
        )

    if not path.exists():
        raise ConfigError(f"foreverVM config file not found at: {path}")

    try:
        config = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Failed to read foreverVM config file: {exc}") from exc

    if not isinstance(config, dict) or not config.get("token"):
        raise ConfigError("foreverVM config file does not contain a token")

    base_url = config.get("server_url") or DEFAULT_FOREVERVM_SERVER
    log.debug("Loaded foreverVM options from %s", path)
    return ForeverVMOptions(
        token=config["token"], base_url=base_url.rstrip("/"), exec_timeout=timeout
    )
