"""Runtime configuration read from the environment.

Kernel-specific settings live in each kernel's ``conceptkernel.yaml``
(see ``py_ckp.kernel``).  Everything else the runtime needs (where the
project registry lives, how long to wait for processes) comes from a
few ``CKP_*`` environment variables, with defaults that suit an
interactive command:

==================  ========================================  ==========
Variable            Meaning                                   Default
==================  ========================================  ==========
CKP_REGISTRY_DIR    Directory holding ``projects.json``       see below
CKP_STOP_GRACE      Seconds to wait after SIGTERM             5.0
CKP_KILL_GRACE      Seconds to wait after SIGKILL             2.0
CKP_STARTUP_GRACE   Seconds a hot tool must survive at start  0.2
CKP_LOCK_TIMEOUT    Seconds to wait for a registry lock       5.0
CKP_LOG_LEVEL       Minimum level kept by the runtime log     INFO
==================  ========================================  ==========

The default registry directory is ``~/.config/conceptkernel/projects``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from py_ckp.errors import InvalidFormatError
from py_ckp.logging import LogLevel

if TYPE_CHECKING:
    from collections.abc import Mapping

_REGISTRY_DIR_ENV = "CKP_REGISTRY_DIR"
_STOP_GRACE_ENV = "CKP_STOP_GRACE"
_KILL_GRACE_ENV = "CKP_KILL_GRACE"
_STARTUP_GRACE_ENV = "CKP_STARTUP_GRACE"
_LOCK_TIMEOUT_ENV = "CKP_LOCK_TIMEOUT"
_LOG_LEVEL_ENV = "CKP_LOG_LEVEL"


def default_registry_dir() -> Path:
    """Return ``~/.config/conceptkernel/projects``."""
    return Path.home() / ".config" / "conceptkernel" / "projects"


@dataclass(frozen=True)
class RuntimeConfig:
    """Timeouts, locations and log threshold for one command invocation."""

    registry_dir: Path = field(default_factory=default_registry_dir)
    stop_grace: float = 5.0
    kill_grace: float = 2.0
    startup_grace: float = 0.2
    lock_timeout: float = 5.0
    log_level: LogLevel = LogLevel.INFO

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        """Build a config from ``CKP_*`` variables.

        Args:
            environ: Variables to read (defaults to ``os.environ``).

        Raises:
            InvalidFormatError: If a variable holds an unusable value.

        """
        env = os.environ if environ is None else environ
        defaults = cls()
        registry_dir = env.get(_REGISTRY_DIR_ENV)
        return cls(
            registry_dir=Path(registry_dir).expanduser() if registry_dir else defaults.registry_dir,
            stop_grace=_seconds(env, _STOP_GRACE_ENV, defaults.stop_grace),
            kill_grace=_seconds(env, _KILL_GRACE_ENV, defaults.kill_grace),
            startup_grace=_seconds(env, _STARTUP_GRACE_ENV, defaults.startup_grace),
            lock_timeout=_seconds(env, _LOCK_TIMEOUT_ENV, defaults.lock_timeout),
            log_level=_level(env, defaults.log_level),
        )


def _seconds(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        msg = f"{name} must be a number of seconds, got {raw!r}"
        raise InvalidFormatError(msg, subject=name) from None
    if value < 0:
        msg = f"{name} must not be negative, got {raw!r}"
        raise InvalidFormatError(msg, subject=name)
    return value


def _level(env: Mapping[str, str], default: LogLevel) -> LogLevel:
    raw = env.get(_LOG_LEVEL_ENV)
    if not raw:
        return default
    try:
        return LogLevel[raw.upper()]
    except KeyError:
        allowed = ", ".join(level.name for level in LogLevel)
        msg = f"{_LOG_LEVEL_ENV} must be one of {allowed}, got {raw!r}"
        raise InvalidFormatError(msg, subject=_LOG_LEVEL_ENV) from None
