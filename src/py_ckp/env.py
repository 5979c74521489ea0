"""Tool-process environment — what a spawned kernel process is told.

Every tool or governor process inherits a *copy* of the launching
command's environment plus a handful of ``CKP_*`` variables describing
where it runs:

- ``CKP_KERNEL`` / ``CKP_KERNEL_URN`` — the kernel name and URN.
- ``CKP_PROJECT`` — the project root directory.
- ``CKP_PORT`` — the allocated port (hot kernels only).
- ``CKP_SOURCE_QUEUE`` — the inbox entry that caused a wake-up.

Key design properties:
    - **Copy-on-spawn** — building a child's block never mutates the
      parent's environment.
    - **Strings only** — keys and values are strings, as ``execve`` needs.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

KERNEL_VAR = "CKP_KERNEL"
KERNEL_URN_VAR = "CKP_KERNEL_URN"
PROJECT_VAR = "CKP_PROJECT"
PORT_VAR = "CKP_PORT"
SOURCE_QUEUE_VAR = "CKP_SOURCE_QUEUE"


class Environment:
    """A key-value store for one process's environment variables.

    Each instance is an independent copy — modifying one does not
    affect any other.
    """

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        """Create an environment, optionally pre-populated.

        Args:
            initial: Starting variables (copied, not referenced).

        """
        self._vars: dict[str, str] = dict(initial) if initial else {}

    @classmethod
    def inherit(cls) -> Environment:
        """Return a copy of the current process environment."""
        return cls(os.environ)

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value for *key*, or *default* if not set."""
        return self._vars.get(key, default)

    def set(self, key: str, value: str | int) -> None:
        """Set *key* to *value*, converting numbers to strings."""
        self._vars[key] = str(value)

    def delete(self, key: str) -> None:
        """Remove *key* from the environment.

        Raises:
            KeyError: If *key* does not exist.

        """
        del self._vars[key]

    def copy(self) -> Environment:
        """Return an independent copy of this environment."""
        return Environment(initial=self._vars)

    def as_dict(self) -> dict[str, str]:
        """Return a plain dict suitable for ``subprocess.Popen(env=...)``."""
        return dict(self._vars)

    def __len__(self) -> int:
        """Return the number of variables."""
        return len(self._vars)


def tool_environment(
    base: Environment,
    *,
    kernel: str,
    kernel_urn: str,
    project_root: str,
    port: int | None = None,
    source_queue: str | None = None,
) -> Environment:
    """Return a copy of *base* extended with the ``CKP_*`` variables.

    Stale ``CKP_PORT`` / ``CKP_SOURCE_QUEUE`` values inherited from a
    parent kernel are removed when not applicable to the child.
    """
    env = base.copy()
    env.set(KERNEL_VAR, kernel)
    env.set(KERNEL_URN_VAR, kernel_urn)
    env.set(PROJECT_VAR, project_root)
    for key, value in ((PORT_VAR, port), (SOURCE_QUEUE_VAR, source_queue)):
        if value is not None:
            env.set(key, value)
        elif env.get(key) is not None:
            env.delete(key)
    return env
