"""Error taxonomy for the runtime.

Every failure the runtime reports is a subclass of ``CkpError``, grouped
into a handful of families so callers can catch as broadly or as
narrowly as they need:

- **NotFoundError** — a kernel, instance, project, edge or occurrent is absent.
- **AlreadyExistsError** — a duplicate create, register or start.
- **InvalidFormatError** — a malformed URN, receipt or process-state file.
- **InvalidTransitionError** — an out-of-order phase or lifecycle step.
- **PermissionDeniedError** — an edge refused by the target's allowlist.
- **ProcessError** — an OS-level spawn or signal failure.
- **CkpTimeoutError** — a bounded wait expired.
- **UnsupportedError** — a driver asked to handle something it cannot.
- **PortUnavailableError** — a project's port range is exhausted.

Errors carry the identifier they are about (``subject``) and, where it
makes sense, the ``expected`` and ``actual`` state so a message is
actionable without reading internals.
"""

from __future__ import annotations


class CkpError(Exception):
    """Base class for every runtime error."""

    def __init__(
        self,
        message: str,
        *,
        subject: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        """Create an error with optional context.

        Args:
            message: Human-readable description.
            subject: The URN, id or path the error is about.
            expected: The state the operation required.
            actual: The state that was found instead.

        """
        super().__init__(message)
        self.subject = subject
        self.expected = expected
        self.actual = actual


# -- Not found ----------------------------------------------------------------


class NotFoundError(CkpError):
    """Raised when a named entity does not exist."""


class KernelNotFoundError(NotFoundError):
    """Raised when a kernel directory or config is missing."""


class InstanceNotFoundError(NotFoundError):
    """Raised when a storage instance does not exist."""


class NotAProjectError(NotFoundError):
    """Raised when no registered project encloses a path."""


class EdgeNotFoundError(NotFoundError):
    """Raised when an edge does not exist."""


class UnresolvableKernelError(NotFoundError):
    """Raised when an edge endpoint cannot be located."""


class OccurrentNotFoundError(NotFoundError):
    """Raised when a process occurrent record is missing."""


# -- Already exists -----------------------------------------------------------


class AlreadyExistsError(CkpError):
    """Raised when creating something that is already there."""


class AlreadyRunningError(AlreadyExistsError):
    """Raised when starting a kernel whose tool process is live."""


class AlreadyRegisteredError(AlreadyExistsError):
    """Raised when registering a project path or name twice."""


class EdgeExistsError(AlreadyExistsError):
    """Raised when a (predicate, source) pair already has an edge."""


class InstanceExistsError(AlreadyExistsError):
    """Raised when an instance id is already taken."""


class KernelExistsError(AlreadyExistsError):
    """Raised when materializing a kernel directory that exists."""


# -- Format and state ---------------------------------------------------------


class InvalidFormatError(CkpError):
    """Raised for malformed URNs, receipts and state files."""


class InvalidPredicateError(InvalidFormatError):
    """Raised when an edge predicate is outside the vocabulary."""


class InvalidTransitionError(CkpError):
    """Raised when a phase or lifecycle step is out of order."""


class PermissionDeniedError(CkpError):
    """Raised when a predicate or allowlist check fails."""


# -- Processes and time -------------------------------------------------------


class ProcessError(CkpError):
    """Raised when spawning or signalling an OS process fails."""


class ProcessNotFoundError(ProcessError):
    """Raised when a pid vanished before it could be recorded."""


class CkpTimeoutError(CkpError):
    """Raised when a bounded wait expires."""


class StopTimeoutError(CkpTimeoutError):
    """Raised when a process survives both terminate and kill."""


class RegistryBusyError(CkpTimeoutError):
    """Raised when the registry lock cannot be acquired in time."""


# -- Drivers ------------------------------------------------------------------


class UnsupportedError(CkpError):
    """Raised when a driver is asked to handle something it cannot."""


class UnsupportedLocationError(UnsupportedError):
    """Raised when a storage location has no local driver."""


class UnsupportedBackendError(UnsupportedError):
    """Raised when a version backend is detected but not implemented."""


# -- Resources ----------------------------------------------------------------


class PortUnavailableError(CkpError):
    """Raised when no free port is left in a project's range."""
