"""Kernel manager — start, stop and inspect a kernel's processes.

Each kernel is backed by at most one *tool* process and at most one
*governor* (the watcher that reacts to new inbox entries).  The manager
spawns them, writes their process-state files, and answers "is it
running?" by asking the process tracker every time.

Lifecycle of one start/stop request::

    STOPPED ──start──► STARTING ──confirmed──► RUNNING
       ▲                  │                       │
       └──── failure ─────┘                      stop
       ▲                                          ▼
       └──────────── confirmed dead ────────── STOPPING
                       (or failure)

Key concepts:
    - **Nothing is cached** — ``status`` re-reads the state files and
      re-verifies them against the OS on every call.  A stale file (the
      process is gone, or its pid now belongs to someone else) reads as
      STOPPED.
    - **Hot vs. cold** — hot tools get a port from the project's port map
      and must survive a short startup window.  Cold tools do one unit of
      work and exit, so a cold kernel is STOPPED as soon as its tool
      finishes.
    - **Stop escalation** — SIGTERM, bounded wait, SIGKILL, bounded wait.
      The state file is only removed once the tracker confirms the
      process is gone.
    - **External governors** — the watch loop lives outside the runtime.
      A governor process announces itself with ``attach_governor`` and
      asks for cold tools with ``wake``.
"""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import psutil

from py_ckp.config import RuntimeConfig
from py_ckp.env import Environment, tool_environment
from py_ckp.errors import (
    AlreadyRunningError,
    CkpError,
    InvalidFormatError,
    InvalidTransitionError,
    NotAProjectError,
    ProcessError,
    ProcessNotFoundError,
    StopTimeoutError,
)
from py_ckp.kernel import Kernel, KernelConfig, KernelKind, QueueStats, list_kernels
from py_ckp.lockfile import FileLock
from py_ckp.logging import LogLevel, project_logger
from py_ckp.ports import PortMap
from py_ckp.process.tracker import ProcessRecord, ProcessRole, ProcessTracker
from py_ckp.project.registry import ProjectRegistry

if TYPE_CHECKING:
    from pathlib import Path

    from py_ckp.logging import Logger

START_LOCK_FILE = ".start.lock"

_POLL_INTERVAL = 0.05
_SOURCE = "manager"


class KernelState(StrEnum):
    """Lifecycle state of a kernel's tool."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class KernelMode(StrEnum):
    """Operator-facing summary of what a kernel is doing.

    Hot kernels are ONLINE or DOWN.  Cold kernels are PROCESSING (tool
    running), IDLE (governor waiting for work) or DOWN (no governor).
    """

    ONLINE = "ONLINE"
    PROCESSING = "PROCESSING"
    IDLE = "IDLE"
    DOWN = "DOWN"


class KernelLifecycle:
    """The start/stop state machine of one request against one kernel."""

    def __init__(self, name: str, state: KernelState = KernelState.STOPPED) -> None:
        """Create a lifecycle in *state*."""
        self._name = name
        self._state = state

    @property
    def state(self) -> KernelState:
        """Return the current state."""
        return self._state

    def _transition(self, action: str, expected: KernelState, target: KernelState) -> None:
        """Enforce a state transition.

        Raises:
            InvalidTransitionError: If the kernel is not in *expected*.

        """
        if self._state is not expected:
            msg = f"Cannot {action}: kernel {self._name} is {self._state}, expected {expected}"
            raise InvalidTransitionError(
                msg, subject=self._name, expected=str(expected), actual=str(self._state)
            )
        self._state = target

    def begin_start(self) -> None:
        """Transition STOPPED → STARTING."""
        self._transition("start", KernelState.STOPPED, KernelState.STARTING)

    def confirm_start(self) -> None:
        """Transition STARTING → RUNNING."""
        self._transition("confirm start", KernelState.STARTING, KernelState.RUNNING)

    def begin_stop(self) -> None:
        """Transition RUNNING → STOPPING."""
        self._transition("stop", KernelState.RUNNING, KernelState.STOPPING)

    def confirm_stop(self) -> None:
        """Transition STOPPING → STOPPED."""
        self._transition("confirm stop", KernelState.STOPPING, KernelState.STOPPED)

    def abort(self) -> None:
        """Collapse a transient state back to STOPPED.

        Raises:
            InvalidTransitionError: If the kernel is not STARTING or STOPPING.

        """
        if self._state not in (KernelState.STARTING, KernelState.STOPPING):
            msg = f"Cannot abort: kernel {self._name} is {self._state}, not in transition"
            raise InvalidTransitionError(msg, subject=self._name, actual=str(self._state))
        self._state = KernelState.STOPPED


@dataclass(frozen=True)
class StartResult:
    """What ``start`` or ``wake`` launched.

    Attributes:
        kernel: The kernel name.
        tool: The tool record, or None if a cold tool finished before it
            could be recorded.
        governor: The governor record, if one is configured.
        port: The allocated port (hot kernels only).
        exit_code: Exit status of a cold tool that already finished.

    """

    kernel: str
    tool: ProcessRecord | None
    governor: ProcessRecord | None = None
    port: int | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class StopResult:
    """What ``stop`` terminated.

    Attributes:
        kernel: The kernel name.
        stopped: Records of the processes that were terminated.
        forced: True if any of them needed SIGKILL.

    """

    kernel: str
    stopped: tuple[ProcessRecord, ...] = ()
    forced: bool = False


@dataclass(frozen=True)
class KernelStatus:
    """A freshly verified snapshot of one kernel."""

    name: str
    urn: str
    kind: KernelKind
    state: KernelState
    mode: KernelMode
    tool: ProcessRecord | None
    governor: ProcessRecord | None
    port: int | None
    queue: QueueStats

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "name": self.name,
            "urn": self.urn,
            "kind": str(self.kind),
            "state": str(self.state),
            "mode": str(self.mode),
            "toolPid": self.tool.pid if self.tool else None,
            "governorPid": self.governor.pid if self.governor else None,
            "port": self.port,
            "queue": self.queue.to_dict(),
        }


class KernelManager:
    """Lifecycle owner for the kernels of one project."""

    def __init__(
        self,
        project_root: Path,
        *,
        tracker: ProcessTracker | None = None,
        registry: ProjectRegistry | None = None,
        config: RuntimeConfig | None = None,
        logger: Logger | None = None,
        environment: Environment | None = None,
    ) -> None:
        """Create a manager for *project_root*.

        Args:
            project_root: The project whose kernels are managed.
            tracker: Liveness oracle (defaults to the psutil-backed one).
            registry: Project registry, needed to find the port range of
                hot kernels; created from *config* on first use.
            config: Timeouts and registry location.
            logger: Receives lifecycle events (defaults to the project
                runtime log at ``config.log_level``).
            environment: Base environment for spawned processes
                (defaults to a copy of ``os.environ``).

        """
        self._root = project_root
        self._config = config or RuntimeConfig.from_env()
        self._tracker = tracker or ProcessTracker()
        self._registry = registry
        self._logger = logger or project_logger(project_root, self._config.log_level)
        self._environment = environment or Environment.inherit()
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    @property
    def project_root(self) -> Path:
        """Return the managed project root."""
        return self._root

    @property
    def tracker(self) -> ProcessTracker:
        """Return the liveness oracle."""
        return self._tracker

    # -- Kernels --------------------------------------------------------------

    def create_kernel(self, config: KernelConfig) -> Kernel:
        """Create a new kernel subtree in this project.

        Raises:
            KernelExistsError: If the kernel already exists.

        """
        kernel = Kernel.create(self._root, config)
        self._log(LogLevel.INFO, f"created {kernel.urn} ({config.type})", kernel.name)
        return kernel

    def list_kernels(self) -> list[str]:
        """Return the project's kernel names."""
        return list_kernels(self._root)

    # -- Start ----------------------------------------------------------------

    def start(self, name: str) -> StartResult:
        """Start the kernel's tool (and governor, if configured).

        Raises:
            KernelNotFoundError: If the kernel does not exist.
            AlreadyRunningError: If a live tool record exists.
            NotAProjectError: For a hot kernel in an unregistered project.
            PortUnavailableError: If the project's port range is full.
            ProcessError: If the tool cannot be spawned or dies at startup.

        """
        kernel = Kernel.load(self._root, name)
        lifecycle = KernelLifecycle(kernel.name)
        with self._start_lock(kernel):
            existing = self._tracker.live_record(kernel.tool_state_path, ProcessRole.TOOL)
            if existing is not None:
                msg = f"Kernel {kernel.name} is already running (pid {existing.pid})"
                raise AlreadyRunningError(msg, subject=kernel.name)
            lifecycle.begin_start()
            port = None
            tool = None
            try:
                if kernel.kind is KernelKind.HOT:
                    port = self._port_map().allocate(kernel.name)
                tool, exit_code = self._launch_tool(kernel, port=port)
                if kernel.kind is KernelKind.HOT and tool is not None:
                    self._confirm_survival(kernel, tool)
                governor = self._ensure_governor(kernel)
            except CkpError as exc:
                lifecycle.abort()
                if tool is not None:
                    self._terminate(tool, self._config.kill_grace)
                    self._tracker.clear_state(kernel.tool_state_path, tool)
                if port is not None:
                    self._release_port(kernel)
                self._log(LogLevel.ERROR, f"start failed: {exc}", kernel.name)
                raise
            lifecycle.confirm_start()
        where = f" on port {port}" if port is not None else ""
        pid = tool.pid if tool else "exited"
        self._log(LogLevel.INFO, f"started {kernel.urn} (pid {pid}){where}", kernel.name)
        return StartResult(kernel.name, tool, governor, port, exit_code)

    def wake(self, name: str, source_queue: str | None = None) -> StartResult | None:
        """Spawn a cold kernel's tool for one unit of work.

        Called by an external governor when a new inbox entry appears.

        Args:
            name: The cold kernel.
            source_queue: The inbox entry that triggered the wake-up,
                passed to the tool as ``CKP_SOURCE_QUEUE``.

        Returns:
            The launch result, or None if a tool is already live.

        Raises:
            InvalidTransitionError: If the kernel is hot.
            ProcessError: If the tool cannot be spawned.

        """
        kernel = Kernel.load(self._root, name)
        if kernel.kind is KernelKind.HOT:
            msg = f"Kernel {kernel.name} is hot; use start instead of wake"
            raise InvalidTransitionError(msg, subject=kernel.name, actual=str(kernel.kind))
        with self._start_lock(kernel):
            if self._tracker.live_record(kernel.tool_state_path, ProcessRole.TOOL) is not None:
                self._log(LogLevel.DEBUG, "wake ignored: tool already running", kernel.name)
                return None
            tool, exit_code = self._launch_tool(kernel, source_queue=source_queue)
        self._log(LogLevel.INFO, f"woke for {source_queue or 'direct request'}", kernel.name)
        return StartResult(kernel.name, tool, exit_code=exit_code)

    # -- Governors ------------------------------------------------------------

    def attach_governor(self, name: str, pid: int) -> ProcessRecord:
        """Record an externally started governor for *name*.

        A stale governor record is overwritten.

        Raises:
            AlreadyRunningError: If a different live governor is recorded.
            ProcessNotFoundError: If *pid* is not running.

        """
        kernel = Kernel.load(self._root, name)
        path = kernel.governor_state_path
        existing = self._tracker.live_record(path, ProcessRole.GOVERNOR)
        if existing is not None and existing.pid != pid:
            msg = f"Kernel {kernel.name} already has governor pid {existing.pid}"
            raise AlreadyRunningError(msg, subject=kernel.name)
        record = self._tracker.record(pid, ProcessRole.GOVERNOR)
        self._tracker.write_state(path, record)
        self._log(LogLevel.INFO, f"governor {pid} attached", kernel.name)
        return record

    def detach_governor(self, name: str, pid: int) -> bool:
        """Remove the governor record if it names *pid*.

        Returns:
            True if the record was removed.

        """
        kernel = Kernel.load(self._root, name)
        path = kernel.governor_state_path
        try:
            current = self._tracker.read_state(path, ProcessRole.GOVERNOR)
        except InvalidFormatError:
            current = None
        if current is None or current.pid != pid:
            return False
        path.unlink(missing_ok=True)
        self._log(LogLevel.INFO, f"governor {pid} detached", kernel.name)
        return True

    # -- Stop -----------------------------------------------------------------

    def stop(self, name: str, grace: float | None = None) -> StopResult:
        """Stop the kernel's governor and tool.

        Args:
            name: The kernel.
            grace: Seconds to wait after SIGTERM (default from config).

        Raises:
            KernelNotFoundError: If the kernel does not exist.
            StopTimeoutError: If a process survives SIGKILL.
            ProcessError: If a process cannot be signalled.

        """
        kernel = Kernel.load(self._root, name)
        wait = self._config.stop_grace if grace is None else grace
        targets = [
            (path, record)
            for path, role in (
                (kernel.governor_state_path, ProcessRole.GOVERNOR),
                (kernel.tool_state_path, ProcessRole.TOOL),
            )
            if (record := self._tracker.live_record(path, role)) is not None
        ]
        if not targets:
            self._clear_stale(kernel)
            self._release_port(kernel)
            self._log(LogLevel.DEBUG, "stop: nothing running", kernel.name)
            return StopResult(kernel.name)

        lifecycle = KernelLifecycle(kernel.name, KernelState.RUNNING)
        lifecycle.begin_stop()
        forced = False
        try:
            for path, record in targets:
                forced = self._terminate(record, wait) or forced
                self._tracker.clear_state(path, record)
        except CkpError as exc:
            lifecycle.abort()
            self._log(LogLevel.ERROR, f"stop failed: {exc}", kernel.name)
            raise
        self._release_port(kernel)
        lifecycle.confirm_stop()
        how = "forced" if forced else "graceful"
        self._log(LogLevel.INFO, f"stopped {kernel.urn} ({how})", kernel.name)
        return StopResult(kernel.name, tuple(record for _, record in targets), forced)

    def stop_all(self, grace: float | None = None) -> list[StopResult]:
        """Stop every kernel in the project that has live processes."""
        results = []
        for name in self.list_kernels():
            result = self.stop(name, grace)
            if result.stopped:
                results.append(result)
        return results

    # -- Status ---------------------------------------------------------------

    def status(self, name: str) -> KernelStatus:
        """Return a freshly verified status snapshot.

        Raises:
            KernelNotFoundError: If the kernel does not exist.

        """
        kernel = Kernel.load(self._root, name)
        tool = self._tracker.live_record(kernel.tool_state_path, ProcessRole.TOOL)
        governor = self._tracker.live_record(kernel.governor_state_path, ProcessRole.GOVERNOR)
        port = None
        if tool is not None and kernel.kind is KernelKind.HOT:
            port = self._port_map().get(kernel.name)
        return KernelStatus(
            name=kernel.name,
            urn=str(kernel.urn),
            kind=kernel.kind,
            state=KernelState.RUNNING if tool else KernelState.STOPPED,
            mode=_mode(kernel.kind, tool, governor),
            tool=tool,
            governor=governor,
            port=port,
            queue=kernel.queue_stats(),
        )

    def status_all(self) -> list[KernelStatus]:
        """Return the status of every kernel in the project."""
        return [self.status(name) for name in self.list_kernels()]

    def tool_environment(
        self,
        kernel: Kernel,
        *,
        port: int | None = None,
        source_queue: str | None = None,
    ) -> Environment:
        """Return the environment block a tool of *kernel* is started with."""
        return tool_environment(
            self._environment,
            kernel=kernel.name,
            kernel_urn=str(kernel.urn),
            project_root=str(self._root),
            port=port,
            source_queue=source_queue,
        )

    # -- Internals ------------------------------------------------------------

    def _start_lock(self, kernel: Kernel) -> FileLock:
        return FileLock(
            kernel.path / START_LOCK_FILE,
            timeout=self._config.lock_timeout,
            tracker=self._tracker,
        )

    def _projects(self) -> ProjectRegistry:
        if self._registry is None:
            self._registry = ProjectRegistry(
                config=self._config, tracker=self._tracker, logger=self._logger
            )
        return self._registry

    def _port_map(self) -> PortMap:
        entry = self._projects().resolve(self._root)
        port_map = PortMap(entry.path, entry.port_range, lock_timeout=self._config.lock_timeout)
        port_map.load()
        return port_map

    def _release_port(self, kernel: Kernel) -> None:
        if kernel.kind is not KernelKind.HOT:
            return
        try:
            port_map = self._port_map()
        except NotAProjectError:
            return
        if port_map.release(kernel.name):
            self._log(LogLevel.DEBUG, "port released", kernel.name)

    def _spawn(
        self, kernel: Kernel, argv: list[str], role: ProcessRole, env: Environment
    ) -> subprocess.Popen[bytes]:
        kernel.logs_dir.mkdir(parents=True, exist_ok=True)
        with (kernel.logs_dir / f"{role}.log").open("ab") as log_file:
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=kernel.path,
                    env=env.as_dict(),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                msg = f"Cannot spawn {role} of {kernel.name} ({argv[0]}): {exc}"
                raise ProcessError(msg, subject=kernel.name) from exc
        self._children[proc.pid] = proc
        return proc

    def _launch_tool(
        self,
        kernel: Kernel,
        *,
        port: int | None = None,
        source_queue: str | None = None,
    ) -> tuple[ProcessRecord | None, int | None]:
        env = self.tool_environment(kernel, port=port, source_queue=source_queue)
        proc = self._spawn(kernel, kernel.tool_command(), ProcessRole.TOOL, env)
        try:
            record = self._tracker.record(proc.pid, ProcessRole.TOOL)
        except ProcessNotFoundError:
            exit_code = proc.wait()
            self._children.pop(proc.pid, None)
            if kernel.kind is KernelKind.HOT:
                msg = f"Tool of {kernel.name} exited immediately with status {exit_code}"
                raise ProcessError(msg, subject=kernel.name) from None
            return None, exit_code
        self._tracker.write_state(kernel.tool_state_path, record)
        return record, None

    def _confirm_survival(self, kernel: Kernel, record: ProcessRecord) -> None:
        deadline = time.monotonic() + self._config.startup_grace
        alive = True
        while alive and time.monotonic() < deadline:
            time.sleep(_POLL_INTERVAL)
            self._reap(record.pid)
            alive = self._tracker.is_alive(record)
        if alive:
            return
        self._tracker.clear_state(kernel.tool_state_path, record)
        log = kernel.logs_dir / f"{ProcessRole.TOOL}.log"
        msg = f"Tool of {kernel.name} died during startup (see {log})"
        raise ProcessError(msg, subject=kernel.name)

    def _ensure_governor(self, kernel: Kernel) -> ProcessRecord | None:
        argv = kernel.governor_command()
        path = kernel.governor_state_path
        existing = self._tracker.live_record(path, ProcessRole.GOVERNOR)
        if argv is None or existing is not None:
            return existing
        proc = self._spawn(kernel, argv, ProcessRole.GOVERNOR, self.tool_environment(kernel))
        record = self._tracker.record(proc.pid, ProcessRole.GOVERNOR)
        self._tracker.write_state(path, record)
        return record

    def _terminate(self, record: ProcessRecord, grace: float) -> bool:
        """Stop one process; return True if SIGKILL was needed."""
        if not self._tracker.is_alive(record):
            return False
        try:
            proc = psutil.Process(record.pid)
            proc.terminate()
            if self._wait_gone(proc, record, grace):
                return False
            self._log(LogLevel.WARNING, f"pid {record.pid} ignored SIGTERM, sending SIGKILL")
            proc.kill()
        except psutil.NoSuchProcess:
            self._reap(record.pid)
            return False
        except psutil.AccessDenied as exc:
            msg = f"Not allowed to signal pid {record.pid}"
            raise ProcessError(msg, subject=str(record.pid)) from exc
        if self._wait_gone(proc, record, self._config.kill_grace):
            return True
        msg = f"Process {record.pid} survived SIGKILL"
        raise StopTimeoutError(msg, subject=str(record.pid))

    def _wait_gone(self, proc: psutil.Process, record: ProcessRecord, timeout: float) -> bool:
        child = self._children.pop(record.pid, None)
        try:
            if child is not None:
                child.wait(timeout=timeout)
            else:
                proc.wait(timeout=timeout)
        except (subprocess.TimeoutExpired, psutil.TimeoutExpired):
            if child is not None:
                self._children[record.pid] = child
        return not self._tracker.is_alive(record)

    def _reap(self, pid: int) -> None:
        child = self._children.get(pid)
        if child is not None and child.poll() is not None:
            del self._children[pid]

    def _clear_stale(self, kernel: Kernel) -> None:
        for path, role in (
            (kernel.governor_state_path, ProcessRole.GOVERNOR),
            (kernel.tool_state_path, ProcessRole.TOOL),
        ):
            if path.exists() and self._tracker.live_record(path, role) is None:
                path.unlink(missing_ok=True)

    def _log(self, level: LogLevel, message: str, kernel: str = "") -> None:
        self._logger.log(level, message, source=_SOURCE, kernel=kernel)


def _mode(
    kind: KernelKind, tool: ProcessRecord | None, governor: ProcessRecord | None
) -> KernelMode:
    if kind is KernelKind.HOT:
        return KernelMode.ONLINE if tool else KernelMode.DOWN
    if governor is None:
        return KernelMode.DOWN
    return KernelMode.PROCESSING if tool else KernelMode.IDLE
