"""Dependent service processes and their state machine."""

import enum
import logging
import os
import signal
import subprocess
import time
from typing import Callable, List, Optional, Tuple

import psutil

from procsupervisor.config import DEFAULT_GRACE_PERIOD, ServiceSpec
from procsupervisor.errors import (
    DependencyCrashError,
    DependencyStartupError,
    InvalidTransitionError,
)
from procsupervisor.events import STATE_CHANGED, EventRecorder, SupervisorEvent
from procsupervisor.readiness import ReadinessProbe, build_probe

logger = logging.getLogger(__name__)

GROUP_POLL_INTERVAL = 0.05


class ServiceState(enum.Enum):
    """Lifecycle state of a dependent service."""
    PENDING = 'pending'
    STARTING = 'starting'
    READY = 'ready'
    FAILED = 'failed'
    STOPPED = 'stopped'


_ALLOWED_TRANSITIONS = {
    ServiceState.PENDING: {ServiceState.STARTING, ServiceState.STOPPED},
    ServiceState.STARTING: {
        ServiceState.READY, ServiceState.FAILED, ServiceState.STOPPED
    },
    ServiceState.READY: {ServiceState.FAILED, ServiceState.STOPPED},
    # FAILED -> STARTING only happens through restart()
    ServiceState.FAILED: {ServiceState.STARTING, ServiceState.STOPPED},
    ServiceState.STOPPED: set(),
}


def launch_process(command, *, use_shell: bool, env=None,
                   cwd=None) -> subprocess.Popen:
    """Start a child process in its own session.

    The child does not share our process group, so terminal signals reach
    it only when the supervisor forwards them.
    """
    # pylint: disable=consider-using-with
    return subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        shell=use_shell,
        env=env,
        cwd=cwd,
        close_fds=True,
        start_new_session=True
    )


def signal_group(pgid: int, signum: int) -> bool:
    """Send a signal to a process group.

    Returns:
        False if the group no longer exists
    """
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.warning("Cannot signal process group %d: %s", pgid, e)
        return False
    return True


def group_members(pgid: int) -> List[psutil.Process]:
    """Live (non-zombie) processes in a process group."""
    members = []
    for proc in psutil.process_iter():
        try:
            if (os.getpgid(proc.pid) == pgid
                    and proc.status() != psutil.STATUS_ZOMBIE):
                members.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
            continue
    return members


def terminate_process(process: subprocess.Popen) -> List[psutil.Process]:
    """Send SIGTERM to a process, its process group and its descendants.

    The group is signalled even when the process itself has exited, since
    its children keep the group after being re-parented.

    Returns:
        The descendants that were signalled, for a later kill pass
    """
    descendants = []
    if process.poll() is None:
        try:
            descendants = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []
        try:
            process.terminate()
        except ProcessLookupError:
            pass
    # launch_process starts a new session, so the pgid is the pid
    signal_group(process.pid, signal.SIGTERM)
    for child in descendants:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass
    return descendants


def reap_process(process: subprocess.Popen,
                 descendants: List[psutil.Process],
                 deadline: float) -> Optional[int]:
    """Wait for a terminated process until the deadline, then kill it.

    Anything left in its process group, or among the descendants that
    moved to another group, is killed once the deadline passes.

    Args:
        process: Process that was sent SIGTERM
        descendants: Its descendants, as returned by terminate_process
        deadline: time.monotonic() value after which stragglers are killed

    Returns:
        The process return code
    """
    try:
        process.wait(timeout=max(0.0, deadline - time.monotonic()))
    except subprocess.TimeoutExpired:
        logger.warning(
            "Process %d did not exit within the grace period, killing it",
            process.pid
        )
        process.kill()
        process.wait()

    pgid = process.pid
    leftovers = group_members(pgid)
    while leftovers and time.monotonic() < deadline:
        time.sleep(GROUP_POLL_INTERVAL)
        leftovers = group_members(pgid)
    if leftovers:
        logger.warning(
            "Killing %d leftover processes in group %d", len(leftovers), pgid
        )
        signal_group(pgid, signal.SIGKILL)
        psutil.wait_procs(leftovers, timeout=1.0)

    if descendants:
        _, alive = psutil.wait_procs(
            descendants, timeout=max(0.0, deadline - time.monotonic())
        )
        for child in alive:
            logger.warning("Killing leftover child process %d", child.pid)
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=1.0)
    return process.returncode


class ManagedService:
    """A dependent service owned by the supervisor."""

    def __init__(
        self,
        spec: ServiceSpec,
        *,
        recorder: Optional[EventRecorder] = None,
        probe: Optional[ReadinessProbe] = None,
        grace_period: float = DEFAULT_GRACE_PERIOD
    ) -> None:
        """Initialize managed service.

        Args:
            spec: Service specification
            recorder: Event recorder receiving state changes
            probe: Optional readiness probe. If None, built from
                spec.readiness.
            grace_period: Seconds between SIGTERM and SIGKILL when an
                attempt that failed to start is cleaned up
        """
        self.spec = spec
        self.name = spec.name
        self.recorder = recorder or EventRecorder()
        self.probe = probe or build_probe(spec.readiness)
        self.grace_period = grace_period
        self.state = ServiceState.PENDING
        self.process: Optional[subprocess.Popen] = None
        self.restarts = 0
        self.last_error: Optional[Exception] = None
        self._descendants: List[psutil.Process] = []
        self._ps_process: Optional[psutil.Process] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def restarts_left(self) -> int:
        return self.spec.max_restarts - self.restarts

    def _set_state(self, target: ServiceState,
                   detail: Optional[str] = None) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.name, self.state, target)
        logger.debug(
            "Service %s: %s -> %s", self.name, self.state.value, target.value
        )
        self.state = target
        self.recorder.emit(
            SupervisorEvent(
                kind=STATE_CHANGED,
                service=self.name,
                state=target,
                detail=detail
            )
        )

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def launch(self) -> None:
        """Start the service process.

        Raises:
            OSError: If the start command cannot be executed
        """
        self._set_state(ServiceState.STARTING)
        if self.process is not None:
            # Leftovers of the previous attempt
            self.stop_process(grace_period=self.grace_period)
        cmd, use_shell = self.spec.start.build()
        logger.info(
            "Starting service %s: %s", self.name, self.spec.start.describe()
        )
        self._ps_process = None
        self.process = launch_process(
            cmd,
            use_shell=use_shell,
            env=self.spec.start.build_env(),
            cwd=self.spec.start.cwd
        )
        logger.info("Started service %s with PID: %d", self.name, self.pid)

    def wait_until_ready(
        self,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> bool:
        """Poll the readiness probe until ready, failure or timeout.

        Args:
            should_stop: Checked between polls; returning True abandons the
                wait and leaves the service STARTING for the caller to stop

        Returns:
            True if the service became ready, False otherwise. On failure
            the state is FAILED and last_error holds the
            DependencyStartupError.
        """
        timeout = self.spec.startup_timeout
        interval = self.spec.readiness.interval
        deadline = time.monotonic() + timeout
        polls = 0

        while True:
            returncode = self.process.poll()
            if returncode is not None:
                return self._fail_startup(
                    f"exited with return code {returncode} "
                    "before becoming ready"
                )

            polls += 1
            if self.probe.check():
                logger.info(
                    "Service %s is ready (%s, %d polls)", self.name,
                    self.probe.describe(), polls
                )
                self._set_state(ServiceState.READY)
                return True

            if should_stop is not None and should_stop():
                logger.info(
                    "Stop requested while waiting for service %s", self.name
                )
                return False

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._fail_startup(None)
            time.sleep(min(interval, remaining))

    def _fail_startup(self, reason: Optional[str]) -> bool:
        error = DependencyStartupError(
            self.name, self.spec.startup_timeout, reason
        )
        logger.error("%s", error)
        self.stop_process(grace_period=self.grace_period)
        self.last_error = error
        self._set_state(ServiceState.FAILED, detail=error.reason)
        return False

    def start(self, should_stop: Optional[Callable[[], bool]] = None) -> bool:
        """Launch the service and wait for it to become ready.

        Returns:
            True if ready, False if the start failed or a stop was requested
        """
        try:
            self.launch()
        except OSError as e:
            return self._fail_startup(f"could not execute start command: {e}")
        return self.wait_until_ready(should_stop)

    def restart(self, should_stop: Optional[Callable[[], bool]] = None) -> bool:
        """Start a failed service again, consuming one restart."""
        if self.state is not ServiceState.FAILED:
            raise InvalidTransitionError(
                self.name, self.state, ServiceState.STARTING
            )
        self.restarts += 1
        logger.warning(
            "Restarting service %s (restart %d/%d)", self.name, self.restarts,
            self.spec.max_restarts
        )
        return self.start(should_stop)

    def check_crashed(self) -> Optional[DependencyCrashError]:
        """Detect a ready service whose process has exited.

        Returns:
            DependencyCrashError if the service crashed, None otherwise
        """
        if self.state is not ServiceState.READY or self.is_running():
            return None
        error = DependencyCrashError(self.name, self.returncode)
        logger.error("%s", error)
        self.last_error = error
        self._set_state(ServiceState.FAILED, detail=str(error))
        return error

    def send_terminate(self) -> None:
        """First phase of a stop: signal the process tree."""
        if self.process is not None:
            self._descendants = terminate_process(self.process)

    def finish_stop(self, deadline: float) -> None:
        """Second phase of a stop: wait, kill stragglers, mark STOPPED."""
        if self.process is not None:
            reap_process(self.process, self._descendants, deadline)
            self._descendants = []
            logger.info(
                "Service %s stopped with return code %s", self.name,
                self.returncode
            )
        if self.state is not ServiceState.STOPPED:
            self._set_state(ServiceState.STOPPED)

    def stop_process(self, grace_period: float) -> None:
        """Terminate the process tree without touching the state."""
        if self.process is None:
            return
        descendants = terminate_process(self.process)
        reap_process(
            self.process, descendants, time.monotonic() + grace_period
        )

    def stop(self, grace_period: float) -> None:
        """Terminate the service and mark it STOPPED."""
        self.send_terminate()
        self.finish_stop(time.monotonic() + grace_period)

    def resource_usage(self) -> Optional[Tuple[float, int]]:
        """Sample CPU percent and resident memory of the service process.

        Returns:
            (cpu_percent, rss_bytes), or None if the process is gone
        """
        if not self.is_running():
            return None
        try:
            if self._ps_process is None or self._ps_process.pid != self.pid:
                self._ps_process = psutil.Process(self.pid)
            with self._ps_process.oneshot():
                return (
                    self._ps_process.cpu_percent(),
                    self._ps_process.memory_info().rss
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Cannot sample service %s: %s", self.name, e)
            return None
