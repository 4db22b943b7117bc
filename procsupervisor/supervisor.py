"""Supervision of dependent services and a foreground process."""

from dataclasses import dataclass, field
import logging
import signal
import subprocess
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from procsupervisor.config import (
    ForegroundConfig,
    ServiceSpec,
    StartupPolicy,
    SupervisorConfig,
)
from procsupervisor.errors import ForegroundLaunchError, SupervisorError
from procsupervisor.events import (
    DEPENDENCY_CRASHED,
    DEPENDENCY_SKIPPED,
    FOREGROUND_EXITED,
    FOREGROUND_STARTED,
    SIGNAL_RECEIVED,
    STATE_CHANGED,
    EventRecorder,
    Listener,
    SupervisorEvent,
)
from procsupervisor.metrics import SupervisorMetrics
from procsupervisor.readiness import ReadinessProbe, build_probe
from procsupervisor.service import (
    ManagedService,
    ServiceState,
    launch_process,
    reap_process,
    terminate_process,
)

logger = logging.getLogger(__name__)

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT)
FOREGROUND_TIMEOUT_EXIT_CODE = 124


@dataclass
class SupervisorResult:
    """Outcome of a supervised run."""
    code: Optional[int] = None
    signal: Optional[int] = None
    timed_out: bool = False
    stop_signal: Optional[int] = None
    transitions: List[Tuple[str, ServiceState]] = field(default_factory=list)
    events: List[SupervisorEvent] = field(default_factory=list)
    dependency_failures: List[SupervisorError] = field(default_factory=list)

    @property
    def foreground_started(self) -> bool:
        return self.code is not None or self.signal is not None

    @property
    def exit_code(self) -> int:
        """Exit code for the supervisor process.

        The foreground's own code, or 128 + signal number when the
        foreground (or, before it started, the supervisor) was signalled.
        """
        if self.code is not None:
            return self.code
        if self.signal is not None:
            if self.timed_out:
                return FOREGROUND_TIMEOUT_EXIT_CODE
            return 128 + self.signal
        if self.stop_signal is not None:
            return 128 + self.stop_signal
        return 1


class ProcessSupervisor:
    """Starts dependent services, then runs and supervises a foreground."""

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        *,
        listeners: Optional[List[Listener]] = None,
        metrics: Optional[SupervisorMetrics] = None,
        probe_factory: Optional[Callable[[ServiceSpec],
                                         ReadinessProbe]] = None,
        handle_signals: bool = True
    ) -> None:
        """Initialize supervisor.

        Args:
            config: Configuration object. If None, defaults are used and
                services and foreground must be passed to start().
            listeners: Callables receiving every SupervisorEvent
            metrics: Optional metrics to update while supervising
            probe_factory: Optional override building readiness probes
            handle_signals: Whether to install SIGTERM/SIGINT handlers
                (only possible from the main thread)
        """
        self.config = config or SupervisorConfig()
        self.recorder = EventRecorder(listeners)
        self.metrics = metrics
        self.probe_factory = probe_factory or (
            lambda spec: build_probe(spec.readiness)
        )
        self.handle_signals = handle_signals
        self.services: List[ManagedService] = []
        self.last_result: Optional[SupervisorResult] = None
        self._foreground: Optional[subprocess.Popen] = None
        self._stop_signal: Optional[int] = None
        self._stop_noted = False
        self._kill_foreground_at: Optional[float] = None
        if self.metrics is not None:
            self.recorder.subscribe(self._update_metrics)

    @property
    def policy(self) -> StartupPolicy:
        return self.config.policy

    @property
    def grace_period(self) -> float:
        return self.config.grace_period

    def run(self) -> SupervisorResult:
        """Start the configured services and foreground."""
        return self.start(self.config.services, self.config.foreground)

    def start(self, specs: Iterable[ServiceSpec],
              foreground: Any) -> SupervisorResult:
        """Start dependencies in order, then run the foreground to completion.

        Args:
            specs: Dependent services, in start order
            foreground: ForegroundConfig, CommandConfig, command string or
                argument list

        Returns:
            Result holding the foreground's exit status

        Raises:
            DependencyStartupError: If a dependency is not ready in time
                under the fail-fast policy. The foreground is not launched.
            ForegroundLaunchError: If the foreground cannot be executed
        """
        if foreground is None:
            raise ValueError("A foreground command is required")
        foreground = ForegroundConfig.from_value(foreground)
        specs = list(specs)

        self.recorder.reset()
        self.services = [
            ManagedService(
                spec,
                recorder=self.recorder,
                probe=self.probe_factory(spec),
                grace_period=self.grace_period
            ) for spec in specs
        ]
        self._foreground = None
        self._stop_signal = None
        self._stop_noted = False
        self._kill_foreground_at = None

        previous_handlers = self._install_signal_handlers()
        result = SupervisorResult()
        self.last_result = result
        try:
            self._run(foreground, result)
        finally:
            try:
                self._cleanup_foreground()
                self._shutdown_services()
            finally:
                self._restore_signal_handlers(previous_handlers)
                self._note_stop()
                result.stop_signal = self._stop_signal
                result.transitions = list(self.recorder.transitions)
                result.events = list(self.recorder.events)
        logger.info(
            "Supervisor finished with exit code %d", result.exit_code
        )
        return result

    def request_stop(self, signum: int = signal.SIGTERM) -> None:
        """Stop supervision, forwarding the signal to the foreground.

        Safe to call from a signal handler or another thread; dependents
        are stopped by the supervising thread once the foreground exits.
        """
        if self._stop_signal is None:
            self._stop_signal = signum
        foreground = self._foreground
        if foreground is not None and foreground.poll() is None:
            try:
                foreground.send_signal(signum)
            except ProcessLookupError:
                return
            if self._kill_foreground_at is None:
                self._kill_foreground_at = (
                    time.monotonic() + self.grace_period
                )

    def _stop_requested(self) -> bool:
        self._note_stop()
        return self._stop_signal is not None

    def _note_stop(self) -> None:
        if self._stop_signal is None or self._stop_noted:
            return
        self._stop_noted = True
        try:
            name = signal.Signals(self._stop_signal).name
        except ValueError:
            name = str(self._stop_signal)
        logger.warning("Received %s, shutting down", name)
        self.recorder.emit(
            SupervisorEvent(kind=SIGNAL_RECEIVED, detail=name)
        )

    def _run(self, foreground: ForegroundConfig,
             result: SupervisorResult) -> None:
        self._start_dependencies(result)
        if self._stop_requested():
            logger.info("Not launching foreground, stop requested")
            return
        self._launch_foreground(foreground)
        self._supervise(foreground, result)

    def _start_dependencies(self, result: SupervisorResult) -> None:
        for service in self.services:
            if self._stop_requested():
                return

            ready = service.start(self._stop_requested)
            while (not ready and service.state is ServiceState.FAILED
                   and service.restarts_left > 0
                   and not self._stop_requested()):
                if self.metrics is not None:
                    self.metrics.record_restart(service.name)
                ready = service.restart(self._stop_requested)

            if ready or self._stop_requested():
                continue

            error = service.last_error
            if self.policy is StartupPolicy.FAIL_FAST:
                raise error
            logger.warning(
                "Continuing without service %s: %s", service.name, error
            )
            result.dependency_failures.append(error)
            self.recorder.emit(
                SupervisorEvent(
                    kind=DEPENDENCY_SKIPPED,
                    service=service.name,
                    state=service.state,
                    detail=str(error),
                    error=error
                )
            )

    def _launch_foreground(self, foreground: ForegroundConfig) -> None:
        command = foreground.command
        cmd, use_shell = command.build()
        logger.info("Starting foreground: %s", command.describe())
        try:
            self._foreground = launch_process(
                cmd,
                use_shell=use_shell,
                env=command.build_env(),
                cwd=command.cwd
            )
        except OSError as e:
            logger.error("Failed to start foreground: %s", e)
            raise ForegroundLaunchError(command.command, e) from e

        logger.info("Started foreground with PID: %d", self._foreground.pid)
        self.recorder.emit(
            SupervisorEvent(
                kind=FOREGROUND_STARTED,
                detail=f"pid {self._foreground.pid}"
            )
        )
        # A signal may have arrived between the check and the launch
        if self._stop_signal is not None:
            self.request_stop(self._stop_signal)

    def _supervise(self, foreground: ForegroundConfig,
                   result: SupervisorResult) -> None:
        process = self._foreground
        timeout_at = (
            time.monotonic() + foreground.timeout
            if foreground.timeout else None
        )

        while True:
            try:
                process.wait(timeout=self.config.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass

            self._note_stop()
            now = time.monotonic()
            if (self._kill_foreground_at is not None
                    and now >= self._kill_foreground_at):
                logger.warning(
                    "Foreground did not exit within %.1fs, killing it",
                    self.grace_period
                )
                process.kill()
                self._kill_foreground_at = None
                continue

            if timeout_at is not None and now >= timeout_at:
                timeout_at = None
                result.timed_out = True
                logger.error(
                    "Foreground exceeded its %.1fs timeout, terminating it",
                    foreground.timeout
                )
                self._terminate_foreground()
                continue

            self._check_dependencies(result)
            if self.metrics is not None:
                self.metrics.collect_usage(self.services)

        returncode = process.returncode
        if returncode < 0:
            result.signal = -returncode
        else:
            result.code = returncode
        logger.info("Foreground exited with return code %d", returncode)
        self.recorder.emit(
            SupervisorEvent(
                kind=FOREGROUND_EXITED, detail=f"return code {returncode}"
            )
        )
        if self.metrics is not None:
            self.metrics.record_foreground_exit(result.exit_code)

    def _terminate_foreground(self) -> None:
        process = self._foreground
        if process is None or process.poll() is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        if self._kill_foreground_at is None:
            self._kill_foreground_at = time.monotonic() + self.grace_period

    def _check_dependencies(self, result: SupervisorResult) -> None:
        for service in self.services:
            error = service.check_crashed()
            if error is None:
                continue

            result.dependency_failures.append(error)
            self.recorder.emit(
                SupervisorEvent(
                    kind=DEPENDENCY_CRASHED,
                    service=service.name,
                    state=service.state,
                    detail=str(error),
                    error=error
                )
            )
            if self.metrics is not None:
                self.metrics.record_crash(service.name)

            if self.config.fail_together:
                logger.error(
                    "Terminating foreground because service %s exited",
                    service.name
                )
                self._terminate_foreground()
                return

            if service.restarts_left > 0 and not self._stop_requested():
                if self.metrics is not None:
                    self.metrics.record_restart(service.name)
                service.restart(self._stop_requested)

    def _cleanup_foreground(self) -> None:
        """Make sure the foreground and its children do not outlive us."""
        process = self._foreground
        if process is None:
            return
        if process.poll() is None:
            logger.warning("Stopping foreground left running")
        descendants = terminate_process(process)
        reap_process(
            process, descendants, time.monotonic() + self.grace_period
        )

    def _shutdown_services(self) -> None:
        """Stop launched services in reverse start order.

        All services are signalled first, then share one grace period
        before stragglers are killed.
        """
        started = [
            s for s in reversed(self.services)
            if s.state is not ServiceState.PENDING
        ]
        if not started:
            return
        logger.info(
            "Stopping services: %s", ', '.join(s.name for s in started)
        )
        for service in started:
            service.send_terminate()
        deadline = time.monotonic() + self.grace_period
        for service in started:
            service.finish_stop(deadline)

    def _install_signal_handlers(self) -> Dict[int, Any]:
        if not self.handle_signals:
            return {}
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in the main thread, signal handlers skipped")
            return {}
        previous = {}
        for signum in FORWARDED_SIGNALS:
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _handle_signal(self, signum, _frame) -> None:
        self.request_stop(signum)

    def _update_metrics(self, event: SupervisorEvent) -> None:
        if event.kind == STATE_CHANGED:
            self.metrics.record_state(event.service, event.state)
