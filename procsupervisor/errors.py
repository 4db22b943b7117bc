"""Error types raised by the process supervisor."""

from typing import List, Optional, Union

# Exit code used when setup fails before the foreground process launches.
SETUP_FAILURE_EXIT_CODE = 97


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class ConfigError(SupervisorError, ValueError):
    """Invalid supervisor configuration."""


class InvalidTransitionError(SupervisorError):
    """Service state change that the state machine does not allow."""

    def __init__(self, service: str, current, target) -> None:
        self.service = service
        self.current = current
        self.target = target
        super().__init__(
            f"Service {service}: invalid transition "
            f"{current.value} -> {target.value}"
        )


class SetupError(SupervisorError):
    """Failure before the foreground process was launched."""
    exit_code = SETUP_FAILURE_EXIT_CODE


class DependencyStartupError(SetupError):
    """A dependent service never reached the ready state."""

    def __init__(self,
                 service: str,
                 timeout: float,
                 reason: Optional[str] = None) -> None:
        self.service = service
        self.timeout = timeout
        self.reason = reason or f"not ready after {timeout:g}s"
        super().__init__(
            f"Dependency {service} failed to start: {self.reason}"
        )


class ForegroundLaunchError(SetupError):
    """The foreground command could not be executed."""

    def __init__(self, command: Union[str, List[str]],
                 os_error: OSError) -> None:
        self.command = command
        self.os_error = os_error
        shown = command if isinstance(command, str) else ' '.join(command)
        super().__init__(f"Failed to launch foreground {shown!r}: {os_error}")


class DependencyCrashError(SupervisorError):
    """A ready dependent service exited while the foreground was running."""

    def __init__(self, service: str, returncode: Optional[int]) -> None:
        self.service = service
        self.returncode = returncode
        super().__init__(
            f"Dependency {service} exited unexpectedly "
            f"with return code {returncode}"
        )
