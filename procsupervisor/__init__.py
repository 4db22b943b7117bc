"""Process supervisor package."""

from .config import (
    CommandConfig,
    ForegroundConfig,
    ReadinessConfig,
    ServiceSpec,
    StartupPolicy,
    SupervisorConfig,
)
from .errors import (
    SETUP_FAILURE_EXIT_CODE,
    ConfigError,
    DependencyCrashError,
    DependencyStartupError,
    ForegroundLaunchError,
    SupervisorError,
)
from .service import ManagedService, ServiceState
from .supervisor import ProcessSupervisor, SupervisorResult

__all__ = [
    'CommandConfig',
    'ForegroundConfig',
    'ReadinessConfig',
    'ServiceSpec',
    'StartupPolicy',
    'SupervisorConfig',
    'SETUP_FAILURE_EXIT_CODE',
    'ConfigError',
    'DependencyCrashError',
    'DependencyStartupError',
    'ForegroundLaunchError',
    'SupervisorError',
    'ManagedService',
    'ServiceState',
    'ProcessSupervisor',
    'SupervisorResult',
]
