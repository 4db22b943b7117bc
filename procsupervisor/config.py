"""Configuration classes for process supervision."""

import enum
import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from procsupervisor.errors import ConfigError

ENV_PREFIX = 'SUPERVISOR_'
DEFAULT_POLL_INTERVAL = 0.2
DEFAULT_GRACE_PERIOD = 5.0
DEFAULT_STARTUP_TIMEOUT = 10.0

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


class StartupPolicy(enum.Enum):
    """What to do when a dependency never becomes ready."""
    FAIL_FAST = 'fail_fast'
    PROCEED_ANYWAY = 'proceed_anyway'

    @classmethod
    def parse(cls, value: Union[str, 'StartupPolicy']) -> 'StartupPolicy':
        """Parse a policy name.

        Accepts ``fail_fast``, ``failFast``, ``fail-fast`` and the same
        spellings of ``proceed_anyway``.

        Raises:
            ConfigError: If the name is unknown
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        candidates = (
            text.lower().replace('-', '_'),
            ''.join('_' + c.lower() if c.isupper() else c for c in text),
        )
        for policy in cls:
            if policy.value in candidates:
                return policy
        raise ConfigError(f"Unknown startup policy: {value}")


def parse_bool(value: Any) -> bool:
    """Parse a boolean from a config or environment value."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _positive(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{name} must be greater than 0")
    return number


@dataclass(frozen=True)
class CommandConfig:
    """A command to execute.

    List commands are stored as tuples and ``env`` as sorted (name, value)
    pairs, so a command is immutable and hashable.
    """
    command: Union[str, Tuple[str, ...]] = None
    shell: bool = False
    env: Tuple[Tuple[str, str], ...] = ()
    cwd: Optional[str] = None

    def __post_init__(self):
        """Validate command configuration."""
        if not self.command:
            raise ConfigError("Command cannot be empty")
        if not isinstance(self.command, (str, list, tuple)):
            raise ConfigError("Command must be a string or a list")
        if not isinstance(self.command, str):
            object.__setattr__(
                self, 'command', tuple(str(part) for part in self.command)
            )
        env = self.env or ()
        if isinstance(env, dict):
            env = env.items()
        try:
            env = tuple(sorted((str(k), str(v)) for k, v in env))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid command environment: {e}") from e
        object.__setattr__(self, 'env', env)
        try:
            self.build()
        except ValueError as e:
            raise ConfigError(f"Invalid command {self.command!r}: {e}") from e

    @classmethod
    def from_value(cls, value: Any) -> 'CommandConfig':
        """Create a command from a string, list or mapping.

        Args:
            value: ``"redis-server --port 6379"``, ``["redis-server"]`` or
                ``{"command": ..., "shell": ..., "env": ..., "cwd": ...}``

        Returns:
            CommandConfig object
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, (str, list, tuple)):
            return cls(command=value)
        if isinstance(value, dict):
            try:
                return cls(**value)
            except TypeError as e:
                raise ConfigError(f"Invalid command configuration: {e}") from e
        raise ConfigError(f"Invalid command configuration: {value!r}")

    def build(self) -> Tuple[Union[str, List[str]], bool]:
        """Build command for execution.

        Returns:
            A tuple of (command, use_shell) where command is either a list
            or a string, and use_shell indicates whether shell=True should
            be used.
        """
        if self.shell:
            if isinstance(self.command, tuple):
                return ' '.join(shlex.quote(p) for p in self.command), True
            return self.command, True
        if isinstance(self.command, str):
            return shlex.split(self.command), False
        return list(self.command), False

    def build_env(self) -> Optional[Dict[str, str]]:
        """Return the child environment, or None to inherit ours."""
        if not self.env:
            return None
        env = dict(os.environ)
        env.update(self.env)
        return env

    def describe(self) -> str:
        """Human readable command line."""
        if isinstance(self.command, str):
            return self.command
        return ' '.join(self.command)


@dataclass(frozen=True)
class ReadinessConfig:
    """Readiness probe configuration."""
    kind: str = 'none'
    target: Any = None
    interval: float = DEFAULT_POLL_INTERVAL
    probe_timeout: float = 1.0

    KINDS = ('command', 'tcp', 'file', 'none')

    def __post_init__(self):
        """Validate readiness configuration."""
        if self.kind not in self.KINDS:
            raise ConfigError(f"Unknown readiness probe kind: {self.kind}")
        if self.kind != 'none' and not self.target:
            raise ConfigError(f"Readiness probe {self.kind} needs a target")
        object.__setattr__(
            self, 'interval', _positive('Readiness interval', self.interval)
        )
        object.__setattr__(
            self, 'probe_timeout',
            _positive('Probe timeout', self.probe_timeout)
        )
        if self.kind == 'command':
            target = CommandConfig.from_value(self.target)
        elif self.kind == 'tcp':
            target = parse_address(self.target)
        elif self.kind == 'file':
            target = str(self.target)
        else:
            target = None
        object.__setattr__(self, 'target', target)

    @classmethod
    def from_value(cls, value: Any) -> 'ReadinessConfig':
        """Create a readiness probe configuration.

        Args:
            value: None, or a mapping holding one of ``command``, ``tcp`` or
                ``file`` (or an explicit ``kind`` and ``target``), plus
                optional ``interval`` and ``probe_timeout``

        Returns:
            ReadinessConfig object
        """
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if not isinstance(value, dict):
            raise ConfigError(f"Invalid readiness configuration: {value!r}")
        options = dict(value)
        if 'kind' not in options:
            kinds = [k for k in ('command', 'tcp', 'file') if k in options]
            if len(kinds) > 1:
                raise ConfigError(
                    f"Readiness probe must have one kind, got {kinds}"
                )
            if kinds:
                options['kind'] = kinds[0]
                options['target'] = options.pop(kinds[0])
        try:
            return cls(**options)
        except TypeError as e:
            raise ConfigError(f"Invalid readiness configuration: {e}") from e


def parse_address(value: Any) -> Tuple[str, int]:
    """Parse ``host:port``, a bare port or a (host, port) pair."""
    if isinstance(value, (list, tuple)) and len(value) == 2:
        host, port = value
    elif isinstance(value, int):
        host, port = '127.0.0.1', value
    else:
        text = str(value)
        host, sep, port = text.rpartition(':')
        if not sep:
            host, port = '127.0.0.1', text
        host = host.strip('[]') or '127.0.0.1'
    try:
        port = int(port)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid TCP address: {value!r}") from e
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid TCP port: {port}")
    return str(host), port


@dataclass(frozen=True)
class ServiceSpec:
    """A dependent background service."""
    name: str
    start: CommandConfig
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    max_restarts: int = 0

    def __post_init__(self):
        """Validate service configuration."""
        if not self.name:
            raise ConfigError("Service name cannot be empty")
        object.__setattr__(self, 'start', CommandConfig.from_value(self.start))
        object.__setattr__(
            self, 'readiness', ReadinessConfig.from_value(self.readiness)
        )
        object.__setattr__(
            self, 'startup_timeout',
            _positive(f"Service {self.name} startup_timeout",
                      self.startup_timeout)
        )
        try:
            max_restarts = int(self.max_restarts)
        except (TypeError, ValueError) as e:
            raise ConfigError(
                f"Service {self.name} max_restarts must be an integer, "
                f"got {self.max_restarts!r}"
            ) from e
        if max_restarts < 0:
            raise ConfigError(
                f"Service {self.name} max_restarts must not be negative"
            )
        object.__setattr__(self, 'max_restarts', max_restarts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceSpec':
        """Create a service from its config file mapping."""
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid service configuration: {data!r}")
        options = dict(data)
        if 'startupTimeout' in options:
            options['startup_timeout'] = options.pop('startupTimeout')
        if 'maxRestarts' in options:
            options['max_restarts'] = options.pop('maxRestarts')
        try:
            return cls(**options)
        except TypeError as e:
            raise ConfigError(f"Invalid service configuration: {e}") from e


@dataclass
class ForegroundConfig:
    """The supervised foreground process."""
    command: CommandConfig = None
    timeout: Optional[float] = None

    def __post_init__(self):
        """Validate foreground configuration."""
        self.command = CommandConfig.from_value(self.command)
        if self.timeout is not None:
            self.timeout = _positive('Foreground timeout', self.timeout)

    @classmethod
    def from_value(cls, value: Any) -> 'ForegroundConfig':
        """Create from a command value or a mapping with ``command``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, dict) and 'command' in value:
            options = dict(value)
            command = {
                key: options.pop(key)
                for key in ('command', 'shell', 'env', 'cwd') if key in options
            }
            try:
                return cls(command=CommandConfig(**command), **options)
            except TypeError as e:
                raise ConfigError(
                    f"Invalid foreground configuration: {e}"
                ) from e
        return cls(command=value)


@dataclass
class SupervisorConfig:
    """Configuration for process supervision."""
    services: List[ServiceSpec]
    foreground: Optional[ForegroundConfig]
    policy: StartupPolicy
    fail_together: bool
    grace_period: float
    poll_interval: float

    def __init__(self, **kwargs):
        """Initialize configuration.

        Args:
            **kwargs: Configuration parameters including 'services',
                'foreground', 'policy', 'fail_together', 'grace_period'
                and 'poll_interval'

        Raises:
            ConfigError: If configuration is invalid
        """
        kwargs = _normalize_keys(kwargs)
        unknown = set(kwargs) - {
            'services', 'foreground', 'policy', 'fail_together',
            'grace_period', 'poll_interval'
        }
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}"
            )

        services = kwargs.get('services') or []
        if not isinstance(services, list):
            raise ConfigError("Services configuration must be a list")
        self.services = [
            s if isinstance(s, ServiceSpec) else ServiceSpec.from_dict(s)
            for s in services
        ]
        names = [s.name for s in self.services]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(
                f"Duplicate service names: {', '.join(duplicates)}"
            )

        foreground = kwargs.get('foreground')
        self.foreground = (
            ForegroundConfig.from_value(foreground)
            if foreground is not None else None
        )

        self.policy = StartupPolicy.parse(
            kwargs.get('policy', StartupPolicy.FAIL_FAST)
        )
        self.fail_together = parse_bool(kwargs.get('fail_together', False))
        self.grace_period = _positive(
            'Grace period', kwargs.get('grace_period', DEFAULT_GRACE_PERIOD)
        )
        self.poll_interval = _positive(
            'Poll interval', kwargs.get('poll_interval', DEFAULT_POLL_INTERVAL)
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> 'SupervisorConfig':
        """Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            SupervisorConfig object

        Raises:
            FileNotFoundError: If config file not found
            ConfigError: If config file is invalid
        """
        return cls(**load_yaml(config_path))

    @classmethod
    def load(
        cls,
        config_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None
    ) -> 'SupervisorConfig':
        """Load configuration from a file and the environment.

        Environment values override those read from the file. If no path
        is given, ``SUPERVISOR_CONFIG`` is used when set.

        Args:
            config_path: Optional path to a YAML configuration file
            environ: Environment mapping, defaults to os.environ

        Returns:
            SupervisorConfig object
        """
        environ = os.environ if environ is None else environ
        config_path = config_path or environ.get(ENV_PREFIX + 'CONFIG')
        data = load_yaml(config_path) if config_path else {}
        data.update(env_overrides(environ))
        return cls(**data)


def load_yaml(config_path: str) -> Dict[str, Any]:
    """Read a YAML mapping from a file."""
    if not os.path.isfile(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must hold a mapping")
    return data


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect configuration values from ``SUPERVISOR_*`` variables."""
    overrides = {}
    for key in ('policy', 'fail_together', 'grace_period', 'poll_interval'):
        value = environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            overrides[key] = value

    services = environ.get(ENV_PREFIX + 'SERVICES')
    if services:
        try:
            overrides['services'] = yaml.safe_load(services)
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Invalid {ENV_PREFIX}SERVICES value: {e}"
            ) from e

    foreground = environ.get(ENV_PREFIX + 'FOREGROUND')
    if foreground:
        overrides['foreground'] = foreground
    return overrides


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {
        'failTogether': 'fail_together',
        'gracePeriod': 'grace_period',
        'pollInterval': 'poll_interval',
    }
    return {aliases.get(k, k): v for k, v in data.items()}


@dataclass
class SupervisorOptions:
    """Combined options from command line, environment and config file."""
    config: SupervisorConfig
    log_level: str = 'INFO'
    metrics_port: Optional[int] = None

    def __post_init__(self):
        """Validate options."""
        if self.config.foreground is None:
            raise ConfigError('A foreground command must be provided')
        if self.metrics_port is not None and not 0 < self.metrics_port < 65536:
            raise ConfigError(f'Invalid metrics port: {self.metrics_port}')

    @classmethod
    def from_args_and_config(
        cls, args: 'argparse.Namespace', config: SupervisorConfig
    ) -> 'SupervisorOptions':
        """Create options from command line args and config.

        Args:
            args: Command line arguments
            config: Config from YAML file and environment

        Returns:
            Combined options
        """
        if args.policy:
            config.policy = StartupPolicy.parse(args.policy)
        if args.fail_together:
            config.fail_together = True
        if args.grace_period is not None:
            config.grace_period = _positive('Grace period', args.grace_period)
        if args.poll_interval is not None:
            config.poll_interval = _positive(
                'Poll interval', args.poll_interval
            )
        if args.foreground:
            config.foreground = ForegroundConfig(
                command=CommandConfig(command=list(args.foreground)),
                timeout=config.foreground.timeout
                if config.foreground else None
            )
        return cls(
            config=config,
            log_level=args.log_level,
            metrics_port=args.metrics_port
        )
