"""Readiness probes for dependent services."""

from abc import ABC, abstractmethod
import logging
import os
import socket
import subprocess
from typing import Tuple

from procsupervisor.config import CommandConfig, ReadinessConfig

logger = logging.getLogger(__name__)


class ReadinessProbe(ABC):
    """Interface for readiness checks."""

    @abstractmethod
    def check(self) -> bool:
        """Run the check once.

        Returns:
            True if the service reports ready, False otherwise
        """
        return False

    def describe(self) -> str:
        """Short description used in log messages."""
        return type(self).__name__


class NoopProbe(ReadinessProbe):
    """Probe that reports ready as soon as it is asked."""

    def check(self) -> bool:
        return True

    def describe(self) -> str:
        return 'process running'


class CommandProbe(ReadinessProbe):
    """Probe that runs a command and treats exit status 0 as ready."""

    def __init__(self, command: CommandConfig, timeout: float = 1.0) -> None:
        """Initialize probe.

        Args:
            command: Command to run on each check
            timeout: Seconds before a single check is abandoned
        """
        self.command = command
        self.timeout = timeout

    def check(self) -> bool:
        cmd, use_shell = self.command.build()
        try:
            completed = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                shell=use_shell,
                env=self.command.build_env(),
                cwd=self.command.cwd,
                timeout=self.timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            logger.debug(
                "Probe command timed out after %.1fs: %s", self.timeout,
                self.command.describe()
            )
            return False
        except OSError as e:
            logger.debug(
                "Probe command %s could not run: %s", self.command.describe(),
                e
            )
            return False
        return completed.returncode == 0

    def describe(self) -> str:
        return f"command {self.command.describe()!r}"


class TcpProbe(ReadinessProbe):
    """Probe that succeeds once a TCP port accepts connections."""

    def __init__(self, address: Tuple[str, int], timeout: float = 1.0) -> None:
        self.address = address
        self.timeout = timeout

    def check(self) -> bool:
        try:
            with socket.create_connection(self.address, timeout=self.timeout):
                return True
        except OSError:
            return False

    def describe(self) -> str:
        return f"tcp {self.address[0]}:{self.address[1]}"


class FileProbe(ReadinessProbe):
    """Probe that succeeds once a file exists."""

    def __init__(self, path: str) -> None:
        self.path = path

    def check(self) -> bool:
        return os.path.exists(self.path)

    def describe(self) -> str:
        return f"file {self.path}"


def build_probe(config: ReadinessConfig) -> ReadinessProbe:
    """Create the probe described by a readiness configuration.

    Args:
        config: Readiness configuration

    Returns:
        Readiness probe
    """
    if config.kind == 'command':
        return CommandProbe(config.target, timeout=config.probe_timeout)
    if config.kind == 'tcp':
        return TcpProbe(config.target, timeout=config.probe_timeout)
    if config.kind == 'file':
        return FileProbe(config.target)
    return NoopProbe()
