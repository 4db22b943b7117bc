"""Prometheus metrics for supervised processes."""

import logging
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

# Numeric values exported for ServiceState
STATE_VALUES = {
    'pending': 0,
    'starting': 1,
    'ready': 2,
    'failed': 3,
    'stopped': 4,
}


class SupervisorMetrics:
    """Metrics for dependent services and the foreground process."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize metrics.

        Args:
            registry: Registry to publish to. A private one is created by
                default so several supervisors can coexist in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.service_state = Gauge(
            'supervisor_service_state',
            'Service state (0 pending, 1 starting, 2 ready, 3 failed, '
            '4 stopped)', ['service'],
            registry=self.registry
        )
        self.service_restarts = Counter(
            'supervisor_service_restarts', 'Service restarts', ['service'],
            registry=self.registry
        )
        self.service_crashes = Counter(
            'supervisor_service_crashes', 'Ready services that exited',
            ['service'],
            registry=self.registry
        )
        self.service_cpu = Gauge(
            'supervisor_service_cpu_percent', 'Service CPU usage in percent',
            ['service'],
            registry=self.registry
        )
        self.service_memory = Gauge(
            'supervisor_service_memory_bytes', 'Service memory usage in bytes',
            ['service'],
            registry=self.registry
        )
        self.foreground_exit_code = Gauge(
            'supervisor_foreground_exit_code', 'Foreground exit code',
            registry=self.registry
        )

    def serve(self, port: int) -> None:
        """Expose the metrics over HTTP."""
        start_http_server(port, registry=self.registry)
        logger.info("Started metrics server on port %d", port)

    def record_state(self, service: str, state) -> None:
        self.service_state.labels(service=service).set(STATE_VALUES[state.value])

    def record_restart(self, service: str) -> None:
        self.service_restarts.labels(service=service).inc()

    def record_crash(self, service: str) -> None:
        self.service_crashes.labels(service=service).inc()

    def record_foreground_exit(self, exit_code: int) -> None:
        self.foreground_exit_code.set(exit_code)

    def collect_usage(self, services: Iterable) -> None:
        """Sample resource usage of running services."""
        for service in services:
            usage = service.resource_usage()
            if usage is None:
                continue
            cpu_percent, rss = usage
            self.service_cpu.labels(service=service.name).set(cpu_percent)
            self.service_memory.labels(service=service.name).set(rss)

    def value(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Read a sample value back from the registry."""
        return self.registry.get_sample_value(name, labels or {})
