"""Prometheus-backed metrics hooks for the network monitor and snipe engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "snipewatch_"


@dataclass
class RunStats:
    network: str
    total: int
    succeeded: int
    failed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose monitor and execution stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_run: Optional[RunStats] = None
        self._check_counts: Dict[str, int] = {"online": 0, "offline": 0, "error": 0}

        if not self._enabled:
            self._health_checks_counter = None
            self._probe_latency_summary = None
            self._online_gauge = None
            self._consecutive_failures_gauge = None
            self._transitions_counter = None
            self._snipe_results_counter = None
            self._snipe_attempts_summary = None
            self._run_duration_summary = None
            self._lock_contention_counter = None
            return

        self._health_checks_counter = Counter(
            f"{_METRIC_PREFIX}health_checks_total",
            "Health checks by result",
            labelnames=("network", "result"),
        )
        self._probe_latency_summary = Summary(
            f"{_METRIC_PREFIX}probe_latency_seconds",
            "Round-trip latency of the health probe",
            labelnames=("network",),
        )
        self._online_gauge = Gauge(
            f"{_METRIC_PREFIX}network_online",
            "1 when the watched network is online",
            labelnames=("network",),
        )
        self._consecutive_failures_gauge = Gauge(
            f"{_METRIC_PREFIX}consecutive_failures",
            "Consecutive failed health checks",
            labelnames=("network",),
        )
        self._transitions_counter = Counter(
            f"{_METRIC_PREFIX}network_transitions_total",
            "Online/offline edges observed",
            labelnames=("network", "direction"),
        )
        self._snipe_results_counter = Counter(
            f"{_METRIC_PREFIX}snipe_results_total",
            "Snipe outcomes by result",
            labelnames=("result",),
        )
        self._snipe_attempts_summary = Summary(
            f"{_METRIC_PREFIX}snipe_attempts",
            "Attempts used per snipe",
        )
        self._run_duration_summary = Summary(
            f"{_METRIC_PREFIX}run_duration_seconds",
            "Wall time of a full execution run",
        )
        self._lock_contention_counter = Counter(
            f"{_METRIC_PREFIX}lock_contention_total",
            "Profile lease acquisitions refused",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning("Port %s in use, bound to port %s instead", self._port, port)
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc

        logger.error("Failed to start metrics exporter on ports %s: %s", ports_to_try, last_error)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_health_check(
        self,
        network: str,
        online: bool,
        latency_ms: Optional[int],
        consecutive_failures: int,
        *,
        error: bool = False,
    ) -> None:
        result = "error" if error else ("online" if online else "offline")
        self._check_counts[result] = self._check_counts.get(result, 0) + 1
        if not self._enabled:
            return
        self._health_checks_counter.labels(network=network, result=result).inc()
        if latency_ms is not None:
            self._probe_latency_summary.labels(network=network).observe(latency_ms / 1000.0)
        self._online_gauge.labels(network=network).set(1 if online else 0)
        self._consecutive_failures_gauge.labels(network=network).set(consecutive_failures)

    def record_transition(self, network: str, online: bool) -> None:
        if not self._enabled:
            return
        self._transitions_counter.labels(network=network, direction="online" if online else "offline").inc()

    def record_snipe_result(self, success: bool, attempts: int) -> None:
        if not self._enabled:
            return
        self._snipe_results_counter.labels(result="success" if success else "failed").inc()
        self._snipe_attempts_summary.observe(attempts)

    def observe_run(self, stats: RunStats) -> None:
        self._last_run = stats
        if not self._enabled:
            return
        self._run_duration_summary.observe(stats.duration_seconds)

    def record_lock_contention(self) -> None:
        if not self._enabled:
            return
        self._lock_contention_counter.inc()

    def last_run(self) -> Optional[RunStats]:
        return self._last_run

    def check_counts(self) -> Dict[str, int]:
        return dict(self._check_counts)
