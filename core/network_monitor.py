"""
snipewatch Core: Network Monitor

Polls the AMM health endpoint on a fixed cadence and turns individual
probe results into a debounced online/offline state machine.

Events (see core.events.EventEmitter):
- status:update          every check, NetworkEvent
- network:online/offline edge only, after the status:update for the same check
- mainnet:online/offline same edges, MAINNET only (the snipe trigger)
- network:degraded       consecutive_failures >= max_failures while offline
- network:slow           probe latency above SLOW_RESPONSE_MS
- monitoring:started/stopped, network:switched
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from core.events import EventEmitter
from core.exceptions import AlreadyMonitoring, MonitorTimeout
from core.models import HealthStatus, Network, NetworkEvent, utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 2000
MIN_POLL_INTERVAL_MS = 1000
DEFAULT_HEALTHCHECK_TIMEOUT_MS = 5000
DEFAULT_MAX_FAILURES = 3
SLOW_RESPONSE_MS = 10000


@dataclass(frozen=True)
class ProbeResponse:
    healthy: bool
    timestamp: datetime


class HealthProbe(ABC):
    """Single idempotent health call against one network."""

    @abstractmethod
    async def ping(self, network: Network) -> ProbeResponse:
        raise NotImplementedError


class NetworkMonitor(EventEmitter):
    """
    Debounced network health monitor.

    Scheduling is self-rescheduling (sleep, then check) so a slow probe
    delays the next check instead of overlapping it. A failed probe never
    raises out of start()/check_now(); it only marks the status offline.
    """

    def __init__(
        self,
        probe: HealthProbe,
        network: Network = Network.REGTEST,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        healthcheck_timeout_ms: int = DEFAULT_HEALTHCHECK_TIMEOUT_MS,
        max_failures: int = DEFAULT_MAX_FAILURES,
        metrics: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._probe = probe
        self.poll_interval_ms = self._validate_interval(poll_interval_ms)
        self.healthcheck_timeout_ms = int(healthcheck_timeout_ms)
        self.max_failures = int(max_failures)
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock

        self._status = HealthStatus(
            online=False,
            network=Network.parse(network),
            last_check_at=utcnow(),
            consecutive_failures=0,
        )
        self._polling = False
        self._generation = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._pending_sleep: Optional[asyncio.Future] = None

        self._started_at: Optional[float] = None
        self._total_checks = 0
        self._successful_checks = 0
        self._latency_total_ms = 0

    @staticmethod
    def _validate_interval(interval_ms: int) -> int:
        interval_ms = int(interval_ms)
        if interval_ms < MIN_POLL_INTERVAL_MS:
            raise ValueError(f"Poll interval must be at least {MIN_POLL_INTERVAL_MS}ms")
        return interval_ms

    @property
    def is_monitoring(self) -> bool:
        return self._polling

    @property
    def network(self) -> Network:
        return self._status.network

    async def start(self, network: Optional[Network] = None) -> HealthStatus:
        """
        Begin polling. Performs one check immediately, then schedules the rest.

        Raises:
            AlreadyMonitoring: if polling is already active
        """
        if self._polling:
            raise AlreadyMonitoring(f"Already monitoring {self._status.network.value}")

        if network is not None:
            self._status = replace(self._status, network=Network.parse(network))
        self._status = replace(self._status, consecutive_failures=0)
        self._polling = True
        self._generation += 1
        generation = self._generation
        self._started_at = self._clock()

        logger.info(
            "Starting %s network monitoring (%dms intervals)",
            self._status.network.value,
            self.poll_interval_ms,
        )
        self.emit("monitoring:started", {"network": self._status.network, "timestamp": utcnow()})

        status = await self._perform_check()

        if self._is_current(generation):
            self._poll_task = asyncio.ensure_future(self._poll_loop(generation))
        return status

    def stop(self) -> None:
        """Stop scheduling checks. An in-flight check still completes."""
        if not self._polling:
            return

        self._polling = False
        self._generation += 1
        self._poll_task = None
        if self._pending_sleep is not None and not self._pending_sleep.done():
            self._pending_sleep.cancel()
        self._pending_sleep = None

        logger.info("Stopped network monitoring")
        self.emit("monitoring:stopped", {"network": self._status.network, "timestamp": utcnow()})

    def destroy(self) -> None:
        self.stop()
        self.remove_all_listeners()

    def get_status(self) -> HealthStatus:
        return replace(self._status)

    async def check_now(self) -> HealthStatus:
        """Run one check outside the schedule."""
        return await self._perform_check()

    async def switch_network(self, network: Network) -> None:
        """
        Point the monitor at another network.

        The online flag is reset along with the failure counter: the old
        network's state says nothing about the new one, and the first healthy
        check on the new network must produce an online transition.
        """
        network = Network.parse(network)
        was_monitoring = self._polling
        if was_monitoring:
            self.stop()

        self._status = replace(self._status, network=network, online=False, consecutive_failures=0)
        logger.info("Switched to %s network", network.value)
        self.emit("network:switched", {"network": network, "timestamp": utcnow()})

        if was_monitoring:
            await self.start(network)

    def set_poll_interval(self, interval_ms: int) -> None:
        """Takes effect from the next scheduled sleep."""
        self.poll_interval_ms = self._validate_interval(interval_ms)
        logger.info("Updated poll interval to %dms", self.poll_interval_ms)

    async def wait_for_online(self, timeout: Optional[float] = None) -> HealthStatus:
        """
        Wait for the next online transition.

        Args:
            timeout: seconds to wait; None waits forever

        Raises:
            MonitorTimeout: when the deadline elapses first
        """
        if self._status.online:
            return self.get_status()

        waiter = asyncio.get_running_loop().create_future()

        def _on_online(event: NetworkEvent) -> None:
            if not waiter.done():
                waiter.set_result(event)

        self.on("network:online", _on_online)
        try:
            if timeout is None:
                await waiter
            else:
                await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise MonitorTimeout(timeout)
        finally:
            self.off("network:online", _on_online)
        return self.get_status()

    def get_stats(self) -> Dict[str, Any]:
        uptime = (self._clock() - self._started_at) if (self._polling and self._started_at is not None) else 0.0
        success_rate = (self._successful_checks / self._total_checks) if self._total_checks else 0.0
        average_latency = (self._latency_total_ms / self._total_checks) if self._total_checks else 0.0
        return {
            "uptime_seconds": uptime,
            "total_checks": self._total_checks,
            "successful_checks": self._successful_checks,
            "success_rate": success_rate,
            "average_latency_ms": average_latency,
        }

    def _is_current(self, generation: int) -> bool:
        return self._polling and self._generation == generation

    async def _poll_loop(self, generation: int) -> None:
        while self._is_current(generation):
            sleeper = asyncio.ensure_future(self._sleep(self.poll_interval_ms / 1000.0))
            self._pending_sleep = sleeper
            try:
                await sleeper
            except asyncio.CancelledError:
                if self._is_current(generation):
                    raise
                return
            finally:
                if self._pending_sleep is sleeper:
                    self._pending_sleep = None

            if not self._is_current(generation):
                return
            try:
                await self._perform_check()
            except Exception as exc:
                logger.exception("Health check loop error, continuing: %s", exc)

    async def _perform_check(self) -> HealthStatus:
        network = self._status.network
        previous_online = self._status.online
        check_ts = utcnow()
        started = self._clock()
        error: Optional[str] = None

        try:
            response = await asyncio.wait_for(
                self._probe.ping(network),
                timeout=self.healthcheck_timeout_ms / 1000.0,
            )
            online = bool(response.healthy)
        except asyncio.TimeoutError:
            online = False
            error = "Health check timeout"
        except Exception as exc:
            online = False
            error = str(exc) or type(exc).__name__

        latency_ms = int(round((self._clock() - started) * 1000))

        if network != self._status.network:
            logger.debug("Discarding %s check result after network switch", network.value)
            return self.get_status()

        failures = 0 if online else self._status.consecutive_failures + 1
        self._status = HealthStatus(
            online=online,
            network=network,
            last_check_at=check_ts,
            latency_ms=latency_ms,
            consecutive_failures=failures,
        )

        self._total_checks += 1
        self._latency_total_ms += latency_ms
        if online:
            self._successful_checks += 1

        if error:
            logger.debug("Health check failed: %s (%dms)", error, latency_ms)
        else:
            logger.debug("Health check: %s (%dms)", "ONLINE" if online else "OFFLINE", latency_ms)

        if self._metrics is not None:
            try:
                self._metrics.record_health_check(
                    network.value, online, latency_ms, failures, error=error is not None
                )
            except Exception as exc:
                logger.error("Failed to record health check metrics: %s", exc)

        self._emit_status_events(previous_online)
        return self.get_status()

    def _emit_status_events(self, previous_online: bool) -> None:
        status = self._status
        event = NetworkEvent(
            online=status.online,
            previous_online=previous_online,
            network=status.network,
            timestamp=status.last_check_at,
            latency_ms=status.latency_ms,
            consecutive_failures=status.consecutive_failures,
        )

        self.emit("status:update", event)

        if event.is_transition:
            if self._metrics is not None:
                self._metrics.record_transition(status.network.value, status.online)
            if status.online:
                logger.info("%s NETWORK ONLINE (%sms)", status.network.value, status.latency_ms)
                self.emit("network:online", event)
                if status.network == Network.MAINNET:
                    self.emit("mainnet:online", event)
            else:
                logger.warning("%s network offline", status.network.value)
                self.emit("network:offline", event)
                if status.network == Network.MAINNET:
                    self.emit("mainnet:offline", event)

        if status.consecutive_failures >= self.max_failures and not status.online:
            self.emit("network:degraded", event)

        if status.latency_ms is not None and status.latency_ms > SLOW_RESPONSE_MS:
            self.emit("network:slow", event)
