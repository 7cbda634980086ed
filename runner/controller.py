"""
snipewatch Runner: Snipe Controller

Owns one profile lease and wires the pieces together:

    NetworkMonitor --(online edge)--> SnipeEngine.execute_profile
        --> ProfileStore.record_results --> metrics / audit / alerts

One run per online transition; a transition that arrives while a run is
still in flight is ignored.
"""

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.audit_log import AuditLogger
from core.exceptions import ConfigurationError, LockContention
from core.executor import BearerTokenCredentials, FlashnetExecutor, OperationExecutor
from core.models import Network, NetworkEvent, Profile, SnipeEvent, SnipeResult
from core.network_monitor import NetworkMonitor
from core.snipe_engine import SNIPE_EVENT, SnipeEngine
from infra.alerting import AlertService
from infra.flashnet_client import FlashnetClient, FlashnetProbe
from infra.metrics import MetricsRecorder, RunStats
from infra.profile_lock import StaleLockGuard
from infra.profile_store import ProfileStore
from tools.config_validator import AppConfig

logger = logging.getLogger(__name__)


class SnipeController:
    """Runs one profile: lease, monitoring, triggered execution, persistence."""

    def __init__(
        self,
        config: AppConfig,
        store: ProfileStore,
        monitor: NetworkMonitor,
        executor: OperationExecutor,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        heartbeat_interval_seconds: Optional[float] = None,
    ):
        self.config = config
        self.store = store
        self.monitor = monitor
        self._executor = executor
        self.metrics = metrics
        self.alerts = alerts or AlertService.disabled()
        self.audit = audit
        self._sleep = sleep
        self._clock = clock
        self.heartbeat_interval_seconds = (
            heartbeat_interval_seconds
            if heartbeat_interval_seconds is not None
            else store.guard.stale_timeout_seconds / 3.0
        )

        self.profile_name: Optional[str] = None
        self._lease_lost = False
        self.engine: Optional[SnipeEngine] = None

        self._trigger_event: Optional[str] = None
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._run_done: Optional[asyncio.Event] = None
        self._last_results: List[SnipeResult] = []
        self._last_error: Optional[BaseException] = None
        self._runs_completed = 0

    @classmethod
    def from_config(cls, config: AppConfig, env: Optional[Dict[str, str]] = None) -> "SnipeController":
        """Build the production wiring (FlashNet REST client, Prometheus, webhook alerts)."""
        env = os.environ if env is None else env

        client = FlashnetClient(
            mainnet_url=config.flashnet.mainnet_url,
            regtest_url=config.flashnet.regtest_url,
            timeout_seconds=config.flashnet.timeout_seconds,
        )
        token = env.get(config.flashnet.access_token_env)
        executor = FlashnetExecutor(
            client,
            BearerTokenCredentials({Network.MAINNET: token, Network.REGTEST: token}),
        )

        metrics = MetricsRecorder(
            enabled=config.monitoring.metrics_enabled,
            port=config.monitoring.metrics_port,
        )
        metrics.start()

        monitor = NetworkMonitor(
            FlashnetProbe(client, timeout_seconds=config.monitor.healthcheck_timeout_ms / 1000.0),
            network=config.default_network,
            poll_interval_ms=config.monitor.poll_interval_ms,
            healthcheck_timeout_ms=config.monitor.healthcheck_timeout_ms,
            max_failures=config.monitor.max_failures,
            metrics=metrics,
        )

        guard = StaleLockGuard(config.app.base_dir, config.locks.stale_timeout_seconds)
        store = ProfileStore(
            config.app.base_dir,
            lock_guard=guard,
            max_versions=config.history.max_versions,
        )

        return cls(
            config,
            store,
            monitor,
            executor,
            metrics=metrics,
            alerts=AlertService.from_config(config.monitoring.alerts_enabled, config.monitoring.alerts),
            audit=AuditLogger(config.app.audit_file),
        )

    # ------------------------------------------------------------------
    # Profile lease
    # ------------------------------------------------------------------

    def open_profile(self, name: str) -> Profile:
        """
        Take the profile lease and prepare the engine.

        Raises:
            LockContention: if another live process holds the profile
            ConfigurationError: if the profile does not exist or is unreadable
        """
        cleaned = self.store.guard.cleanup_stale()
        if cleaned:
            logger.info(f"Cleaned {cleaned} stale profile lock(s) on startup")

        if not self.store.acquire_lock(name):
            info = self.store.guard.get_lock_info(name)
            holder_id = info.holder_id if info else None
            if self.metrics is not None:
                self.metrics.record_lock_contention()
            self.alerts.notify_lock_contention(name, holder_id)
            raise LockContention(name, holder_id)

        try:
            profile = self.store.load_profile(name)
        except Exception:
            self.store.release_lock(name)
            raise

        self.profile_name = name
        self._lease_lost = False
        self.engine = SnipeEngine.for_profile(
            self._executor,
            profile,
            metrics=self.metrics,
            audit=self.audit,
            sleep=self._sleep,
            clock=self._clock,
        )
        self.engine.on(SNIPE_EVENT, self._on_snipe_event)
        logger.info(
            f"Opened profile '{name}' ({len(profile.active_snipes())}/{len(profile.snipes)} active snipes, "
            f"network={profile.settings.network.value})"
        )
        return profile

    def _require_profile(self) -> str:
        if not self.profile_name or self.engine is None:
            raise ConfigurationError("No profile is open")
        if self._lease_lost:
            info = self.store.guard.get_lock_info(self.profile_name)
            raise LockContention(self.profile_name, info.holder_id if info else None)
        return self.profile_name

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def start_monitoring(self) -> None:
        name = self._require_profile()
        profile = await asyncio.to_thread(self.store.load_profile, name)
        network = profile.settings.network

        self._run_done = asyncio.Event()
        self._trigger_event = "mainnet:online" if network == Network.MAINNET else "network:online"
        self.monitor.on(self._trigger_event, self._on_online)
        self.monitor.on("network:online", self._on_transition)
        self.monitor.on("network:offline", self._on_transition)
        self.monitor.on("network:degraded", self._on_degraded)

        if self.monitor.network != network:
            await self.monitor.switch_network(network)
        self.alerts.notify_monitoring(name, network.value, started=True)

        self._heartbeat_task = asyncio.ensure_future(self._heartbeat(name))
        await self.monitor.start(network)

    def stop_monitoring(self) -> None:
        if self._trigger_event is None:
            return

        self.monitor.stop()
        self.monitor.off(self._trigger_event, self._on_online)
        self.monitor.off("network:online", self._on_transition)
        self.monitor.off("network:offline", self._on_transition)
        self.monitor.off("network:degraded", self._on_degraded)
        self._trigger_event = None

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if self.profile_name:
            self.alerts.notify_monitoring(self.profile_name, self.monitor.network.value, started=False)

    def _on_online(self, event: NetworkEvent) -> None:
        if self._lease_lost:
            logger.warning("Online transition after losing the profile lease, ignoring")
            return
        if self._run_task is not None and not self._run_task.done():
            logger.info("Online transition while a run is in progress, ignoring")
            return
        self.alerts.notify_network_online(event)
        self._run_task = asyncio.ensure_future(self._triggered_run())

    def _on_transition(self, event: NetworkEvent) -> None:
        if self.audit is not None and self.profile_name:
            self.audit.log_transition(self.profile_name, event)

    def _on_degraded(self, event: NetworkEvent) -> None:
        logger.warning(
            f"{event.network.value} degraded: {event.consecutive_failures} consecutive failed checks"
        )

    def _on_snipe_event(self, event: SnipeEvent) -> None:
        if event.phase == "retrying":
            logger.info(
                f"Snipe {event.snipe_id} retrying in {event.payload.get('next_attempt_in_ms')}ms "
                f"(attempt {event.payload.get('attempt')}): {event.payload.get('error')}"
            )
        else:
            logger.debug(f"Snipe {event.snipe_id}: {event.phase}")

    async def _triggered_run(self) -> None:
        try:
            self._last_results = await self._execute("online_transition")
            self._last_error = None
        except Exception as e:
            logger.exception(f"Triggered run failed: {e}")
            self._last_error = e
        finally:
            if self._run_done is not None:
                self._run_done.set()

    async def _heartbeat(self, name: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_seconds)
            try:
                refreshed = await asyncio.to_thread(self.store.refresh_lock, name)
            except Exception as e:
                logger.exception(f"Lease refresh for '{name}' failed, will retry: {e}")
                continue
            if not refreshed:
                self._on_lease_lost(name)
                return

    def _on_lease_lost(self, name: str) -> None:
        info = self.store.guard.get_lock_info(name)
        holder_id = info.holder_id if info else None
        logger.error(f"Lost lease on profile '{name}' (now held by {holder_id or 'nobody'}), stopping monitoring")
        self._lease_lost = True
        # Called from the heartbeat task itself; stop_monitoring must not cancel it
        self._heartbeat_task = None
        self.stop_monitoring()
        if self.metrics is not None:
            self.metrics.record_lock_contention()
        self.alerts.notify_lease_lost(name, holder_id)

        # Wake run_until_complete callers; no further run will be triggered
        if self._run_done is not None and (self._run_task is None or self._run_task.done()):
            self._last_error = LockContention(name, holder_id)
            self._run_done.set()

    async def run_until_complete(self, timeout: Optional[float] = None) -> List[SnipeResult]:
        """
        Wait until a triggered run has been executed and persisted.

        Raises:
            asyncio.TimeoutError: if no run completes within ``timeout`` seconds
        """
        if self._run_done is None:
            raise ConfigurationError("Monitoring has not been started")
        if timeout is None:
            await self._run_done.wait()
        else:
            await asyncio.wait_for(self._run_done.wait(), timeout)
        self._run_done.clear()
        if self._last_error is not None:
            raise self._last_error
        return list(self._last_results)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_now(self) -> List[SnipeResult]:
        """Run the profile's active snipes immediately, regardless of network state."""
        return await self._execute("manual")

    async def _execute(self, trigger: str) -> List[SnipeResult]:
        name = self._require_profile()
        profile = await asyncio.to_thread(self.store.load_profile, name)
        network = profile.settings.network

        started = self._clock()
        results = await self.engine.execute_profile(profile)
        duration = self._clock() - started

        await asyncio.to_thread(self.store.record_results, name, results, network, trigger)
        self._runs_completed += 1

        succeeded = sum(1 for r in results if r.success)
        if self.metrics is not None:
            self.metrics.observe_run(RunStats(
                network=network.value,
                total=len(results),
                succeeded=succeeded,
                failed=len(results) - succeeded,
                duration_seconds=duration,
            ))
        if self.audit is not None:
            await asyncio.to_thread(self.audit.log_run, name, network.value, trigger, results, duration)
        if profile.settings.enable_alerts:
            for result in results:
                self.alerts.notify_snipe_result(name, network.value, result)
            if results:
                self.alerts.notify_run_summary(name, network.value, results, duration)

        logger.info(f"Run complete for '{name}': {succeeded}/{len(results)} succeeded in {duration:.1f}s")
        return results

    async def test_snipe(self, snipe_id: str) -> SnipeResult:
        """Discover and simulate one snipe on REGTEST without submitting."""
        name = self._require_profile()
        profile = await asyncio.to_thread(self.store.load_profile, name)
        snipe = profile.find_snipe(snipe_id)
        if snipe is None:
            raise ConfigurationError(f"Snipe '{snipe_id}' not found in profile '{name}'")

        started = self._clock()
        result = await self.engine.test_snipe(snipe)
        duration = self._clock() - started

        await asyncio.to_thread(self.store.record_results, name, [result], Network.REGTEST, "test")
        if self.audit is not None:
            await asyncio.to_thread(self.audit.log_run, name, Network.REGTEST.value, "test", [result], duration)
        if profile.settings.enable_alerts:
            self.alerts.notify_snipe_result(name, Network.REGTEST.value, result, test=True)
        return result

    def status(self) -> Dict[str, Any]:
        info = self.store.guard.get_lock_info(self.profile_name) if self.profile_name else None
        return {
            "profile": self.profile_name,
            "lock_holder": info.holder_id if info else None,
            "monitoring": self.monitor.is_monitoring,
            "network": self.monitor.get_status().to_dict(),
            "monitor_stats": self.monitor.get_stats(),
            "executing": bool(self.engine and self.engine.is_executing()),
            "runs_completed": self._runs_completed,
            "health_checks": self.metrics.check_counts() if self.metrics is not None else {},
            "lease_lost": self._lease_lost,
        }

    async def close(self) -> None:
        """Stop monitoring, let an in-flight run persist, release the lease."""
        self.stop_monitoring()

        if self._run_task is not None and not self._run_task.done():
            logger.info("Waiting for in-flight run to finish...")
            await self._run_task
        self._run_task = None

        if self.engine is not None:
            self.engine.stop()
        self.monitor.destroy()

        if self.profile_name and self._lease_lost:
            logger.warning(f"Not releasing '{self.profile_name}': the lease belongs to another holder")
        elif self.profile_name:
            await asyncio.to_thread(self.store.release_lock, self.profile_name)
            logger.info(f"Released profile '{self.profile_name}'")
        self.profile_name = None
        self.engine = None
