"""
Tests for NetworkMonitor.

Covers the debounced online/offline state machine:
- consecutive_failures counts up on failure and resets to 0 on success
- transitions fire only on edges, after the matching status update
- advisory degraded/slow events
- start/stop/switch_network/wait_for_online contracts
"""

import asyncio
from unittest.mock import Mock

import pytest

from core.exceptions import AlreadyMonitoring, MonitorTimeout, TransientRemoteError
from core.models import Network
from core.network_monitor import NetworkMonitor, ProbeResponse
from tests.helpers.snipe_stubs import HANG, FakeClock, FakeSleep, ScriptedProbe


def _record(monitor, names):
    seen = []
    for name in names:
        monitor.on(name, lambda event, name=name: seen.append((name, event)))
    return seen


async def _until(predicate, limit=2000):
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestPollingScenario:
    """Probe fails twice then succeeds, observed through the poll loop."""

    def test_fail_fail_succeed_produces_single_transition(self):
        async def scenario():
            sleep = FakeSleep()
            probe = ScriptedProbe([False, False, True])
            monitor = NetworkMonitor(probe, network=Network.REGTEST, poll_interval_ms=2000, sleep=sleep)
            seen = _record(monitor, ["status:update", "network:online", "network:offline"])

            await monitor.start()
            await _until(lambda: len([s for s in seen if s[0] == "status:update"]) >= 3)
            monitor.stop()
            return seen, sleep

        seen, sleep = asyncio.run(scenario())

        updates = [event for name, event in seen if name == "status:update"][:3]
        assert [u.online for u in updates] == [False, False, True]
        assert [u.consecutive_failures for u in updates] == [1, 2, 0]

        # Exactly one online edge, emitted right after the third status update
        names = [name for name, _ in seen]
        assert names.count("network:online") == 1
        assert names.count("network:offline") == 0
        assert names.index("network:online") == 3
        assert names[2] == "status:update"

        # Self-rescheduling at the configured interval
        assert sleep.delays
        assert all(d == 2.0 for d in sleep.delays)

    def test_stats_after_scenario(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False, False, True]), poll_interval_ms=2000)
            for _ in range(3):
                await monitor.check_now()
            return monitor.get_stats()

        stats = asyncio.run(scenario())
        assert stats["total_checks"] == 3
        assert stats["successful_checks"] == 1
        assert stats["success_rate"] == pytest.approx(1 / 3)
        assert stats["uptime_seconds"] == 0.0


class TestTransitions:
    def test_transitions_only_on_edges(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([True, True, False, False, True, True]))
            seen = _record(monitor, ["network:online", "network:offline"])
            for _ in range(6):
                await monitor.check_now()
            return seen

        seen = asyncio.run(scenario())
        assert [name for name, _ in seen] == ["network:online", "network:offline", "network:online"]
        for _, event in seen:
            assert event.is_transition

    def test_failures_reset_exactly_on_success(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False, False, False, True, False]))
            counts = []
            for _ in range(5):
                counts.append((await monitor.check_now()).consecutive_failures)
            return counts

        assert asyncio.run(scenario()) == [1, 2, 3, 0, 1]

    def test_mainnet_events_only_on_mainnet(self):
        async def scenario(network):
            monitor = NetworkMonitor(ScriptedProbe([True, False]), network=network)
            seen = _record(monitor, ["mainnet:online", "mainnet:offline", "network:online"])
            await monitor.check_now()
            await monitor.check_now()
            return [name for name, _ in seen]

        assert asyncio.run(scenario(Network.MAINNET)) == ["network:online", "mainnet:online", "mainnet:offline"]
        assert asyncio.run(scenario(Network.REGTEST)) == ["network:online"]

    def test_probe_exception_counts_as_offline(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([TransientRemoteError("connection refused")]))
            return await monitor.check_now()

        status = asyncio.run(scenario())
        assert status.online is False
        assert status.consecutive_failures == 1

    def test_probe_timeout_counts_as_offline(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([HANG]), healthcheck_timeout_ms=50)
            return await monitor.check_now()

        status = asyncio.run(scenario())
        assert status.online is False
        assert status.consecutive_failures == 1

    def test_listener_failure_does_not_break_check(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([True]))
            calls = []

            def broken(_event):
                raise RuntimeError("listener bug")

            monitor.on("status:update", broken)
            monitor.on("status:update", calls.append)
            status = await monitor.check_now()
            return status, calls

        status, calls = asyncio.run(scenario())
        assert status.online is True
        assert len(calls) == 1


class TestAdvisoryEvents:
    def test_degraded_after_max_failures(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False]), max_failures=3)
            seen = _record(monitor, ["network:degraded"])
            for _ in range(4):
                await monitor.check_now()
            return seen

        seen = asyncio.run(scenario())
        assert [event.consecutive_failures for _, event in seen] == [3, 4]

    def test_slow_response(self):
        async def scenario():
            clock = FakeClock()
            monitor = NetworkMonitor(ScriptedProbe([(True, 12000), (True, 100)], clock=clock), clock=clock,
                                     healthcheck_timeout_ms=60000)
            seen = _record(monitor, ["network:slow"])
            first = await monitor.check_now()
            await monitor.check_now()
            return first, seen

        first, seen = asyncio.run(scenario())
        assert first.latency_ms == 12000
        assert len(seen) == 1


class TestLifecycle:
    def test_start_twice_raises(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([True]), sleep=FakeSleep(real_delay=0.001))
            await monitor.start()
            try:
                with pytest.raises(AlreadyMonitoring):
                    await monitor.start()
            finally:
                monitor.stop()

        asyncio.run(scenario())

    def test_stop_is_idempotent_and_halts_polling(self):
        async def scenario():
            probe = ScriptedProbe([False])
            monitor = NetworkMonitor(probe, sleep=FakeSleep())
            seen = _record(monitor, ["monitoring:stopped"])

            monitor.stop()  # not running: no-op
            await monitor.start()
            await _until(lambda: len(probe.calls) >= 3)
            monitor.stop()
            monitor.stop()

            calls_at_stop = len(probe.calls)
            for _ in range(50):
                await asyncio.sleep(0)
            return seen, calls_at_stop, len(probe.calls), monitor.is_monitoring

        seen, at_stop, after, monitoring = asyncio.run(scenario())
        assert len(seen) == 1
        assert after == at_stop
        assert monitoring is False

    def test_metrics_failure_does_not_stop_polling(self):
        metrics = Mock()
        metrics.record_health_check.side_effect = RuntimeError("registry broken")

        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False, False, True]), sleep=FakeSleep(), metrics=metrics)
            seen = _record(monitor, ["network:online"])
            await monitor.start()
            await _until(lambda: seen)
            monitoring = monitor.is_monitoring
            monitor.stop()
            return monitoring, monitor.get_status()

        monitoring, status = asyncio.run(scenario())
        assert monitoring is True
        assert status.online is True
        assert metrics.record_health_check.call_count >= 3

    def test_loop_survives_unexpected_check_error(self):
        async def scenario():
            probe = ScriptedProbe([False])
            monitor = NetworkMonitor(probe, sleep=FakeSleep())
            original = monitor._perform_check
            calls = []

            async def flaky():
                calls.append(1)
                if len(calls) == 2:
                    raise RuntimeError("listener bookkeeping bug")
                return await original()

            monitor._perform_check = flaky
            await monitor.start()
            await _until(lambda: len(calls) >= 4)
            monitoring = monitor.is_monitoring
            monitor.stop()
            return monitoring, len(probe.calls)

        monitoring, probe_calls = asyncio.run(scenario())
        assert monitoring is True
        assert probe_calls >= 3

    def test_in_flight_check_is_applied_after_stop(self):
        class GatedProbe:
            def __init__(self):
                self.gate = asyncio.Event()
                self.calls = 0

            async def ping(self, network):
                self.calls += 1
                if self.calls > 1:
                    await self.gate.wait()
                    return ProbeResponse(healthy=True, timestamp=None)
                return ProbeResponse(healthy=False, timestamp=None)

        async def scenario():
            probe = GatedProbe()
            monitor = NetworkMonitor(probe, sleep=FakeSleep(), healthcheck_timeout_ms=60000)
            await monitor.start()
            await _until(lambda: probe.calls == 2)

            monitor.stop()
            probe.gate.set()
            for _ in range(50):
                await asyncio.sleep(0)
            return monitor.get_status(), probe.calls

        status, calls = asyncio.run(scenario())
        assert status.online is True
        assert calls == 2

    def test_switch_network_resets_failures(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False]))
            seen = _record(monitor, ["network:switched"])
            await monitor.check_now()
            await monitor.check_now()
            before = monitor.get_status()
            await monitor.switch_network(Network.MAINNET)
            return before, monitor.get_status(), seen, monitor.is_monitoring

        before, after, seen, monitoring = asyncio.run(scenario())
        assert before.consecutive_failures == 2
        assert after.consecutive_failures == 0
        assert after.network == Network.MAINNET
        assert after.online is False
        assert len(seen) == 1
        assert monitoring is False

    def test_switch_network_restarts_running_monitor(self):
        async def scenario():
            probe = ScriptedProbe([True])
            monitor = NetworkMonitor(probe, sleep=FakeSleep(real_delay=0.001))
            await monitor.start(Network.REGTEST)
            await monitor.switch_network(Network.MAINNET)
            running = monitor.is_monitoring
            monitor.stop()
            return running, probe.calls

        running, calls = asyncio.run(scenario())
        assert running is True
        assert Network.MAINNET in calls

    def test_poll_interval_minimum(self):
        with pytest.raises(ValueError):
            NetworkMonitor(ScriptedProbe([True]), poll_interval_ms=999)

        monitor = NetworkMonitor(ScriptedProbe([True]), poll_interval_ms=1000)
        with pytest.raises(ValueError):
            monitor.set_poll_interval(500)
        monitor.set_poll_interval(5000)
        assert monitor.poll_interval_ms == 5000


class TestWaitForOnline:
    def test_times_out(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False]))
            with pytest.raises(MonitorTimeout):
                await monitor.wait_for_online(timeout=0.05)
            return monitor.listener_count("network:online")

        assert asyncio.run(scenario()) == 0

    def test_resolves_on_next_transition(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([False, True]))
            await monitor.check_now()
            waiter = asyncio.ensure_future(monitor.wait_for_online(timeout=5))
            await asyncio.sleep(0)
            assert not waiter.done()
            await monitor.check_now()
            return await waiter

        status = asyncio.run(scenario())
        assert status.online is True

    def test_returns_immediately_when_online(self):
        async def scenario():
            monitor = NetworkMonitor(ScriptedProbe([True]))
            await monitor.check_now()
            return await monitor.wait_for_online(timeout=0.01)

        assert asyncio.run(scenario()).online is True
