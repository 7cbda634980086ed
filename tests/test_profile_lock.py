"""
Tests for StaleLockGuard.

Liveness is controlled by patching os.kill inside infra.profile_lock:
returning None means "process exists", raising means it cannot be confirmed.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from infra.profile_lock import LockHolder, StaleLockGuard

HOST = "test-host"
P1 = LockHolder(pid=1001, hostname=HOST)
P2 = LockHolder(pid=1002, hostname=HOST)


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def alive():
    with patch("infra.profile_lock.os.kill", return_value=None) as mock_kill:
        yield mock_kill


@pytest.fixture
def clock():
    return Clock()


def _guard(tmp_path, holder, clock, timeout=300):
    return StaleLockGuard(str(tmp_path / "profiles"), stale_timeout_seconds=timeout, holder=holder, clock=clock)


class TestExclusivity:
    def test_second_holder_is_refused_while_first_is_fresh(self, tmp_path, clock, alive):
        g1 = _guard(tmp_path, P1, clock)
        g2 = _guard(tmp_path, P2, clock)

        assert g1.acquire("profile1") is True
        assert g2.acquire("profile1") is False
        assert g1.holds("profile1")
        assert not g2.holds("profile1")

        # Refusal does not touch the record
        info = g2.get_lock_info("profile1")
        assert info.holder_id == P1.holder_id

    def test_concurrent_acquire_never_both_succeed(self, tmp_path, alive):
        g1 = _guard(tmp_path, P1, Clock())
        g2 = _guard(tmp_path, P2, Clock())

        for i in range(20):
            resource = f"r{i}"
            barrier = threading.Barrier(2)

            def contend(guard):
                barrier.wait()
                return guard.acquire(resource)

            with ThreadPoolExecutor(max_workers=2) as pool:
                outcomes = list(pool.map(contend, [g1, g2]))
            assert sum(outcomes) == 1, f"{resource}: {outcomes}"

    def test_reacquire_by_same_holder_is_noop(self, tmp_path, clock, alive):
        g1 = _guard(tmp_path, P1, clock)
        assert g1.acquire("profile1")
        first = g1.get_lock_info("profile1")

        clock.now += 10
        assert g1.acquire("profile1")
        assert g1.get_lock_info("profile1") == first

    def test_record_format(self, tmp_path, clock, alive):
        g1 = _guard(tmp_path, P1, clock)
        g1.acquire("profile1")

        data = json.loads(g1.lock_path("profile1").read_text())
        assert data == {
            "resource_name": "profile1",
            "holder_id": "1001@test-host",
            "pid": 1001,
            "hostname": HOST,
            "acquired_at_epoch_millis": 1_700_000_000_000,
        }


class TestStaleness:
    def test_expired_lock_is_acquirable(self, tmp_path, alive):
        c1, c2 = Clock(), Clock()
        g1 = _guard(tmp_path, P1, c1)
        g2 = _guard(tmp_path, P2, c2)
        assert g1.acquire("profile1")

        c2.now += 299
        assert g2.acquire("profile1") is False

        c2.now += 2
        assert g2.acquire("profile1") is True
        assert g2.get_lock_info("profile1").holder_id == P2.holder_id

    def test_dead_holder_is_acquirable(self, tmp_path, clock):
        g1 = _guard(tmp_path, P1, clock)
        g2 = _guard(tmp_path, P2, clock)

        with patch("infra.profile_lock.os.kill", return_value=None):
            assert g1.acquire("profile1")
            assert g2.acquire("profile1") is False

        # P1 crashes
        with patch("infra.profile_lock.os.kill", side_effect=ProcessLookupError):
            assert g2.is_locked("profile1") is False
            assert g2.acquire("profile1") is True

    def test_unconfirmable_liveness_is_stale(self, tmp_path, clock):
        g1 = _guard(tmp_path, P1, clock)
        g2 = _guard(tmp_path, P2, clock)
        with patch("infra.profile_lock.os.kill", return_value=None):
            g1.acquire("profile1")

        with patch("infra.profile_lock.os.kill", side_effect=PermissionError):
            assert g2.acquire("profile1") is True

    def test_lock_from_other_host_is_stale(self, tmp_path, clock, alive):
        remote = _guard(tmp_path, LockHolder(pid=1001, hostname="other-host"), clock)
        local = _guard(tmp_path, P2, clock)
        remote.acquire("profile1")

        assert local.is_locked("profile1") is False
        assert local.acquire("profile1") is True

    def test_corrupt_lock_file_is_stale(self, tmp_path, clock, alive):
        g1 = _guard(tmp_path, P1, clock)
        path = g1.lock_path("profile1")
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        assert g1.is_locked("profile1") is False
        assert g1.acquire("profile1") is True

    def test_cleanup_stale(self, tmp_path, clock):
        g1 = _guard(tmp_path, P1, clock)
        g2 = _guard(tmp_path, P2, clock)
        with patch("infra.profile_lock.os.kill", return_value=None):
            g1.acquire("a")
            g1.acquire("b")
            g2.acquire("c")
        (tmp_path / "profiles" / "unlocked").mkdir()

        def only_p2_alive(pid, sig):
            if pid != P2.pid:
                raise ProcessLookupError

        with patch("infra.profile_lock.os.kill", side_effect=only_p2_alive):
            assert g2.cleanup_stale() == 2
            assert not g2.lock_path("a").exists()
            assert not g2.lock_path("b").exists()
            assert g2.is_locked("c")


class TestReleaseAndRefresh:
    def test_release_missing_lock_succeeds(self, tmp_path, clock):
        g1 = _guard(tmp_path, P1, clock)
        assert g1.release("never-locked") is True

    def test_release_removes_record(self, tmp_path, clock, alive):
        g1 = _guard(tmp_path, P1, clock)
        g1.acquire("profile1")
        assert g1.release("profile1") is True
        assert g1.is_locked("profile1") is False
        assert g1.release("profile1") is True

    def test_refresh_extends_lease(self, tmp_path, alive):
        c1 = Clock()
        g1 = _guard(tmp_path, P1, c1)
        g2 = _guard(tmp_path, P2, c1)
        g1.acquire("profile1")

        c1.now += 200
        assert g1.refresh("profile1") is True
        assert g2.refresh("profile1") is False

        c1.now += 200  # 400s after acquire, 200s after refresh
        assert g1.holds("profile1")
        assert g2.acquire("profile1") is False

    def test_holds_false_after_expiry(self, tmp_path, alive):
        c1 = Clock()
        g1 = _guard(tmp_path, P1, c1, timeout=60)
        g1.acquire("profile1")
        c1.now += 61
        assert g1.holds("profile1") is False
