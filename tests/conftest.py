"""
Pytest configuration and fixtures for snipewatch tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import os
import socket

import pytest

from infra.profile_lock import LockHolder, StaleLockGuard
from infra.profile_store import ProfileStore


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def profiles_dir(tmp_path):
    path = tmp_path / "profiles"
    path.mkdir()
    return path


@pytest.fixture
def this_holder():
    return LockHolder(pid=os.getpid(), hostname=socket.gethostname())


@pytest.fixture
def store(profiles_dir, this_holder):
    guard = StaleLockGuard(str(profiles_dir), stale_timeout_seconds=300, holder=this_holder)
    return ProfileStore(str(profiles_dir), lock_guard=guard)
