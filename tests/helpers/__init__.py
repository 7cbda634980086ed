"""Test helpers for the snipewatch test suite"""

from tests.helpers.snipe_stubs import (
    FakeSleep,
    ScriptedExecutor,
    ScriptedProbe,
    make_profile,
    make_snipe,
)

__all__ = [
    "FakeSleep",
    "ScriptedExecutor",
    "ScriptedProbe",
    "make_profile",
    "make_snipe",
]
