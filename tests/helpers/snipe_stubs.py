"""
Test helpers for monitor, engine and controller tests.

Scripted collaborators stand in for the FlashNet API so tests never touch
the network, and a fake clock/sleep pair makes backoff timing exact.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.exceptions import TransientRemoteError
from core.executor import Estimate, OperationExecutor, SwapReceipt, SwapTarget
from core.models import Network, Profile, ProfileSettings, Snipe
from core.network_monitor import HealthProbe, ProbeResponse

HANG = "hang"


class FakeClock:
    """Monotonic clock advanced explicitly by FakeSleep / ScriptedProbe."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeSleep:
    """
    Records requested delays and advances an optional FakeClock instead of
    waiting. ``real_delay`` still yields to the loop for that long.
    """
    clock: Optional[FakeClock] = None
    real_delay: float = 0.0
    delays: List[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
        await asyncio.sleep(self.real_delay)

    @property
    def total(self) -> float:
        return sum(self.delays)


class ScriptedProbe(HealthProbe):
    """
    Health probe that plays back a script.

    Each entry is one of:
    - True / False: healthy / unhealthy response
    - (healthy, latency_ms): response after advancing the fake clock
    - an Exception instance: raised from ping()
    - HANG: never answers (exercises the per-check timeout)

    The last entry repeats once the script runs out.
    """

    def __init__(self, script: Iterable[Any], clock: Optional[FakeClock] = None):
        self.script = list(script)
        self.clock = clock
        self.calls: List[Network] = []

    async def ping(self, network: Network) -> ProbeResponse:
        self.calls.append(network)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        step = self.script[index]

        if step == HANG:
            await asyncio.sleep(3600)
        if isinstance(step, Exception):
            raise step

        latency_ms = 0
        if isinstance(step, tuple):
            step, latency_ms = step
        if self.clock is not None and latency_ms:
            self.clock.advance(latency_ms / 1000.0)
        await asyncio.sleep(0)
        return ProbeResponse(healthy=bool(step), timestamp=datetime.now(timezone.utc))


class ScriptedExecutor(OperationExecutor):
    """
    In-memory executor keyed by token address.

    Args:
        transient_failures: token -> number of failed pool lookups before success
        always_fail: tokens whose pool lookup always raises
        missing: tokens with no pool (resolve_target returns None)
        amount_out: simulated output for every swap
        received: actual output on submit (default: amount_out)
    """

    def __init__(
        self,
        transient_failures: Optional[Dict[str, int]] = None,
        always_fail: Iterable[str] = (),
        missing: Iterable[str] = (),
        amount_out: int = 1_000_000,
        received: Optional[int] = None,
    ):
        self.transient_failures = dict(transient_failures or {})
        self.always_fail = set(always_fail)
        self.missing = set(missing)
        self.amount_out = amount_out
        self.received = received

        self.sessions_opened: List[Tuple[str, Network]] = []
        self.lookups: List[str] = []
        self.estimates: List[Tuple[str, int]] = []
        self.submits: List[Tuple[str, int, int]] = []

    async def open_session(self, credential_ref: str, network: Network) -> Dict[str, Any]:
        self.sessions_opened.append((credential_ref, network))
        return {"credential_ref": credential_ref, "network": network}

    async def get_balance(self, session: Any) -> int:
        await asyncio.sleep(0)
        return 100_000_000

    async def resolve_target(self, session: Any, identifier: str) -> Optional[SwapTarget]:
        self.lookups.append(identifier)
        await asyncio.sleep(0)
        if identifier in self.always_fail:
            raise TransientRemoteError(f"FlashNet GET /pools failed for {identifier}")
        if self.transient_failures.get(identifier, 0) > 0:
            self.transient_failures[identifier] -= 1
            raise TransientRemoteError("FlashNet GET /pools unreachable")
        if identifier in self.missing:
            return None
        return SwapTarget(pool_id=f"pool-{identifier}", asset_in="BTC", asset_out=identifier)

    async def estimate(self, session: Any, target: SwapTarget, amount_in: int) -> Estimate:
        self.estimates.append((target.asset_out, amount_in))
        await asyncio.sleep(0)
        return Estimate(amount_out=self.amount_out)

    async def submit(self, session: Any, target: SwapTarget, amount_in: int, min_amount_out: int) -> SwapReceipt:
        self.submits.append((target.asset_out, amount_in, min_amount_out))
        await asyncio.sleep(0)
        received = self.received if self.received is not None else self.amount_out
        return SwapReceipt(tx_id=f"tx-{target.asset_out}", amount_out=received)


def make_snipe(
    snipe_id: str,
    token_address: Optional[str] = None,
    amount_btc: str = "0.01",
    credential_ref: str = "wallet-1",
    is_active: bool = True,
) -> Snipe:
    return Snipe(
        id=snipe_id,
        token_address=token_address or f"token-{snipe_id}",
        amount_btc=amount_btc,
        credential_ref=credential_ref,
        is_active=is_active,
    )


def make_profile(name: str = "alpha", snipes: Optional[List[Snipe]] = None, **settings: Any) -> Profile:
    return Profile(name=name, snipes=list(snipes or []), settings=ProfileSettings(**settings))
