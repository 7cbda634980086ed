"""
snipewatch Core: Snipe Engine

Runs a batch of snipes against an OperationExecutor. Each snipe follows a
discover -> simulate -> submit pipeline with bounded exponential backoff;
one snipe failing never stops or cancels another.

Events are emitted on ``snipe:event`` as SnipeEvent instances, phases:
started, pool_found, simulated, submitted, retrying, completed, failed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.events import EventEmitter
from core.exceptions import AlreadyRunning, ConfigurationError, TargetNotFound
from core.executor import OperationExecutor
from core.models import (
    ExecutionMode,
    Network,
    Profile,
    Snipe,
    SnipeEvent,
    SnipeResult,
    amount_to_sats,
)

logger = logging.getLogger(__name__)

SNIPE_EVENT = "snipe:event"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff, no jitter."""
    max_retries: int = 20
    initial_delay_ms: int = 2000
    max_delay_ms: int = 5000

    def __post_init__(self):
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < self.initial_delay_ms:
            raise ConfigurationError("max_delay_ms must be >= initial_delay_ms >= 0")

    def delay_ms(self, attempt: int) -> int:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.initial_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)


def min_amount_out(expected_out: int, slippage_tolerance_pct: float) -> int:
    """floor(expected_out * (1 - slippage/100)), computed in Decimal."""
    factor = (Decimal(100) - Decimal(str(slippage_tolerance_pct))) / Decimal(100)
    return int((Decimal(int(expected_out)) * factor).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class RunOptions:
    """Settings fixed for the lifetime of one run."""
    retry_policy: RetryPolicy
    slippage_tolerance_pct: float
    profile: str = ""
    simulate_only: bool = False

    @classmethod
    def for_profile(cls, profile: Profile) -> "RunOptions":
        s = profile.settings
        return cls(
            retry_policy=RetryPolicy(s.max_retries, s.retry_delay_ms, s.max_retry_delay_ms),
            slippage_tolerance_pct=float(s.slippage_tolerance_pct),
            profile=profile.name,
        )


class SnipeEngine(EventEmitter):
    """
    Executes snipes with retries.

    Only one run may be active at a time. Credential sessions are cached
    per snipe for the duration of a run and always dropped afterwards.
    Audit entries are buffered during a run and written from a worker
    thread once the run ends.
    """

    def __init__(
        self,
        executor: OperationExecutor,
        retry_policy: Optional[RetryPolicy] = None,
        slippage_tolerance_pct: float = 10.0,
        mode: ExecutionMode = ExecutionMode.PARALLEL,
        network: Network = Network.REGTEST,
        metrics: Optional[Any] = None,
        audit: Optional[Any] = None,
        audit_profile: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.slippage_tolerance_pct = float(slippage_tolerance_pct)
        self.mode = ExecutionMode(mode)
        self.network = Network.parse(network)
        self._metrics = metrics
        self._audit = audit
        self._audit_profile = audit_profile
        self._sleep = sleep
        self._clock = clock

        self._running = False
        self._sessions: Dict[str, Any] = {}
        self._audit_buffer: List[SnipeEvent] = []

    @classmethod
    def for_profile(cls, executor: OperationExecutor, profile: Profile, **kwargs) -> "SnipeEngine":
        s = profile.settings
        return cls(
            executor,
            retry_policy=RetryPolicy(s.max_retries, s.retry_delay_ms, s.max_retry_delay_ms),
            slippage_tolerance_pct=s.slippage_tolerance_pct,
            mode=ExecutionMode.PARALLEL if s.execute_in_parallel else ExecutionMode.SEQUENTIAL,
            network=s.network,
            audit_profile=profile.name,
            **kwargs,
        )

    def is_executing(self) -> bool:
        return self._running

    def active_session_count(self) -> int:
        return len(self._sessions)

    def default_options(self) -> RunOptions:
        return RunOptions(
            retry_policy=self.retry_policy,
            slippage_tolerance_pct=self.slippage_tolerance_pct,
            profile=self._audit_profile,
        )

    async def run(
        self,
        snipes: Sequence[Snipe],
        mode: Optional[ExecutionMode] = None,
        network: Optional[Network] = None,
        options: Optional[RunOptions] = None,
    ) -> List[SnipeResult]:
        """
        Execute every active snipe in ``snipes``.

        ``options`` (default: the engine's own settings) is captured once
        and used for the whole run.

        Returns:
            One SnipeResult per active snipe, in input order.

        Raises:
            AlreadyRunning: if another run is in progress
        """
        if self._running:
            raise AlreadyRunning("A snipe run is already in progress")

        mode = ExecutionMode(mode or self.mode)
        network = Network.parse(network or self.network)
        options = options or self.default_options()
        active = [s for s in snipes if s.is_active]

        self._running = True
        try:
            if not active:
                logger.warning("No active snipes to execute")
                return []

            logger.info("Executing %d snipes (%s, %s)", len(active), mode.value, network.value)

            if mode == ExecutionMode.PARALLEL:
                outcomes = await asyncio.gather(
                    *(self._execute_single(s, network, options) for s in active),
                    return_exceptions=True,
                )
                results = [
                    o if isinstance(o, SnipeResult) else self._escaped_failure(s, o)
                    for s, o in zip(active, outcomes)
                ]
            else:
                results = []
                for snipe in active:
                    try:
                        results.append(await self._execute_single(snipe, network, options))
                    except Exception as exc:
                        results.append(self._escaped_failure(snipe, exc))

            succeeded = sum(1 for r in results if r.success)
            logger.info("Snipe run finished: %d/%d succeeded", succeeded, len(results))
            return results
        finally:
            self._sessions.clear()
            try:
                await self._flush_audit(options.profile)
            finally:
                self._running = False

    async def execute_profile(self, profile: Profile) -> List[SnipeResult]:
        """Run a profile's active snipes using its own settings."""
        s = profile.settings
        mode = ExecutionMode.PARALLEL if s.execute_in_parallel else ExecutionMode.SEQUENTIAL
        return await self.run(
            list(profile.active_snipes()),
            mode=mode,
            network=s.network,
            options=RunOptions.for_profile(profile),
        )

    async def test_snipe(self, snipe: Snipe) -> SnipeResult:
        """
        Dry run on REGTEST: one attempt that discovers the pool and
        simulates the swap but never submits.
        """
        if self._running:
            raise AlreadyRunning("A snipe run is already in progress")

        options = RunOptions(
            retry_policy=RetryPolicy(max_retries=1, initial_delay_ms=0, max_delay_ms=0),
            slippage_tolerance_pct=self.slippage_tolerance_pct,
            profile=self._audit_profile,
            simulate_only=True,
        )
        self._running = True
        try:
            logger.info("Testing snipe %s on REGTEST", snipe.id)
            return await self._execute_single(snipe, Network.REGTEST, options)
        finally:
            self._sessions.clear()
            try:
                await self._flush_audit(options.profile)
            finally:
                self._running = False

    def stop(self) -> None:
        """Best effort: drops cached sessions and listeners; in-flight calls finish."""
        self._sessions.clear()
        self.remove_all_listeners()
        logger.info("Snipe engine stopped")

    async def _execute_single(self, snipe: Snipe, network: Network, options: RunOptions) -> SnipeResult:
        policy = options.retry_policy
        started = self._clock()
        attempts = 0
        last_error: Optional[str] = None

        while attempts < policy.max_retries:
            attempts += 1
            self._emit(snipe.id, "started", {"attempt": attempts, "network": network.value})
            try:
                result = await self._attempt(snipe, network, attempts, started, options)
            except ConfigurationError as exc:
                last_error = str(exc)
                logger.error("Snipe %s misconfigured: %s", snipe.id, last_error)
                break
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning("Snipe %s attempt %d/%d failed: %s", snipe.id, attempts, policy.max_retries, last_error)
                if attempts >= policy.max_retries:
                    break
                delay_ms = policy.delay_ms(attempts)
                self._emit(snipe.id, "retrying", {
                    "attempt": attempts,
                    "next_attempt_in_ms": delay_ms,
                    "error": last_error,
                })
                await self._sleep(delay_ms / 1000.0)
                continue

            self._emit(snipe.id, "completed", result.to_dict())
            self._record(result)
            return result

        result = SnipeResult(
            snipe_id=snipe.id,
            success=False,
            execution_time_ms=self._elapsed_ms(started),
            attempts=attempts,
            error=last_error,
        )
        logger.error("Snipe %s failed after %d attempts: %s", snipe.id, attempts, last_error)
        self._emit(snipe.id, "failed", {"attempts": attempts, "error": last_error})
        self._record(result)
        return result

    async def _attempt(
        self,
        snipe: Snipe,
        network: Network,
        attempt: int,
        started: float,
        options: RunOptions,
    ) -> SnipeResult:
        amount_in = amount_to_sats(snipe.amount_btc)
        session = await self._session_for(snipe, network)

        balance = await self._executor.get_balance(session)
        logger.debug("Snipe %s wallet balance: %s sats", snipe.id, balance)

        target = await self._executor.resolve_target(session, snipe.token_address)
        if target is None:
            raise TargetNotFound(snipe.token_address)
        self._emit(snipe.id, "pool_found", {"pool_id": target.pool_id, "attempt": attempt})

        estimate = await self._executor.estimate(session, target, amount_in)
        self._emit(snipe.id, "simulated", {
            "amount_in": amount_in,
            "expected_amount_out": estimate.amount_out,
            "price_impact_pct": estimate.price_impact_pct,
            "note": estimate.note,
        })

        if options.simulate_only:
            return SnipeResult(
                snipe_id=snipe.id,
                success=True,
                execution_time_ms=self._elapsed_ms(started),
                attempts=attempt,
                expected_amount_out=estimate.amount_out,
            )

        floor_out = min_amount_out(estimate.amount_out, options.slippage_tolerance_pct)
        receipt = await self._executor.submit(session, target, amount_in, floor_out)
        self._emit(snipe.id, "submitted", {"tx_id": receipt.tx_id, "min_amount_out": floor_out})

        slippage = None
        if estimate.amount_out > 0:
            slippage = (estimate.amount_out - receipt.amount_out) / estimate.amount_out * 100.0

        logger.info("Snipe %s executed: tx=%s amount_out=%s", snipe.id, receipt.tx_id, receipt.amount_out)
        return SnipeResult(
            snipe_id=snipe.id,
            success=True,
            execution_time_ms=self._elapsed_ms(started),
            attempts=attempt,
            tx_id=receipt.tx_id,
            amount_out=receipt.amount_out,
            expected_amount_out=estimate.amount_out,
            slippage_pct=slippage,
        )

    async def _session_for(self, snipe: Snipe, network: Network) -> Any:
        session = self._sessions.get(snipe.id)
        if session is not None:
            return session
        if not snipe.credential_ref:
            raise ConfigurationError(f"Snipe {snipe.id} has no credential configured")
        session = await self._executor.open_session(snipe.credential_ref, network)
        self._sessions[snipe.id] = session
        return session

    def _escaped_failure(self, snipe: Snipe, exc: BaseException) -> SnipeResult:
        logger.error("Snipe %s crashed: %s", snipe.id, exc)
        result = SnipeResult(
            snipe_id=snipe.id,
            success=False,
            execution_time_ms=0,
            attempts=0,
            error=str(exc) or type(exc).__name__,
        )
        self._emit(snipe.id, "failed", {"attempts": 0, "error": result.error})
        return result

    def _emit(self, snipe_id: str, phase: str, payload: Dict[str, Any]) -> None:
        event = SnipeEvent(snipe_id=snipe_id, phase=phase, payload=payload)
        if self._audit is not None:
            self._audit_buffer.append(event)
        self.emit(SNIPE_EVENT, event)

    async def _flush_audit(self, profile: str) -> None:
        if self._audit is None or not self._audit_buffer:
            return
        events, self._audit_buffer = self._audit_buffer, []
        await asyncio.to_thread(self._audit.log_snipe_events, profile, events)

    def _record(self, result: SnipeResult) -> None:
        if self._metrics is not None:
            self._metrics.record_snipe_result(result.success, result.attempts)

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock() - started) * 1000))
