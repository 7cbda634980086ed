"""
snipewatch Core: Data Model

Profiles, snipes, execution results and network status snapshots.
Everything persisted goes through to_dict()/from_dict() so unknown keys
written by newer versions are dropped on read instead of failing.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid
import time

from core.exceptions import ConfigurationError

SATS_PER_BTC = Decimal("100000000")
MAX_BTC_AMOUNT = Decimal("21")


class Network(str, Enum):
    MAINNET = "MAINNET"
    REGTEST = "REGTEST"

    @classmethod
    def parse(cls, value: Any, default: Optional["Network"] = None) -> "Network":
        if isinstance(value, Network):
            return value
        normalized = str(value or "").strip().upper()
        for member in cls:
            if member.value == normalized:
                return member
        if default is not None:
            return default
        raise ConfigurationError(f"Unknown network: {value!r}")


class SnipeStatus(str, Enum):
    CREATED = "CREATED"
    VALIDATED = "VALIDATED"
    TESTED = "TESTED"
    READY = "READY"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class ExecutionMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def normalize_amount(amount: str) -> str:
    """Strip whitespace and an optional trailing 'btc' unit."""
    cleaned = str(amount or "").strip().lower()
    if cleaned.endswith("btc"):
        cleaned = cleaned[:-3].strip()
    return cleaned


def amount_to_sats(amount_btc: str) -> int:
    """
    Convert a BTC decimal string into satoshis (rounded down).

    Raises:
        ConfigurationError: if the amount is not a positive number <= 21 BTC
    """
    cleaned = normalize_amount(amount_btc)
    try:
        value = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        raise ConfigurationError(f"Invalid BTC amount: {amount_btc!r}")
    if not value.is_finite() or value <= 0:
        raise ConfigurationError(f"BTC amount must be greater than 0: {amount_btc!r}")
    if value > MAX_BTC_AMOUNT:
        raise ConfigurationError(f"BTC amount cannot exceed 21 BTC: {amount_btc!r}")
    return int((value * SATS_PER_BTC).to_integral_value(rounding=ROUND_DOWN))


def generate_snipe_id() -> str:
    return f"snipe_{int(time.time() * 1000):x}_{uuid.uuid4().hex[:5]}"


@dataclass
class HealthStatus:
    """Last computed network status; recomputed on every poll."""
    online: bool
    network: Network
    last_check_at: datetime
    latency_ms: Optional[int] = None
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "network": self.network.value,
            "last_check_at": _iso(self.last_check_at),
            "latency_ms": self.latency_ms,
            "consecutive_failures": self.consecutive_failures,
        }


@dataclass(frozen=True)
class NetworkEvent:
    """Payload for status updates and online/offline transitions."""
    online: bool
    previous_online: bool
    network: Network
    timestamp: datetime
    latency_ms: Optional[int] = None
    consecutive_failures: int = 0

    @property
    def is_transition(self) -> bool:
        return self.online != self.previous_online


@dataclass(frozen=True)
class SnipeEvent:
    """Lifecycle event emitted by the snipe engine."""
    snipe_id: str
    phase: str  # started | pool_found | simulated | submitted | retrying | completed | failed
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snipe_id": self.snipe_id,
            "phase": self.phase,
            "payload": self.payload,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class SnipeResult:
    """Outcome of one snipe in one execution run."""
    snipe_id: str
    success: bool
    execution_time_ms: int
    attempts: int
    tx_id: Optional[str] = None
    amount_out: Optional[int] = None
    expected_amount_out: Optional[int] = None
    slippage_pct: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnipeResult":
        return cls(**_known(cls, data))


@dataclass
class Snipe:
    """One configured swap: target token, BTC amount and wallet credential."""
    id: str
    token_address: str
    amount_btc: str
    credential_ref: str = ""
    wallet_address: str = ""
    is_active: bool = True
    status: SnipeStatus = SnipeStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    last_tested_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    last_result: Optional[SnipeResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token_address": self.token_address,
            "amount_btc": self.amount_btc,
            "credential_ref": self.credential_ref,
            "wallet_address": self.wallet_address,
            "is_active": self.is_active,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "last_tested_at": _iso(self.last_tested_at),
            "executed_at": _iso(self.executed_at),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snipe":
        known = _known(cls, data)
        try:
            status = SnipeStatus(known.get("status", SnipeStatus.CREATED.value))
        except ValueError:
            status = SnipeStatus.CREATED
        last_result = known.get("last_result")
        return cls(
            id=str(known["id"]),
            token_address=str(known.get("token_address", "")),
            amount_btc=str(known.get("amount_btc", "")),
            credential_ref=known.get("credential_ref") or "",
            wallet_address=known.get("wallet_address") or "",
            is_active=bool(known.get("is_active", True)),
            status=status,
            created_at=_parse_dt(known.get("created_at")) or utcnow(),
            last_tested_at=_parse_dt(known.get("last_tested_at")),
            executed_at=_parse_dt(known.get("executed_at")),
            last_result=SnipeResult.from_dict(last_result) if isinstance(last_result, dict) else None,
        )


@dataclass
class ProfileSettings:
    default_amount: str = "0.05"
    max_retries: int = 20
    retry_delay_ms: int = 2000
    max_retry_delay_ms: int = 5000
    slippage_tolerance_pct: float = 10.0
    network: Network = Network.REGTEST
    enable_alerts: bool = True
    execute_in_parallel: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["network"] = self.network.value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProfileSettings":
        known = _known(cls, data or {})
        if "network" in known:
            known["network"] = Network.parse(known["network"], default=Network.REGTEST)
        return cls(**known)


@dataclass
class Profile:
    """Named, persisted collection of snipes plus settings."""
    name: str
    snipes: List[Snipe] = field(default_factory=list)
    settings: ProfileSettings = field(default_factory=ProfileSettings)
    created_at: datetime = field(default_factory=utcnow)
    last_used: datetime = field(default_factory=utcnow)
    execution_history: List[Dict[str, Any]] = field(default_factory=list)

    def active_snipes(self) -> List[Snipe]:
        return [s for s in self.snipes if s.is_active]

    def find_snipe(self, snipe_id: str) -> Optional[Snipe]:
        for snipe in self.snipes:
            if snipe.id == snipe_id:
                return snipe
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": _iso(self.created_at),
            "last_used": _iso(self.last_used),
            "settings": self.settings.to_dict(),
            "snipes": [s.to_dict() for s in self.snipes],
            "execution_history": list(self.execution_history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        if not isinstance(data, dict) or not data.get("name"):
            raise ConfigurationError("Profile record is missing a name")
        return cls(
            name=str(data["name"]),
            snipes=[Snipe.from_dict(s) for s in data.get("snipes") or [] if isinstance(s, dict)],
            settings=ProfileSettings.from_dict(data.get("settings")),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_used=_parse_dt(data.get("last_used")) or utcnow(),
            execution_history=[h for h in data.get("execution_history") or [] if isinstance(h, dict)],
        )


@dataclass
class ProfileSummary:
    name: str
    snipe_count: int
    active_snipe_count: int
    last_used: datetime
    is_locked: bool
    status: str  # IDLE | LOCKED
    holder_id: Optional[str] = None
