"""
snipewatch Core: Operation Executor capability

The snipe engine never talks to the AMM directly; it drives an
OperationExecutor. FlashnetExecutor is the production adapter over the
REST client. Wallet restoration and key handling stay behind the
CredentialProvider seam.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from core.exceptions import ConfigurationError, TransientRemoteError
from core.models import Network

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapTarget:
    """Concrete pool resolved from a snipe's token address."""
    pool_id: str
    asset_in: str
    asset_out: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Estimate:
    amount_out: int
    note: Optional[str] = None
    price_impact_pct: Optional[float] = None


@dataclass(frozen=True)
class SwapReceipt:
    tx_id: Optional[str]
    amount_out: int


class OperationExecutor(ABC):
    """Async capability used by SnipeEngine; every failure is treated as retryable."""

    @abstractmethod
    async def open_session(self, credential_ref: str, network: Network) -> Any:
        """Restore whatever the executor needs to act for one credential."""

    @abstractmethod
    async def get_balance(self, session: Any) -> int:
        """Spendable balance in satoshis."""

    @abstractmethod
    async def resolve_target(self, session: Any, identifier: str) -> Optional[SwapTarget]:
        """Return the pool for ``identifier`` or None when it does not exist yet."""

    @abstractmethod
    async def estimate(self, session: Any, target: SwapTarget, amount_in: int) -> Estimate:
        """Simulate a swap of ``amount_in`` sats."""

    @abstractmethod
    async def submit(self, session: Any, target: SwapTarget, amount_in: int, min_amount_out: int) -> SwapReceipt:
        """Submit the real swap."""


@dataclass(frozen=True)
class FlashnetSession:
    network: Network
    access_token: str
    wallet_ref: str


class CredentialProvider(ABC):
    @abstractmethod
    async def open(self, credential_ref: str, network: Network) -> FlashnetSession:
        raise NotImplementedError


class BearerTokenCredentials(CredentialProvider):
    """Uses a pre-issued API bearer token per network."""

    def __init__(self, tokens: Mapping[Network, Optional[str]]):
        self._tokens = {Network.parse(k): v for k, v in tokens.items()}

    async def open(self, credential_ref: str, network: Network) -> FlashnetSession:
        token = self._tokens.get(Network.parse(network))
        if not token:
            raise ConfigurationError(f"No FlashNet access token configured for {Network.parse(network).value}")
        return FlashnetSession(network=Network.parse(network), access_token=token, wallet_ref=credential_ref)


def _is_btc_asset(asset: Optional[str]) -> bool:
    return bool(asset) and (asset == "BTC" or "btc" in asset.lower())


def _to_int(value: Any, field_name: str) -> int:
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, TypeError, ValueError):
        raise TransientRemoteError(f"Malformed {field_name} in FlashNet response: {value!r}")


class FlashnetExecutor(OperationExecutor):
    """OperationExecutor over FlashnetClient; blocking calls run in a worker thread."""

    def __init__(self, client: Any, credentials: CredentialProvider):
        self._client = client
        self._credentials = credentials

    async def open_session(self, credential_ref: str, network: Network) -> FlashnetSession:
        return await self._credentials.open(credential_ref, network)

    async def get_balance(self, session: FlashnetSession) -> int:
        data = await asyncio.to_thread(self._client.get_balance, session.network, session.access_token)
        return _to_int((data or {}).get("balance", 0), "balance")

    async def resolve_target(self, session: FlashnetSession, identifier: str) -> Optional[SwapTarget]:
        pool = await asyncio.to_thread(self._client.find_pool, session.network, identifier)
        if not pool:
            return None

        asset_a = pool.get("assetATokenPublicKey") or pool.get("assetAAddress") or ""
        asset_b = pool.get("assetBTokenPublicKey") or ""
        if _is_btc_asset(asset_a):
            asset_in, asset_out = asset_a, asset_b
        else:
            asset_in, asset_out = asset_b, asset_a

        return SwapTarget(
            pool_id=str(pool.get("poolId") or pool.get("lpPublicKey") or identifier),
            asset_in=asset_in,
            asset_out=asset_out,
            details=dict(pool),
        )

    async def estimate(self, session: FlashnetSession, target: SwapTarget, amount_in: int) -> Estimate:
        request = {
            "poolId": target.pool_id,
            "assetInTokenPublicKey": target.asset_in,
            "assetOutTokenPublicKey": target.asset_out,
            "amountIn": str(amount_in),
        }
        data = await asyncio.to_thread(
            self._client.simulate_swap, session.network, request, session.access_token
        )
        data = data or {}
        impact = data.get("priceImpact")
        return Estimate(
            amount_out=_to_int(data.get("amountOut"), "amountOut"),
            note=data.get("warningMessage"),
            price_impact_pct=float(impact) if impact is not None else None,
        )

    async def submit(
        self, session: FlashnetSession, target: SwapTarget, amount_in: int, min_amount_out: int
    ) -> SwapReceipt:
        request = {
            "poolId": target.pool_id,
            "assetInTokenPublicKey": target.asset_in,
            "assetOutTokenPublicKey": target.asset_out,
            "amountIn": str(amount_in),
            "minAmountOut": str(min_amount_out),
            "recipient": session.wallet_ref,
        }
        data = await asyncio.to_thread(
            self._client.execute_swap, session.network, request, session.access_token
        )
        data = data or {}
        return SwapReceipt(
            tx_id=data.get("txId") or data.get("transactionHash"),
            amount_out=_to_int(data.get("amountOut", 0), "amountOut"),
        )
