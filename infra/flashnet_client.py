"""
snipewatch Infrastructure: FlashNet AMM REST client

Thin synchronous wrapper around the FlashNet HTTP API (ping, pools, swap
simulation, swap submission, balances). Blocking calls are pushed off the
event loop by the async adapters (FlashnetProbe here, FlashnetExecutor in
core/executor.py) with asyncio.to_thread.
"""

import asyncio
import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import TransientRemoteError
from core.models import Network
from core.network_monitor import ProbeResponse

logger = logging.getLogger(__name__)

DEFAULT_MAINNET_URL = "https://api.amm.flashnet.xyz/v1"
DEFAULT_REGTEST_URL = "https://api.amm.makebitcoingreatagain.dev/v1"
USER_AGENT = "snipewatch/1.0"

HEX_TOKEN_ID = re.compile(r"^(?:0[xX])?([0-9a-fA-F]{40,64})$")


def normalize_token_id(identifier: str) -> str:
    """Hex ids are matched without the 0x prefix and in lowercase; other forms pass through."""
    identifier = (identifier or "").strip()
    match = HEX_TOKEN_ID.match(identifier)
    return match.group(1).lower() if match else identifier


class FlashnetClient:
    """
    REST client for both FlashNet networks.

    Every failure (HTTP error, timeout, connection error, malformed body) is
    surfaced as TransientRemoteError; callers decide whether to retry.
    """

    def __init__(
        self,
        mainnet_url: str = DEFAULT_MAINNET_URL,
        regtest_url: str = DEFAULT_REGTEST_URL,
        timeout_seconds: float = 30.0,
    ):
        self._base_urls = {
            Network.MAINNET: mainnet_url.rstrip("/"),
            Network.REGTEST: regtest_url.rstrip("/"),
        }
        self.timeout_seconds = float(timeout_seconds)

    def base_url(self, network: Network) -> str:
        return self._base_urls[Network.parse(network)]

    def _req(
        self,
        method: str,
        endpoint: str,
        network: Network,
        body: Optional[dict] = None,
        *,
        token: Optional[str] = None,
        query: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        max_retries: int = 1,
    ) -> Any:
        """
        Make HTTP request with exponential backoff on 429/5xx/network errors.

        4xx responses other than 429 are not retried here.
        """
        url = self.base_url(network) + endpoint
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        last_exception: Optional[TransientRemoteError] = None
        for attempt in range(max(1, max_retries)):
            try:
                response = requests.request(
                    method,
                    url,
                    headers=headers,
                    json=body,
                    params=query,
                    timeout=timeout or self.timeout_seconds,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                error = TransientRemoteError(f"FlashNet {method} {endpoint} failed ({status_code})", e, status_code)
                if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                    logger.debug("FlashNet client error %s on %s", status_code, endpoint)
                    raise error
                logger.warning(
                    "FlashNet %s on %s, attempt %d/%d", status_code, endpoint, attempt + 1, max_retries
                )
                last_exception = error

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.debug("Network error on %s: %s", endpoint, e)
                last_exception = TransientRemoteError(f"FlashNet {method} {endpoint} unreachable: {e}", e)

            except (requests.exceptions.RequestException, ValueError) as e:
                raise TransientRemoteError(f"FlashNet {method} {endpoint} failed: {e}", e)

            if attempt < max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info("Retrying %s in %.1fs...", endpoint, backoff)
                time.sleep(backoff)

        raise last_exception

    def ping(self, network: Network, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._req("GET", "/ping", network, timeout=timeout)

    def list_pools(self, network: Network, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        data = self._req("GET", "/pools", network, query={"limit": limit, "offset": offset})
        # The API has returned both a bare list and {"pools": [...]}
        pools = data if isinstance(data, list) else (data or {}).get("pools", [])
        if not isinstance(pools, list):
            raise TransientRemoteError("Failed to retrieve pools list from FlashNet API")
        return pools

    def find_pool(self, network: Network, token_address: str) -> Optional[Dict[str, Any]]:
        wanted = normalize_token_id(token_address)
        for pool in self.list_pools(network):
            keys = (
                pool.get("assetATokenPublicKey"),
                pool.get("assetBTokenPublicKey"),
                pool.get("tokenPublicKey"),
                pool.get("assetAAddress"),
                pool.get("poolId"),
                pool.get("lpPublicKey"),
            )
            if any(key and normalize_token_id(str(key)) == wanted for key in keys):
                return pool
        return None

    def simulate_swap(self, network: Network, request: Dict[str, Any], token: Optional[str] = None) -> Dict[str, Any]:
        return self._req("POST", "/swap/simulate", network, request, token=token)

    def execute_swap(self, network: Network, request: Dict[str, Any], token: str) -> Dict[str, Any]:
        if not token:
            raise TransientRemoteError("Authentication required for swap execution")
        return self._req("POST", "/swap", network, request, token=token)

    def get_balance(self, network: Network, token: str) -> Dict[str, Any]:
        return self._req("GET", "/balance", network, token=token)


class FlashnetProbe:
    """
    HealthProbe backed by GET /ping.

    The HTTP timeout matches the monitor's per-check timeout so a cancelled
    check does not leave its worker thread blocked for the full client timeout.
    """

    def __init__(self, client: FlashnetClient, timeout_seconds: Optional[float] = None):
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def ping(self, network: Network) -> ProbeResponse:
        data = await asyncio.to_thread(self._client.ping, network, timeout=self.timeout_seconds)
        payload = data if isinstance(data, dict) else {}
        raw_ts = payload.get("timestamp")
        try:
            timestamp = datetime.fromisoformat(str(raw_ts).replace("Z", "+00:00")) if raw_ts else None
        except ValueError:
            timestamp = None
        return ProbeResponse(
            healthy=payload.get("status") == "ok",
            timestamp=timestamp or datetime.now(timezone.utc),
        )
