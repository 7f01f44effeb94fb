"""JSON-RPC client for EVM networks.

Every call is classified into the engine error taxonomy:
- transport failures, timeouts and 5xx responses -> BackendUnavailableError
- stale/duplicate nonce on broadcast -> NonceConflictError
- any other node rejection of a broadcast -> BroadcastRejectedError
"""

import itertools
import logging
from typing import Any, Optional

import httpx
from web3 import Web3

from txengine.config import Settings, get_settings
from txengine.errors import (
    BackendUnavailableError,
    BroadcastRejectedError,
    ConfigurationError,
    NonceConflictError,
    SimulationError,
)

logger = logging.getLogger(__name__)

NONCE_CONFLICT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "invalid nonce",
    "nonce has already been used",
    "replacement transaction underpriced",
    "already imported",
)
ALREADY_KNOWN_MARKERS = (
    "already known",
    "known transaction",
)
REVERT_MARKERS = (
    "execution reverted",
    "revert",
)

_request_ids = itertools.count(1)


class RpcResponseError(Exception):
    """Node answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


def _hex(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return hex(value)
    return value


def _call_params(tx: dict) -> dict:
    """Hex-encode a transaction dict for eth_call / eth_estimateGas."""
    return {key: _hex(value) for key, value in tx.items() if key not in ("chainId", "nonce")}


def classify_broadcast_error(message: str) -> Optional[type]:
    """Map a node error message to an error class (None = already accepted)."""
    lowered = message.lower()
    if any(marker in lowered for marker in ALREADY_KNOWN_MARKERS):
        return None
    if any(marker in lowered for marker in NONCE_CONFLICT_MARKERS):
        return NonceConflictError
    return BroadcastRejectedError


class ChainClient:
    """Async JSON-RPC client for one network."""

    def __init__(self, network: str, rpc_url: str, timeout: float = 30.0):
        self.network = network
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._chain_id: Optional[int] = None

    async def _request(self, method: str, params: list) -> Any:
        """Send one JSON-RPC request.

        Raises:
            BackendUnavailableError: Transport failure or server error
            RpcResponseError: Node returned an error object
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(_request_ids),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                f"{self.network} RPC {method} failed", cause=e
            ) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise BackendUnavailableError(
                f"{self.network} RPC {method} returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendUnavailableError(
                f"{self.network} RPC {method} returned invalid JSON", cause=e
            ) from e

        if "error" in data and data["error"]:
            error = data["error"]
            raise RpcResponseError(
                error.get("code", 0), error.get("message", ""), error.get("data")
            )
        return data.get("result")

    async def _query(self, method: str, params: list) -> Any:
        """Read-only call where any node error is treated as unavailability."""
        try:
            return await self._request(method, params)
        except RpcResponseError as e:
            raise BackendUnavailableError(
                f"{self.network} RPC {method} error: {e.message}", cause=e
            ) from e

    async def chain_id(self) -> int:
        """Chain id, cached after the first call."""
        if self._chain_id is None:
            self._chain_id = int(await self._query("eth_chainId", []), 16)
        return self._chain_id

    async def block_number(self) -> int:
        return int(await self._query("eth_blockNumber", []), 16)

    async def gas_price(self) -> int:
        return int(await self._query("eth_gasPrice", []), 16)

    async def max_priority_fee(self) -> int:
        return int(await self._query("eth_maxPriorityFeePerGas", []), 16)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        """Transaction count (next nonce) for an address."""
        return int(await self._query("eth_getTransactionCount", [address, block]), 16)

    async def estimate_gas(self, tx: dict) -> int:
        """Estimate gas; a revert is a permanent rejection."""
        try:
            return int(await self._request("eth_estimateGas", [_call_params(tx)]), 16)
        except RpcResponseError as e:
            if any(marker in e.message.lower() for marker in REVERT_MARKERS):
                raise BroadcastRejectedError(f"Gas estimation reverted: {e.message}") from e
            raise BroadcastRejectedError(f"Gas estimation failed: {e.message}") from e

    async def call(self, tx: dict) -> str:
        """eth_call against the latest block.

        Raises:
            SimulationError: The call reverted
        """
        try:
            return await self._request("eth_call", [_call_params(tx), "latest"])
        except RpcResponseError as e:
            raise SimulationError(f"Simulation reverted: {e.message}", cause=e) from e

    async def send_raw_transaction(self, raw_transaction: bytes) -> Optional[str]:
        """Broadcast signed bytes.

        Returns:
            The node's transaction hash, or None if the node already had it

        Raises:
            NonceConflictError, BroadcastRejectedError, BackendUnavailableError
        """
        try:
            return await self._request("eth_sendRawTransaction", [Web3.to_hex(raw_transaction)])
        except RpcResponseError as e:
            error_class = classify_broadcast_error(e.message)
            if error_class is None:
                logger.info(f"{self.network}: transaction already known to node")
                return None
            raise error_class(e.message) from e

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Receipt with integer fields, or None while pending."""
        result = await self._query("eth_getTransactionReceipt", [tx_hash])
        if result is None:
            return None
        return {
            "transactionHash": result.get("transactionHash", tx_hash),
            "blockNumber": int(result["blockNumber"], 16) if result.get("blockNumber") else None,
            "status": int(result.get("status", "0x1"), 16),
            "gasUsed": int(result.get("gasUsed", "0x0"), 16),
            "contractAddress": result.get("contractAddress"),
        }

    def __repr__(self) -> str:
        return f"ChainClient(network={self.network})"


# Cache for client instances
_client_cache: dict[str, ChainClient] = {}


def get_chain_client(network: str, settings: Optional[Settings] = None) -> ChainClient:
    """Get the JSON-RPC client for a network.

    Raises:
        ConfigurationError: If no RPC URL is configured for the network
    """
    settings = settings or get_settings()
    key = network.lower()
    if key in _client_cache:
        return _client_cache[key]

    rpc_url = settings.get_rpc_url(key)
    if not rpc_url:
        raise ConfigurationError(f"No RPC URL configured for network '{network}'")

    client = ChainClient(key, rpc_url, timeout=settings.rpc_timeout_seconds)
    _client_cache[key] = client
    return client


def reset_chain_clients() -> None:
    """Clear cached clients (for testing)."""
    _client_cache.clear()
