"""Concurrency control for per-wallet submission.

Provides one lock per (wallet address, network) so transactions for the same
key are signed and broadcast in order while other keys proceed in parallel.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Lock registry: (wallet address, network) -> asyncio.Lock
_wallet_locks: dict[tuple[str, str], asyncio.Lock] = {}


def lock_key(wallet_address: str, network: str) -> tuple[str, str]:
    return wallet_address.lower(), network.lower()


def get_wallet_lock(wallet_address: str, network: str) -> asyncio.Lock:
    """Get or create the lock for a wallet on a network."""
    return _wallet_locks.setdefault(lock_key(wallet_address, network), asyncio.Lock())


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class WalletNetworkLock:
    """Context manager for exclusive submission on one wallet/network.

    Example:
        async with WalletNetworkLock(address, "sepolia", operation="submit"):
            nonce = await allocator.allocate(address, "sepolia")
            ...
    """

    def __init__(
        self,
        wallet_address: str,
        network: str,
        timeout: Optional[float] = None,
        operation: str = "submit",
    ):
        self.wallet_address = wallet_address
        self.network = network
        self.timeout = timeout
        self.operation = operation
        self._lock: Optional[asyncio.Lock] = None
        self._acquired = False

    async def __aenter__(self) -> "WalletNetworkLock":
        self._lock = get_wallet_lock(self.wallet_address, self.network)
        try:
            if self.timeout:
                await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
            else:
                await self._lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(
                f"Lock timeout for {self.wallet_address}/{self.network} "
                f"after {self.timeout}s: {self.operation}"
            )
            raise LockTimeoutError(
                f"Could not acquire lock for {self.wallet_address} on {self.network} "
                f"within {self.timeout}s"
            )

        self._acquired = True
        logger.debug(f"Lock acquired for {self.wallet_address}/{self.network}: {self.operation}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._acquired and self._lock:
            self._lock.release()
            self._acquired = False
            logger.debug(f"Lock released for {self.wallet_address}/{self.network}: {self.operation}")
        return False


@asynccontextmanager
async def wallet_lock(
    wallet_address: str,
    network: str,
    timeout: Optional[float] = None,
    operation: str = "submit",
):
    """Functional form of WalletNetworkLock.

    Example:
        async with wallet_lock(address, network, operation="resync"):
            ...
    """
    async with WalletNetworkLock(wallet_address, network, timeout=timeout, operation=operation):
        yield


def clear_wallet_locks() -> None:
    """Clear all wallet locks (useful for testing)."""
    _wallet_locks.clear()
