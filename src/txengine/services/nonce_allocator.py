"""Per-wallet nonce allocation.

EVM accounts need strictly sequential nonces. Each (wallet, network) pair has
a ``NonceCounter`` seeded from ``eth_getTransactionCount(address, "pending")``
on first use and then advanced locally, so concurrent submissions get distinct
consecutive nonces without asking the chain again.

The counter lock only guards in-memory bookkeeping. Chain queries run outside
it and are applied only if no other caller seeded the counter meanwhile.

With a queue store attached, a counter is never seeded below the nonces of
records still ``submitted``. Their bytes may not have reached the node yet
(broadcast outcome unknown), so the pending count alone can hand out a nonce
that is already spoken for.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from txengine.chain.rpc import get_chain_client
from txengine.config import Settings, get_settings
from txengine.store.queue_store import QueueStore

logger = logging.getLogger(__name__)


@dataclass
class NonceCounter:
    """Next nonce for one wallet on one network."""
    wallet_address: str
    network: str
    next_nonce: Optional[int] = None
    # Bumped on every reseed so stale chain reads are discarded
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class NonceAllocator:
    """Owns every NonceCounter in the process."""

    def __init__(
        self,
        chain_factory: Callable = get_chain_client,
        settings: Optional[Settings] = None,
        store: Optional[QueueStore] = None,
    ):
        self._chain_factory = chain_factory
        self.settings = settings or get_settings()
        self.store = store
        self._counters: dict[tuple[str, str], NonceCounter] = {}

    def _counter(self, wallet_address: str, network: str) -> NonceCounter:
        key = (wallet_address.lower(), network.lower())
        return self._counters.setdefault(key, NonceCounter(wallet_address, network.lower()))

    async def _chain_nonce(self, wallet_address: str, network: str) -> int:
        chain = self._chain_factory(network, self.settings)
        nonce = await chain.get_transaction_count(wallet_address, "pending")
        if self.store is None:
            return nonce
        floor = await self.store.next_nonce_floor(wallet_address, network)
        if floor is not None and floor > nonce:
            logger.info(
                f"Pending count {nonce} for {wallet_address} on {network} is below "
                f"submitted records, starting at {floor}"
            )
            return floor
        return nonce

    async def allocate(self, wallet_address: str, network: str) -> int:
        """Reserve the next nonce for a wallet on a network.

        Raises:
            BackendUnavailableError: Chain query failed on first use
        """
        counter = self._counter(wallet_address, network)
        while True:
            async with counter.lock:
                if counter.next_nonce is not None:
                    nonce = counter.next_nonce
                    counter.next_nonce += 1
                    logger.debug(f"Allocated nonce {nonce} for {wallet_address} on {network}")
                    return nonce
                generation = counter.generation

            chain_nonce = await self._chain_nonce(wallet_address, network)

            async with counter.lock:
                if counter.next_nonce is None and counter.generation == generation:
                    counter.next_nonce = chain_nonce
                    counter.generation += 1
                    logger.info(
                        f"Seeded nonce counter for {wallet_address} on {network} at {chain_nonce}"
                    )

    async def resync(self, wallet_address: str, network: str) -> int:
        """Reset the counter to the chain's pending transaction count.

        Never goes below the nonces held by submitted records.

        Callers must hold the wallet's submission lock so no allocated nonce
        is still waiting for broadcast.
        """
        counter = self._counter(wallet_address, network)
        chain_nonce = await self._chain_nonce(wallet_address, network)
        async with counter.lock:
            previous = counter.next_nonce
            counter.next_nonce = chain_nonce
            counter.generation += 1
        if previous != chain_nonce:
            logger.warning(
                f"Resynced nonce for {wallet_address} on {network}: {previous} -> {chain_nonce}"
            )
        return chain_nonce

    async def invalidate(self, wallet_address: str, network: str) -> None:
        """Drop the cached value; the next allocation queries the chain."""
        counter = self._counter(wallet_address, network)
        async with counter.lock:
            counter.next_nonce = None
            counter.generation += 1

    def peek(self, wallet_address: str, network: str) -> Optional[int]:
        """Next nonce that would be allocated, if cached."""
        counter = self._counters.get((wallet_address.lower(), network.lower()))
        return counter.next_nonce if counter else None
