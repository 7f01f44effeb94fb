"""Confirmation polling for submitted transactions.

Moves ``submitted`` records to ``mined`` once their receipt has enough
confirmations, or to ``errored`` when the receipt shows a revert or no
receipt appears within CONFIRMATION_TIMEOUT_SECONDS. Also archives old
terminal records.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Callable, Optional

from txengine.chain.rpc import get_chain_client
from txengine.config import Settings, get_settings
from txengine.errors import BackendUnavailableError, ConfigurationError, ConfirmationTimeoutError
from txengine.services.nonce_allocator import NonceAllocator
from txengine.store.models import QueuedTransaction, TransactionStatus, utcnow
from txengine.store.queue_store import QueueStore
from txengine.utils.locks import LockTimeoutError, wallet_lock

logger = logging.getLogger(__name__)

# Seconds between archival passes
ARCHIVE_INTERVAL = 300


class ConfirmationPoller:
    """Finalizes submitted transactions from chain receipts."""

    def __init__(
        self,
        store: QueueStore,
        nonces: NonceAllocator,
        settings: Optional[Settings] = None,
        chain_factory: Callable = get_chain_client,
    ):
        self.store = store
        self.nonces = nonces
        self.settings = settings or get_settings()
        self._chain_factory = chain_factory
        self._running = False
        self._last_archive = 0.0

    async def poll_once(self) -> int:
        """Check every submitted record once.

        Returns:
            Number of records that reached a terminal status
        """
        records = await self.store.list_submitted()
        heads: dict[str, Optional[int]] = {}
        finalized = 0

        for record in records:
            network = record.network
            if network not in heads:
                heads[network] = await self._head_block(network)
            if heads[network] is None:
                continue
            updated = await self.check(record, heads[network])
            if updated is not None and updated.is_terminal:
                finalized += 1
        return finalized

    async def _head_block(self, network: str) -> Optional[int]:
        try:
            return await self._chain_factory(network, self.settings).block_number()
        except (BackendUnavailableError, ConfigurationError) as e:
            logger.warning(f"Could not read head block on {network}: {e.describe()}")
            return None

    async def check(self, record: QueuedTransaction, head_block: int) -> Optional[QueuedTransaction]:
        """Settle one submitted record if its receipt allows it."""
        chain = self._chain_factory(record.network, self.settings)
        try:
            receipt = await chain.get_transaction_receipt(record.tx_hash)
        except BackendUnavailableError as e:
            logger.warning(f"{record.queue_id}: receipt lookup failed: {e.describe()}")
            return None

        if receipt is None or receipt.get("blockNumber") is None:
            return await self._check_timeout(record)

        confirmations = head_block - receipt["blockNumber"] + 1
        if confirmations < self.settings.confirmations_required:
            logger.debug(
                f"{record.queue_id}: {confirmations}/{self.settings.confirmations_required} confirmations"
            )
            return None

        if receipt["status"] == 1:
            return await self.store.update(
                record.queue_id,
                expected_status=TransactionStatus.SUBMITTED,
                status=TransactionStatus.MINED,
                block_number=receipt["blockNumber"],
            )

        logger.warning(f"{record.queue_id}: {record.tx_hash} reverted in block {receipt['blockNumber']}")
        return await self.store.update(
            record.queue_id,
            expected_status=TransactionStatus.SUBMITTED,
            status=TransactionStatus.ERRORED,
            block_number=receipt["blockNumber"],
            error_message=f"Transaction reverted in block {receipt['blockNumber']}",
        )

    async def _check_timeout(self, record: QueuedTransaction) -> Optional[QueuedTransaction]:
        submitted_at = record.submitted_at or record.updated_at
        age = (utcnow() - submitted_at).total_seconds()
        if age < self.settings.confirmation_timeout_seconds:
            return None

        error = ConfirmationTimeoutError(
            f"No receipt for {record.tx_hash} after {int(age)}s"
        )
        updated = await self.store.update(
            record.queue_id,
            expected_status=TransactionStatus.SUBMITTED,
            status=TransactionStatus.ERRORED,
            error_message=error.describe(),
        )
        # The dropped nonce must be reused or the wallet stalls
        await self._resync(record.wallet_address, record.network)
        return updated

    async def _resync(self, wallet_address: str, network: str) -> None:
        """Resync under the wallet lock, or drop the counter if the wallet stays busy."""
        try:
            async with wallet_lock(
                wallet_address,
                network,
                timeout=self.settings.resync_lock_timeout_seconds,
                operation="resync",
            ):
                await self.nonces.resync(wallet_address, network)
        except LockTimeoutError:
            logger.warning(
                f"{wallet_address} on {network} busy, nonce counter will be reseeded on next use"
            )
            await self.nonces.invalidate(wallet_address, network)
        except BackendUnavailableError as e:
            logger.warning(f"Nonce resync failed: {e.describe()}")
            await self.nonces.invalidate(wallet_address, network)

    async def archive(self) -> int:
        retention = timedelta(hours=self.settings.record_retention_hours)
        return await self.store.archive_expired(retention)

    async def run(self) -> None:
        """Poll receipts until stopped."""
        self._running = True
        logger.info(
            f"Starting confirmation poller (interval: {self.settings.confirmation_poll_interval}s)"
        )
        while self._running:
            try:
                finalized = await self.poll_once()
                if finalized:
                    logger.info(f"Finalized {finalized} transaction(s)")
                if time.monotonic() - self._last_archive >= ARCHIVE_INTERVAL:
                    self._last_archive = time.monotonic()
                    await self.archive()
            except Exception as e:
                logger.exception(f"Confirmation poller error: {e}")
            await asyncio.sleep(self.settings.confirmation_poll_interval)
        logger.info("Confirmation poller stopped")

    def stop(self) -> None:
        self._running = False
