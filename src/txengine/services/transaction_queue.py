"""Caller-facing transaction queue operations.

Callers enqueue a prepared transaction and immediately get a queue id. The
submitter signs and broadcasts it later; callers follow progress with
``get_status`` or ``await_submission``, which behave the same whichever
wallet backend is active.
"""

import asyncio
import logging
from typing import Any, Optional

from web3 import Web3

from txengine.config import Settings, get_settings
from txengine.errors import ConfigurationError, EngineError, RecordNotFoundError
from txengine.signing.base import build_transaction_dict
from txengine.signing.factory import SignerProvider, get_signer_provider
from txengine.store.models import QueuedTransaction, TransactionStatus
from txengine.store.queue_store import QueueStore

logger = logging.getLogger(__name__)


class TransactionQueue:
    """Enqueue, status, await, cancel and simulate."""

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        signers: Optional[SignerProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or QueueStore()
        self.signers = signers or get_signer_provider()

    async def _resolve_wallet(self, wallet_address: Optional[str]) -> str:
        if wallet_address:
            try:
                return Web3.to_checksum_address(wallet_address)
            except ValueError as e:
                raise ConfigurationError(f"Invalid backend wallet address: {wallet_address}") from e
        try:
            return await self.signers.default_address()
        except ConfigurationError:
            raise
        except EngineError as e:
            raise ConfigurationError("Could not resolve the default backend wallet", cause=e) from e

    async def enqueue(
        self,
        prepared_tx: dict[str, Any],
        network: str,
        idempotency_key: Optional[str] = None,
        wallet_address: Optional[str] = None,
        extension: Optional[str] = None,
    ) -> str:
        """Persist a prepared transaction for submission.

        Returns:
            Queue id (the existing one if ``idempotency_key`` was seen before)

        Raises:
            ConfigurationError: Unknown network or unusable wallet
        """
        network = network.lower()
        if not self.settings.get_rpc_url(network):
            raise ConfigurationError(f"No RPC URL configured for network '{network}'")

        address = await self._resolve_wallet(wallet_address)
        record, created = await self.store.insert(
            payload=dict(prepared_tx),
            network=network,
            wallet_address=address,
            idempotency_key=idempotency_key,
            extension=extension,
        )
        if created:
            logger.info(f"Enqueued {record.queue_id} ({extension or 'raw'}) for {address} on {network}")
        return record.queue_id

    async def get_status(self, queue_id: str) -> Optional[QueuedTransaction]:
        """Current record; terminal records are marked read."""
        record = await self.store.get(queue_id)
        if record is not None and record.is_terminal and record.read_at is None:
            await self.store.mark_read(queue_id)
        return record

    async def await_submission(
        self,
        queue_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Optional[QueuedTransaction]:
        """Poll until the record is terminal or ``timeout`` elapses.

        Never cancels the submission. Returns the last observed record (possibly
        still non-terminal), or None for an unknown queue id.
        """
        timeout = self.settings.await_default_timeout if timeout is None else timeout
        poll_interval = poll_interval or self.settings.await_poll_interval

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        record = await self.store.get(queue_id)
        if record is None:
            return None

        while not record.is_terminal:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(poll_interval, remaining))
            record = await self.store.get(queue_id)

        if record.is_terminal:
            await self.store.mark_read(queue_id)
        return record

    async def cancel(self, queue_id: str) -> QueuedTransaction:
        """Cancel a transaction the submitter has not picked up.

        Returns:
            The record; its status is ``cancelled`` only if cancellation won

        Raises:
            RecordNotFoundError: Unknown queue id
        """
        if not await self.store.cancel(queue_id):
            record = await self.store.get(queue_id)
            if record is None:
                raise RecordNotFoundError(queue_id)
            logger.info(f"{queue_id}: cannot cancel, status is {record.status}")
            return record
        return await self.store.get(queue_id)

    async def simulate(
        self,
        prepared_tx: dict[str, Any],
        network: str,
        wallet_address: Optional[str] = None,
    ) -> str:
        """Run the transaction with eth_call from the backend wallet.

        Raises:
            SimulationError: The call reverted
        """
        signer = await self.signers.get_signer(network.lower(), wallet_address)
        tx = build_transaction_dict(prepared_tx)
        tx["from"] = signer.address
        return await signer.chain.call(tx)


def is_cancelled(record: QueuedTransaction) -> bool:
    return TransactionStatus(record.status) == TransactionStatus.CANCELLED


_queue_instance: Optional[TransactionQueue] = None


def get_transaction_queue() -> TransactionQueue:
    """Get the process-wide transaction queue."""
    global _queue_instance
    if _queue_instance is None:
        _queue_instance = TransactionQueue()
    return _queue_instance


def reset_transaction_queue() -> None:
    """Reset the queue instance (for testing)."""
    global _queue_instance
    _queue_instance = None
