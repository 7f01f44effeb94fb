"""Background submission of queued transactions.

Pending records are grouped by (wallet, network). Each group is drained in
FIFO order under the wallet's submission lock while other groups run
concurrently, bounded by MAX_CONCURRENT_WALLETS.

Per record:
1. Claim it (a claimed record can no longer be cancelled)
2. Resolve the signer for the record's wallet and network
3. Populate chain id, fees and gas
4. Allocate a nonce, sign, broadcast
5. Record nonce, hash and raw bytes and move to ``submitted``

Failures are classified by error kind: credential and availability errors are
retried with backoff, nonce conflicts force a resync and a fresh nonce,
everything else errors the record. A nonce conflict first re-sends the stored
bytes of the wallet's in-flight records, since a gap left by a lost broadcast
also shows up as a conflict.

An unexpected error releases the claim the way startup recovery would, so the
record is either queued again or tracked by the hash of its signed bytes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from web3 import Web3

from txengine.config import Settings, get_settings
from txengine.errors import (
    BackendUnavailableError,
    BroadcastRejectedError,
    ConfigurationError,
    EngineError,
    InvalidTransitionError,
    NonceConflictError,
)
from txengine.services.nonce_allocator import NonceAllocator
from txengine.signing.base import BroadcastResult, NetworkSigner, SignedTransaction
from txengine.signing.factory import SignerProvider
from txengine.store.models import QueuedTransaction, TransactionStatus
from txengine.store.queue_store import QueueStore
from txengine.utils.locks import wallet_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded retry settings for one submission."""
    max_nonce_retries: int = 3
    max_signing_attempts: int = 3
    max_rpc_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_nonce_retries=settings.max_nonce_retries,
            max_signing_attempts=settings.max_signing_attempts,
            max_rpc_attempts=settings.max_rpc_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            backoff_max_seconds=settings.retry_backoff_max_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_seconds * 2 ** attempt, self.backoff_max_seconds)


class Submitter:
    """Signs and broadcasts queued transactions."""

    def __init__(
        self,
        store: QueueStore,
        signers: SignerProvider,
        nonces: NonceAllocator,
        settings: Optional[Settings] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.signers = signers
        self.nonces = nonces
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_wallets)
        self._active: dict[tuple[str, str], asyncio.Task] = {}
        self._running = False

    # Dispatch

    def dispatch(self, records: list[QueuedTransaction]) -> list[asyncio.Task]:
        """Start one drain task per idle (wallet, network) group."""
        groups: dict[tuple[str, str], list[QueuedTransaction]] = {}
        for record in records:
            key = (record.wallet_address.lower(), record.network.lower())
            groups.setdefault(key, []).append(record)

        tasks = []
        for key, group in groups.items():
            if key in self._active:
                continue
            task = asyncio.create_task(self._drain(key, group))
            task.add_done_callback(self._drain_done)
            self._active[key] = task
            tasks.append(task)
        return tasks

    async def process_pending(self, limit: Optional[int] = None) -> int:
        """Submit everything currently pending and wait for it.

        Returns:
            Number of records processed
        """
        records = await self.store.list_pending(limit)
        if not records:
            return 0
        results = await asyncio.gather(*self.dispatch(records))
        return sum(results)

    async def _drain(self, key: tuple[str, str], records: list[QueuedTransaction]) -> int:
        wallet_address, network = key
        processed = 0
        try:
            async with self._semaphore:
                async with wallet_lock(wallet_address, network, operation="submit"):
                    for record in records:
                        try:
                            if await self.process(record) is not None:
                                processed += 1
                        except Exception as e:
                            logger.exception(f"{record.queue_id}: submission interrupted: {e}")
                            await self._release(record, wallet_address, network)
        finally:
            self._active.pop(key, None)
        return processed

    async def _release(self, record: QueuedTransaction, wallet_address: str, network: str) -> None:
        try:
            await self.store.release_claim(record.queue_id)
            await self._resync(wallet_address, network)
        except Exception as e:
            # Left claimed; the next startup recovers it
            logger.exception(f"{record.queue_id}: could not release claim: {e}")
            await self.nonces.invalidate(wallet_address, network)

    @staticmethod
    def _drain_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Submission task failed: {task.exception()!r}")

    async def run(self) -> None:
        """Poll the queue until stopped."""
        self._running = True
        await self.store.recover_stale_claims()
        logger.info(f"Starting submitter (interval: {self.settings.submitter_poll_interval}s)")

        while self._running:
            try:
                records = await self.store.list_pending()
                self.dispatch(records)
            except Exception as e:
                logger.exception(f"Submitter error: {e}")
            await asyncio.sleep(self.settings.submitter_poll_interval)

        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("Submitter stopped")

    def stop(self) -> None:
        self._running = False

    # Per-record state machine

    async def process(self, record: QueuedTransaction) -> Optional[QueuedTransaction]:
        """Take one queued record to ``submitted`` or ``errored``.

        Returns:
            The updated record, or None if it was cancelled or claimed elsewhere
        """
        if not await self.store.claim(record.queue_id):
            logger.debug(f"{record.queue_id}: not claimable, skipping")
            return None

        try:
            return await self._submit(record)
        except EngineError as e:
            return await self._fail(record, e)
        except (ValueError, TypeError, KeyError) as e:
            if isinstance(e, InvalidTransitionError):
                logger.error(f"{record.queue_id}: {e}")
                return await self.store.get(record.queue_id)
            error = BroadcastRejectedError(f"Invalid prepared transaction: {e}", cause=e)
            return await self._fail(record, error)

    async def _submit(self, record: QueuedTransaction) -> QueuedTransaction:
        network = record.network
        signer = await self._retry(
            lambda: self.signers.get_signer(network, record.wallet_address),
            self.policy.max_signing_attempts,
            f"{record.queue_id}: resolve signer",
        )
        if signer.address.lower() != record.wallet_address.lower():
            raise ConfigurationError(
                f"Signer address {signer.address} does not match {record.wallet_address}"
            )

        tx = await self._retry(
            lambda: signer.populate(record.payload),
            self.policy.max_rpc_attempts,
            f"{record.queue_id}: populate",
        )

        attempts = record.attempts or 0
        nonce_retries = 0
        while True:
            nonce = await self._retry(
                lambda: self.nonces.allocate(signer.address, network),
                self.policy.max_rpc_attempts,
                f"{record.queue_id}: allocate nonce",
            )
            try:
                signed = await self._retry(
                    lambda: signer.sign_transaction({**tx, "nonce": nonce}),
                    self.policy.max_signing_attempts,
                    f"{record.queue_id}: sign",
                )
                await self.store.update(
                    record.queue_id,
                    expected_status=TransactionStatus.QUEUED,
                    raw_transaction=signed.raw_hex,
                )
                result, sent = await self._broadcast(signer, signed, record.queue_id)
            except EngineError:
                await self._resync(signer.address, network)
                raise
            attempts += sent

            if result.success:
                return await self._mark_submitted(record, signed, attempts)

            error = result.error
            if isinstance(error, BackendUnavailableError):
                # Outcome unknown: the confirmation poller settles it by hash
                logger.warning(
                    f"{record.queue_id}: broadcast outcome unknown after {sent} attempts, "
                    f"tracking {signed.tx_hash}"
                )
                return await self._mark_submitted(record, signed, attempts)

            if isinstance(error, NonceConflictError):
                await self._rebroadcast_in_flight(signer, record.queue_id)
            await self._resync(signer.address, network)
            if isinstance(error, NonceConflictError) and nonce_retries < self.policy.max_nonce_retries:
                nonce_retries += 1
                logger.warning(
                    f"{record.queue_id}: nonce {nonce} conflict ({error.message}), "
                    f"retry {nonce_retries}/{self.policy.max_nonce_retries}"
                )
                await self.store.update(
                    record.queue_id, expected_status=TransactionStatus.QUEUED, attempts=attempts
                )
                continue

            return await self._fail(record, error, attempts=attempts)

    async def _broadcast(
        self, signer: NetworkSigner, signed: SignedTransaction, queue_id: str
    ) -> tuple[BroadcastResult, int]:
        """Send the same signed bytes until accepted or a non-transient error.

        Returns:
            (last result, number of sends)
        """
        result = None
        for attempt in range(self.policy.max_rpc_attempts):
            result = await signer.send(signed)
            if result.success or not isinstance(result.error, BackendUnavailableError):
                return result, attempt + 1
            if attempt < self.policy.max_rpc_attempts - 1:
                delay = self.policy.backoff(attempt)
                logger.warning(
                    f"{queue_id}: broadcast failed ({result.error.describe()}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
        return result, self.policy.max_rpc_attempts

    async def _rebroadcast_in_flight(self, signer: NetworkSigner, queue_id: str) -> None:
        """Re-send the stored bytes of the wallet's submitted records."""
        for record in await self.store.list_in_flight(signer.address, signer.network):
            if not record.raw_transaction:
                continue
            try:
                await signer.chain.send_raw_transaction(Web3.to_bytes(hexstr=record.raw_transaction))
                logger.info(f"{queue_id}: re-sent in-flight {record.tx_hash} (nonce {record.nonce})")
            except EngineError as e:
                logger.debug(f"{queue_id}: re-send of {record.tx_hash} skipped: {e.describe()}")

    async def _retry(self, func: Callable[[], Awaitable[T]], attempts: int, action: str) -> T:
        """Run ``func``, retrying retryable engine errors with backoff."""
        for attempt in range(attempts):
            try:
                return await func()
            except EngineError as e:
                if not e.retryable or attempt == attempts - 1:
                    raise
                delay = self.policy.backoff(attempt)
                logger.warning(f"{action} failed ({e.describe()}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise ConfigurationError(f"{action}: no attempts configured")

    async def _resync(self, wallet_address: str, network: str) -> None:
        try:
            await self.nonces.resync(wallet_address, network)
        except EngineError as e:
            logger.warning(f"Nonce resync failed for {wallet_address} on {network}: {e.describe()}")
            await self.nonces.invalidate(wallet_address, network)

    async def _mark_submitted(
        self, record: QueuedTransaction, signed: SignedTransaction, attempts: int
    ) -> QueuedTransaction:
        updated = await self.store.update(
            record.queue_id,
            expected_status=TransactionStatus.QUEUED,
            status=TransactionStatus.SUBMITTED,
            nonce=signed.nonce,
            tx_hash=signed.tx_hash,
            raw_transaction=signed.raw_hex,
            attempts=attempts,
            error_message=None,
        )
        logger.info(f"{record.queue_id}: submitted {signed.tx_hash} with nonce {signed.nonce}")
        return updated

    async def _fail(
        self, record: QueuedTransaction, error: EngineError, attempts: Optional[int] = None
    ) -> Optional[QueuedTransaction]:
        changes = {"status": TransactionStatus.ERRORED, "error_message": error.describe()}
        if attempts is not None:
            changes["attempts"] = attempts
        logger.error(f"{record.queue_id}: errored - {error.describe()}")
        try:
            return await self.store.update(
                record.queue_id, expected_status=TransactionStatus.QUEUED, **changes
            )
        except InvalidTransitionError as e:
            logger.error(f"{record.queue_id}: could not record failure: {e}")
            return await self.store.get(record.queue_id)
