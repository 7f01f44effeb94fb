"""Durable queue of transaction records.

All mutation of ``QueuedTransaction`` rows goes through this class so status
transitions are validated in one place:

    queued -> submitted -> mined | errored
    queued -> errored | cancelled

Claim and cancel are conditional updates, so a record can be cancelled only
while no submitter has picked it up.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import Web3

from txengine.errors import InvalidTransitionError, RecordNotFoundError
from txengine.signing.base import decode_signed_nonce
from txengine.store.database import session_scope
from txengine.store.models import (
    QueuedTransaction,
    TransactionStatus,
    can_transition,
    utcnow,
)
from txengine.store.repository import TransactionRepository

logger = logging.getLogger(__name__)

# Status -> timestamp column stamped on entry
STATUS_TIMESTAMPS = {
    TransactionStatus.SUBMITTED: "submitted_at",
    TransactionStatus.MINED: "mined_at",
}


class QueueStore:
    """Persistent transaction queue backed by SQLAlchemy."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory
        self._insert_lock = asyncio.Lock()

    def _session(self):
        return session_scope(self._session_factory)

    async def insert(
        self,
        payload: dict[str, Any],
        network: str,
        wallet_address: str,
        idempotency_key: Optional[str] = None,
        extension: Optional[str] = None,
    ) -> tuple[QueuedTransaction, bool]:
        """Insert a queued record.

        A repeated ``idempotency_key`` returns the existing record.

        Returns:
            (record, created)
        """
        async with self._insert_lock:
            if idempotency_key:
                existing = await self.get_by_idempotency_key(idempotency_key)
                if existing is not None:
                    logger.info(f"Idempotent enqueue hit for key {idempotency_key}")
                    return existing, False

            record = QueuedTransaction(
                queue_id=str(uuid.uuid4()),
                idempotency_key=idempotency_key,
                network=network,
                wallet_address=wallet_address,
                extension=extension,
                payload=payload,
                status=TransactionStatus.QUEUED.value,
                attempts=0,
            )
            try:
                async with self._session() as session:
                    await TransactionRepository(session).add(record)
            except IntegrityError:
                # Another process inserted the same key first
                if idempotency_key:
                    existing = await self.get_by_idempotency_key(idempotency_key)
                    if existing is not None:
                        return existing, False
                raise

        logger.debug(f"Queued {record.queue_id} for {wallet_address} on {network}")
        return record, True

    async def get(self, queue_id: str) -> Optional[QueuedTransaction]:
        """Look up a record (archived records included)."""
        async with self._session() as session:
            return await TransactionRepository(session).get_by_queue_id(queue_id)

    async def get_by_idempotency_key(self, key: str) -> Optional[QueuedTransaction]:
        async with self._session() as session:
            return await TransactionRepository(session).get_by_idempotency_key(key)

    async def list_pending(self, limit: Optional[int] = None) -> list[QueuedTransaction]:
        """Unclaimed queued records in insertion order."""
        async with self._session() as session:
            return await TransactionRepository(session).list_by_status(
                TransactionStatus.QUEUED, limit=limit, unpicked_only=True
            )

    async def list_submitted(self) -> list[QueuedTransaction]:
        async with self._session() as session:
            return await TransactionRepository(session).list_by_status(TransactionStatus.SUBMITTED)

    async def list_in_flight(self, wallet_address: str, network: str) -> list[QueuedTransaction]:
        """Submitted records of one wallet on one network, lowest nonce first."""
        async with self._session() as session:
            return await TransactionRepository(session).list_in_flight(wallet_address, network)

    async def next_nonce_floor(self, wallet_address: str, network: str) -> Optional[int]:
        """Lowest nonce not held by a submitted record, or None if none are submitted."""
        async with self._session() as session:
            highest = await TransactionRepository(session).max_in_flight_nonce(wallet_address, network)
        return None if highest is None else highest + 1

    async def update(
        self,
        queue_id: str,
        expected_status: Optional[TransactionStatus] = None,
        **changes: Any,
    ) -> QueuedTransaction:
        """Apply changes to a record, validating the status transition.

        Raises:
            RecordNotFoundError: Unknown queue id
            InvalidTransitionError: Unexpected current status, disallowed
                transition, or an attempt to overwrite tx_hash
        """
        async with self._session() as session:
            repo = TransactionRepository(session)
            record = await repo.get_by_queue_id(queue_id)
            if record is None:
                raise RecordNotFoundError(queue_id)

            current = TransactionStatus(record.status)
            if expected_status is not None and current != expected_status:
                raise InvalidTransitionError(
                    f"{queue_id} is {current.value}, expected {expected_status.value}"
                )

            new_status = changes.get("status")
            if new_status is not None:
                new_status = TransactionStatus(new_status)
                if not can_transition(current, new_status):
                    raise InvalidTransitionError(
                        f"{queue_id}: {current.value} -> {new_status.value} not allowed"
                    )
                changes["status"] = new_status.value
                column = STATUS_TIMESTAMPS.get(new_status)
                if column and new_status != current:
                    changes.setdefault(column, utcnow())

            tx_hash = changes.get("tx_hash")
            if record.tx_hash and tx_hash and tx_hash.lower() != record.tx_hash.lower():
                raise InvalidTransitionError(f"{queue_id}: tx_hash already set to {record.tx_hash}")

            if not await repo.conditional_update(queue_id, changes, statuses=[current]):
                raise InvalidTransitionError(f"{queue_id} changed concurrently")
            updated = await repo.get_by_queue_id(queue_id)

        if new_status is not None and new_status != current:
            logger.info(f"{queue_id}: {current.value} -> {new_status.value}")
        return updated

    async def claim(self, queue_id: str) -> bool:
        """Atomically mark a queued record as picked by a submitter."""
        async with self._session() as session:
            return await TransactionRepository(session).conditional_update(
                queue_id,
                {"picked_at": utcnow()},
                statuses=[TransactionStatus.QUEUED],
                unpicked_only=True,
            )

    async def cancel(self, queue_id: str) -> bool:
        """Cancel a record that no submitter has picked up yet.

        Returns:
            True if the record is now cancelled
        """
        async with self._session() as session:
            cancelled = await TransactionRepository(session).conditional_update(
                queue_id,
                {"status": TransactionStatus.CANCELLED.value},
                statuses=[TransactionStatus.QUEUED],
                unpicked_only=True,
            )
        if cancelled:
            logger.info(f"{queue_id}: queued -> cancelled")
        return cancelled

    async def mark_read(self, queue_id: str) -> None:
        async with self._session() as session:
            await TransactionRepository(session).mark_read(queue_id)

    async def archive_expired(self, retention: timedelta) -> int:
        """Archive terminal records that were read or outlived the retention window."""
        async with self._session() as session:
            count = await TransactionRepository(session).archive(utcnow() - retention)
        if count:
            logger.info(f"Archived {count} transaction records")
        return count

    async def release_claim(self, queue_id: str) -> Optional[QueuedTransaction]:
        """Settle one record whose submission stopped part way.

        Same handling as ``recover_stale_claims`` for a single record.

        Returns:
            The record after release, or None if it was no longer a claimed
            queued record
        """
        async with self._session() as session:
            repo = TransactionRepository(session)
            record = await repo.get_by_queue_id(queue_id)
            if record is None or record.status != TransactionStatus.QUEUED.value or record.picked_at is None:
                return None
            values = _unfinished_claim_values(record)
            if not await repo.conditional_update(queue_id, values, statuses=[TransactionStatus.QUEUED]):
                return None
            released = await repo.get_by_queue_id(queue_id)
        logger.warning(f"{queue_id}: released interrupted claim as {released.status}")
        return released

    async def recover_stale_claims(self) -> int:
        """Handle records a previous process claimed but never finished.

        Unsigned records go back to the queue. Signed records may already be
        on chain, so they become ``submitted`` under the hash of their stored
        bytes and the confirmation poller settles them. Sending them again
        with a new nonce could execute the transfer twice.
        """
        recovered = 0
        async with self._session() as session:
            repo = TransactionRepository(session)
            for record in await repo.list_stale_claims():
                values = _unfinished_claim_values(record)
                if await repo.conditional_update(
                    record.queue_id, values, statuses=[TransactionStatus.QUEUED]
                ):
                    recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted transaction records")
        return recovered


def _unfinished_claim_values(record: QueuedTransaction) -> dict[str, Any]:
    """Column values for a claimed record whose submitter went away."""
    if not record.raw_transaction:
        return {"picked_at": None}
    raw = Web3.to_bytes(hexstr=record.raw_transaction)
    return {
        "status": TransactionStatus.SUBMITTED.value,
        "tx_hash": Web3.to_hex(Web3.keccak(raw)),
        "nonce": decode_signed_nonce(raw),
        "submitted_at": utcnow(),
        "error_message": None,
    }
