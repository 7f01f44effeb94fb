"""Repositories for queue and wallet records."""

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from txengine.store.models import (
    TERMINAL_STATUSES,
    QueuedTransaction,
    TransactionStatus,
    WalletDetails,
    utcnow,
)


class TransactionRepository:
    """Database operations on queued transactions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: QueuedTransaction) -> QueuedTransaction:
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_queue_id(self, queue_id: str) -> Optional[QueuedTransaction]:
        stmt = (
            select(QueuedTransaction)
            .where(QueuedTransaction.queue_id == queue_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> Optional[QueuedTransaction]:
        stmt = select(QueuedTransaction).where(QueuedTransaction.idempotency_key == key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        status: TransactionStatus,
        limit: Optional[int] = None,
        unpicked_only: bool = False,
    ) -> list[QueuedTransaction]:
        """Records in a status, oldest first."""
        stmt = (
            select(QueuedTransaction)
            .where(QueuedTransaction.status == status.value)
            .order_by(QueuedTransaction.id)
        )
        if unpicked_only:
            stmt = stmt.where(QueuedTransaction.picked_at.is_(None))
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def _for_wallet(self, stmt, wallet_address: str, network: str):
        return stmt.where(
            func.lower(QueuedTransaction.wallet_address) == wallet_address.lower(),
            func.lower(QueuedTransaction.network) == network.lower(),
        )

    async def list_in_flight(self, wallet_address: str, network: str) -> list[QueuedTransaction]:
        """Submitted records of one wallet on one network, lowest nonce first."""
        stmt = self._for_wallet(
            select(QueuedTransaction).where(
                QueuedTransaction.status == TransactionStatus.SUBMITTED.value,
                QueuedTransaction.nonce.is_not(None),
            ),
            wallet_address,
            network,
        ).order_by(QueuedTransaction.nonce)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def max_in_flight_nonce(self, wallet_address: str, network: str) -> Optional[int]:
        """Highest nonce held by a submitted record of one wallet on one network."""
        stmt = self._for_wallet(
            select(func.max(QueuedTransaction.nonce)).where(
                QueuedTransaction.status == TransactionStatus.SUBMITTED.value
            ),
            wallet_address,
            network,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_stale_claims(self) -> list[QueuedTransaction]:
        """Queued records claimed by a worker that never finished them."""
        stmt = (
            select(QueuedTransaction)
            .where(
                QueuedTransaction.status == TransactionStatus.QUEUED.value,
                QueuedTransaction.picked_at.is_not(None),
            )
            .order_by(QueuedTransaction.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def conditional_update(
        self,
        queue_id: str,
        values: dict[str, Any],
        statuses: Iterable[TransactionStatus],
        unpicked_only: bool = False,
    ) -> bool:
        """Apply ``values`` only while the record is in one of ``statuses``.

        Returns:
            True if exactly one row changed
        """
        stmt = (
            update(QueuedTransaction)
            .where(
                QueuedTransaction.queue_id == queue_id,
                QueuedTransaction.status.in_([s.value for s in statuses]),
            )
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if unpicked_only:
            stmt = stmt.where(QueuedTransaction.picked_at.is_(None))
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_read(self, queue_id: str) -> None:
        stmt = (
            update(QueuedTransaction)
            .where(QueuedTransaction.queue_id == queue_id, QueuedTransaction.read_at.is_(None))
            .values(read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def archive(self, cutoff: datetime) -> int:
        """Stamp archived_at on terminal records read once or older than cutoff."""
        stmt = (
            update(QueuedTransaction)
            .where(
                QueuedTransaction.archived_at.is_(None),
                QueuedTransaction.status.in_([s.value for s in TERMINAL_STATUSES]),
                (QueuedTransaction.read_at.is_not(None)) | (QueuedTransaction.updated_at < cutoff),
            )
            .values(archived_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class WalletRepository:
    """Database operations on provisioned backend wallets."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, details: WalletDetails) -> WalletDetails:
        self.session.add(details)
        await self.session.flush()
        return details

    async def get(self, address: str) -> Optional[WalletDetails]:
        stmt = select(WalletDetails).where(WalletDetails.address == address)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, wallet_type: Optional[str] = None) -> list[WalletDetails]:
        stmt = select(WalletDetails).order_by(WalletDetails.id)
        if wallet_type:
            stmt = stmt.where(WalletDetails.wallet_type == wallet_type)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
