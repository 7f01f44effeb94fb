"""SQLAlchemy models for the transaction queue."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on read)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransactionStatus(str, Enum):
    """Lifecycle of a queued transaction."""

    QUEUED = "queued"            # Accepted, waiting for the submitter
    SUBMITTED = "submitted"      # Broadcast accepted, hash known
    MINED = "mined"              # Receipt with enough confirmations
    ERRORED = "errored"          # Failed at any stage
    CANCELLED = "cancelled"      # Cancelled before being picked up


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.MINED, TransactionStatus.ERRORED, TransactionStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset] = {
    TransactionStatus.QUEUED: frozenset(
        {TransactionStatus.SUBMITTED, TransactionStatus.ERRORED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.SUBMITTED: frozenset({TransactionStatus.MINED, TransactionStatus.ERRORED}),
    TransactionStatus.MINED: frozenset(),
    TransactionStatus.ERRORED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    """Check a status change (staying in place is always allowed)."""
    current, new = TransactionStatus(current), TransactionStatus(new)
    return current == new or new in ALLOWED_TRANSITIONS[current]


class QueuedTransaction(Base):
    """A prepared transaction waiting for, or after, submission."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_status_id", "status", "id"),
        Index("ix_transactions_wallet_network_nonce", "wallet_address", "network", "nonce"),
    )

    # Autoincrement id gives insertion (FIFO) order
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    queue_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    network: Mapped[str] = mapped_column(String(50), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    extension: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    nonce: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[TransactionStatus] = mapped_column(
        String(20), default=TransactionStatus.QUEUED, nullable=False
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    raw_transaction: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    block_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, onupdate=utcnow)
    picked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    mined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Caller-facing view of the record."""
        return {
            "queue_id": self.queue_id,
            "idempotency_key": self.idempotency_key,
            "network": self.network,
            "wallet_address": self.wallet_address,
            "extension": self.extension,
            "status": TransactionStatus(self.status).value,
            "nonce": self.nonce,
            "tx_hash": self.tx_hash,
            "attempts": self.attempts,
            "error_message": self.error_message,
            "block_number": self.block_number,
            "created_at": _iso(self.created_at),
            "submitted_at": _iso(self.submitted_at),
            "mined_at": _iso(self.mined_at),
            "cancelled": TransactionStatus(self.status) == TransactionStatus.CANCELLED,
        }

    def __repr__(self) -> str:
        return f"QueuedTransaction(queue_id={self.queue_id}, status={self.status}, nonce={self.nonce})"


class WalletDetails(Base):
    """A backend wallet provisioned by this service."""

    __tablename__ = "wallet_details"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False, index=True)
    wallet_type: Mapped[str] = mapped_column(String(20), nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # AWS KMS
    aws_kms_key_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    aws_kms_arn: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # GCP KMS
    gcp_kms_key_ring_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gcp_kms_key_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gcp_kms_key_version_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gcp_kms_resource_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "type": self.wallet_type,
            "label": self.label,
            "aws_kms_key_id": self.aws_kms_key_id,
            "aws_kms_arn": self.aws_kms_arn,
            "gcp_kms_key_ring_id": self.gcp_kms_key_ring_id,
            "gcp_kms_key_id": self.gcp_kms_key_id,
            "gcp_kms_key_version_id": self.gcp_kms_key_version_id,
            "gcp_kms_resource_path": self.gcp_kms_resource_path,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
