"""Persistence for queued transactions and provisioned wallets."""

from txengine.store.database import close_db, get_db, init_db
from txengine.store.models import (
    TERMINAL_STATUSES,
    QueuedTransaction,
    TransactionStatus,
    WalletDetails,
)
from txengine.store.queue_store import QueueStore
from txengine.store.repository import TransactionRepository, WalletRepository

__all__ = [
    # Models
    "QueuedTransaction",
    "WalletDetails",
    # Enums
    "TransactionStatus",
    "TERMINAL_STATUSES",
    # Database
    "get_db",
    "init_db",
    "close_db",
    "QueueStore",
    "TransactionRepository",
    "WalletRepository",
]
