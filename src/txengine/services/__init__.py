"""Transaction submission services."""

from txengine.services.confirmation_poller import ConfirmationPoller
from txengine.services.nonce_allocator import NonceAllocator, NonceCounter
from txengine.services.submitter import RetryPolicy, Submitter
from txengine.services.transaction_queue import (
    TransactionQueue,
    get_transaction_queue,
    reset_transaction_queue,
)

__all__ = [
    "ConfirmationPoller",
    "NonceAllocator",
    "NonceCounter",
    "RetryPolicy",
    "Submitter",
    "TransactionQueue",
    "get_transaction_queue",
    "reset_transaction_queue",
]
