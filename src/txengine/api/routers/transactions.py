"""Transaction queue API endpoints."""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from txengine.errors import ConfigurationError, EngineError, RecordNotFoundError, SimulationError
from txengine.services.transaction_queue import (
    TransactionQueue,
    get_transaction_queue,
    is_cancelled,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transaction", tags=["Transactions"])

IntLike = Union[int, str]


def get_queue() -> TransactionQueue:
    return get_transaction_queue()


# Request models
class SendTransactionRequest(BaseModel):
    """Prepared transaction to queue."""
    to: Optional[str] = None
    data: str = "0x"
    value: IntLike = 0
    gas: Optional[IntLike] = None
    gasPrice: Optional[IntLike] = None
    maxFeePerGas: Optional[IntLike] = None
    maxPriorityFeePerGas: Optional[IntLike] = None
    extension: Optional[str] = None

    def prepared_transaction(self) -> dict:
        return self.model_dump(exclude_none=True, exclude={"extension"})


def _raise_for(error: EngineError) -> None:
    if isinstance(error, (ConfigurationError, SimulationError)):
        raise HTTPException(status_code=400, detail=error.describe())
    raise HTTPException(status_code=503, detail=error.describe())


@router.post("/{network}/send")
async def send_transaction(
    network: str,
    request: SendTransactionRequest,
    simulate: bool = Query(False, description="Run eth_call before queueing"),
    x_idempotency_key: Optional[str] = Header(None),
    x_backend_wallet_address: Optional[str] = Header(None),
    queue: TransactionQueue = Depends(get_queue),
) -> dict:
    """Queue a prepared transaction for signing and broadcast."""
    prepared = request.prepared_transaction()
    try:
        if simulate:
            await queue.simulate(prepared, network, x_backend_wallet_address)
        queue_id = await queue.enqueue(
            prepared,
            network,
            idempotency_key=x_idempotency_key,
            wallet_address=x_backend_wallet_address,
            extension=request.extension,
        )
    except EngineError as e:
        logger.warning(f"Rejected transaction for {network}: {e.describe()}")
        _raise_for(e)

    return {"result": {"queue_id": queue_id}}


@router.get("/status/{queue_id}")
async def get_status(queue_id: str, queue: TransactionQueue = Depends(get_queue)) -> dict:
    """Current state of a queued transaction."""
    record = await queue.get_status(queue_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transaction {queue_id} not found")
    return {"result": record.to_dict()}


@router.get("/await/{queue_id}")
async def await_transaction(
    queue_id: str,
    timeout: Optional[float] = Query(None, ge=0, le=300),
    queue: TransactionQueue = Depends(get_queue),
) -> dict:
    """Wait until the transaction is mined, errored or cancelled, or the timeout passes."""
    record = await queue.await_submission(queue_id, timeout=timeout)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transaction {queue_id} not found")
    return {"result": record.to_dict()}


@router.post("/cancel/{queue_id}")
async def cancel_transaction(queue_id: str, queue: TransactionQueue = Depends(get_queue)) -> dict:
    """Cancel a transaction that has not been picked up for submission."""
    try:
        record = await queue.cancel(queue_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=f"Transaction {queue_id} not found")

    if is_cancelled(record):
        message = "Transaction cancelled successfully."
    else:
        message = f"Transaction cannot be cancelled in status {record.status}."
    return {"result": {"queue_id": queue_id, "status": record.status, "message": message}}
