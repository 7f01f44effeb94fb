"""Backend wallet API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from txengine.errors import ConfigurationError, EngineError
from txengine.wallets.provisioning import create_backend_wallet, list_backend_wallets

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backend-wallet", tags=["Backend Wallet"])


class CreateWalletRequest(BaseModel):
    """Optional label for a new backend wallet."""
    label: Optional[str] = None


@router.post("/create")
async def create_wallet(request: Optional[CreateWalletRequest] = None) -> dict:
    """Create a wallet in the configured custody backend."""
    label = request.label if request else None
    try:
        details = await create_backend_wallet(label=label)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.describe())
    except EngineError as e:
        logger.error(f"Wallet creation failed: {e.describe()}")
        raise HTTPException(status_code=503, detail=e.describe())

    return {
        "result": {
            "wallet_address": details.address,
            "type": details.wallet_type,
            "status": "success",
        }
    }


@router.get("/get-all")
async def get_all_wallets() -> dict:
    """List wallets provisioned for the configured backend."""
    wallets = await list_backend_wallets()
    return {"result": [wallet.to_dict() for wallet in wallets]}
