"""Backend wallet provisioning.

Creates a new signing key in the active custody backend and records it in
``wallet_details`` so later submissions for that address can find the key:
- local: random key encrypted to a V3 keystore in LOCAL_WALLET_DIR
- aws-kms: ECC_SECG_P256K1 SIGN_VERIFY key
- gcp-kms: EC_SIGN_SECP256K1_SHA256 HSM key in the configured key ring
"""

import asyncio
import logging
from functools import partial
from typing import Any, Optional

from eth_account import Account

from txengine.config import Settings, get_settings
from txengine.errors import ConfigurationError
from txengine.signing.base import WalletType
from txengine.store.database import get_db
from txengine.store.models import WalletDetails
from txengine.store.repository import WalletRepository

logger = logging.getLogger(__name__)


async def _save_details(details: WalletDetails) -> WalletDetails:
    async with get_db() as session:
        await WalletRepository(session).add(details)
    logger.info(f"Provisioned {details.wallet_type} wallet {details.address}")
    return details


async def create_local_wallet(settings: Settings, label: Optional[str] = None) -> WalletDetails:
    """Generate a key and store it as an encrypted keystore file."""
    from txengine.signing.local import LocalKeystore

    if settings.wallet_backend != WalletType.LOCAL:
        raise ConfigurationError("Server was not configured for local wallet creation.")
    if not settings.local_wallet_passphrase:
        raise ConfigurationError("LOCAL_WALLET_PASSPHRASE is not defined. Please check .env file")

    account = Account.create()
    # scrypt runs on the thread pool
    loop = asyncio.get_running_loop()
    keystore = await loop.run_in_executor(
        None,
        partial(
            Account.encrypt,
            account.key,
            settings.local_wallet_passphrase,
            iterations=settings.local_keystore_iterations,
        ),
    )
    LocalKeystore(settings.local_wallet_dir).save(account.address, keystore)

    return await _save_details(
        WalletDetails(address=account.address, wallet_type=WalletType.LOCAL.value, label=label)
    )


async def create_aws_kms_wallet(
    settings: Settings, label: Optional[str] = None, client: Any = None
) -> WalletDetails:
    """Create a KMS key and derive its address."""
    from txengine.signing.aws_kms import AwsKmsBackend, create_aws_kms_key

    if settings.wallet_backend != WalletType.AWS_KMS:
        raise ConfigurationError("Server was not configured for AWS KMS wallet creation.")
    settings.validate_wallet_backend()

    key = await create_aws_kms_key(
        description=label or "txengine backend wallet",
        region=settings.aws_region,
        client=client,
    )
    backend = AwsKmsBackend(key["key_id"], region=settings.aws_region, client=client)
    address = await backend.get_address()

    return await _save_details(
        WalletDetails(
            address=address,
            wallet_type=WalletType.AWS_KMS.value,
            label=label,
            aws_kms_key_id=key["key_id"],
            aws_kms_arn=key["arn"],
        )
    )


async def create_gcp_kms_wallet(
    settings: Settings, label: Optional[str] = None, client: Any = None
) -> WalletDetails:
    """Create a crypto key in the configured key ring and derive the address of version 1."""
    from txengine.signing.gcp_kms import GcpKmsBackend, create_gcp_kms_key

    if settings.wallet_backend != WalletType.GCP_KMS:
        raise ConfigurationError("Server was not configured for GCP KMS wallet creation.")

    key = await create_gcp_kms_key(settings, client=client)
    backend = GcpKmsBackend(key["key_version_name"], client=client, settings=settings)
    address = await backend.get_address()

    return await _save_details(
        WalletDetails(
            address=address,
            wallet_type=WalletType.GCP_KMS.value,
            label=label,
            gcp_kms_key_ring_id=settings.gcp_key_ring_id,
            gcp_kms_key_id=key["key_id"],
            gcp_kms_key_version_id="1",
            gcp_kms_resource_path=key["key_version_name"],
        )
    )


async def create_backend_wallet(
    label: Optional[str] = None,
    settings: Optional[Settings] = None,
    client: Any = None,
) -> WalletDetails:
    """Provision a wallet in whichever backend this process is configured for."""
    settings = settings or get_settings()
    wallet_type = settings.wallet_backend

    if wallet_type == WalletType.LOCAL:
        return await create_local_wallet(settings, label)
    if wallet_type == WalletType.AWS_KMS:
        return await create_aws_kms_wallet(settings, label, client=client)
    if wallet_type == WalletType.GCP_KMS:
        return await create_gcp_kms_wallet(settings, label, client=client)
    raise ConfigurationError(f"Unsupported wallet backend: {wallet_type}")


async def list_backend_wallets(settings: Optional[Settings] = None) -> list[WalletDetails]:
    """Wallets provisioned for the active backend type."""
    settings = settings or get_settings()
    async with get_db() as session:
        return await WalletRepository(session).list_all(settings.wallet_backend.value)
