"""Signer factory.

Creates the signing backend for the wallet backend type configured at
startup. The type is fixed for the process lifetime; backends are cached per
wallet address and network signers per (address, network).
"""

import logging
from typing import Awaitable, Callable, Optional

from txengine.chain.rpc import get_chain_client
from txengine.config import Settings, get_settings
from txengine.errors import ConfigurationError, EngineError
from txengine.signing.base import NetworkSigner, SigningBackend, WalletType
from txengine.store.database import get_db
from txengine.store.models import WalletDetails
from txengine.store.repository import WalletRepository

logger = logging.getLogger(__name__)

WalletLookup = Callable[[str], Awaitable[Optional[WalletDetails]]]


async def lookup_wallet_details(address: str) -> Optional[WalletDetails]:
    """Provisioning record for a backend wallet, if one exists."""
    async with get_db() as session:
        return await WalletRepository(session).get(address)


def _default_local_address(settings: Settings) -> str:
    from txengine.signing.local import LocalKeystore

    if settings.local_wallet_address:
        return settings.local_wallet_address
    addresses = LocalKeystore(settings.local_wallet_dir).list_addresses()
    if len(addresses) == 1:
        return addresses[0]
    if not addresses:
        raise ConfigurationError(
            f"No local wallets found in {settings.local_wallet_dir}. Create a backend wallet first"
        )
    raise ConfigurationError(
        "Several local wallets exist; set LOCAL_WALLET_ADDRESS or pass x-backend-wallet-address"
    )


async def build_backend(
    settings: Settings,
    wallet_address: Optional[str] = None,
    details: Optional[WalletDetails] = None,
) -> SigningBackend:
    """Construct the backend for the configured wallet type.

    Raises:
        ConfigurationError: Backend not configured, or wallet belongs to
            another backend type
    """
    settings.validate_wallet_backend()
    wallet_type = settings.wallet_backend

    if details is not None and details.wallet_type != wallet_type.value:
        raise ConfigurationError(
            f"Wallet {details.address} is a {details.wallet_type} wallet but "
            f"the server is configured for {wallet_type.value}"
        )

    if wallet_type == WalletType.LOCAL:
        from txengine.signing.local import LocalKeystore, LocalWalletBackend

        address = wallet_address or _default_local_address(settings)
        keystore = LocalKeystore(settings.local_wallet_dir)
        return await LocalWalletBackend.unlock(
            keystore.load(address), settings.local_wallet_passphrase
        )

    if wallet_type == WalletType.AWS_KMS:
        from txengine.signing.aws_kms import AwsKmsBackend

        key_id = details.aws_kms_key_id if details else settings.aws_kms_key_id
        if not key_id:
            raise ConfigurationError(
                "AWS_KMS_KEY_ID is not defined and the wallet was not provisioned here"
            )
        return AwsKmsBackend(key_id, region=settings.aws_region)

    if wallet_type == WalletType.GCP_KMS:
        from txengine.signing.gcp_kms import GcpKmsBackend

        if details is not None and details.gcp_kms_resource_path:
            return GcpKmsBackend(details.gcp_kms_resource_path, settings=settings)
        return GcpKmsBackend.from_settings(settings)

    raise ConfigurationError(f"Unsupported wallet backend: {wallet_type}")


class SignerProvider:
    """Resolves network signers for backend wallets."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chain_factory: Callable = get_chain_client,
        backend_factory: Callable[..., Awaitable[SigningBackend]] = build_backend,
        wallet_lookup: WalletLookup = lookup_wallet_details,
    ):
        self.settings = settings or get_settings()
        self._chain_factory = chain_factory
        self._backend_factory = backend_factory
        self._wallet_lookup = wallet_lookup
        self._backends: dict[Optional[str], SigningBackend] = {}
        self._signers: dict[tuple[str, str], NetworkSigner] = {}

    @property
    def wallet_type(self) -> WalletType:
        return self.settings.wallet_backend

    async def get_backend(self, wallet_address: Optional[str] = None) -> SigningBackend:
        """Backend for a wallet (the default wallet when no address is given).

        Raises:
            ConfigurationError: Not configured for this wallet
            CredentialError, BackendUnavailableError: KMS lookup failed
        """
        key = wallet_address.lower() if wallet_address else None
        if key in self._backends:
            return self._backends[key]

        details = await self._wallet_lookup(wallet_address) if wallet_address else None
        backend = await self._backend_factory(self.settings, wallet_address, details)
        address = await backend.get_address()
        if wallet_address and address.lower() != wallet_address.lower():
            raise ConfigurationError(
                f"Backend key resolves to {address}, not requested wallet {wallet_address}"
            )

        backend = self._backends.setdefault(key, backend)
        self._backends.setdefault(address.lower(), backend)
        logger.info(f"Initialized {self.wallet_type.value} backend for {address}")
        return backend

    async def get_signer(self, network: str, wallet_address: Optional[str] = None) -> NetworkSigner:
        """Signer bound to a wallet and network."""
        backend = await self.get_backend(wallet_address)
        address = await backend.get_address()
        key = (address.lower(), network.lower())
        signer = self._signers.get(key)
        if signer is None:
            chain = self._chain_factory(network, self.settings)
            signer = self._signers.setdefault(
                key, NetworkSigner(backend, address, network.lower(), chain)
            )
        return signer

    async def default_address(self) -> str:
        backend = await self.get_backend()
        return await backend.get_address()

    async def get_info(self) -> dict:
        """Backend type, health and resolved wallets."""
        info = {"type": self.wallet_type.value}
        try:
            backend = await self.get_backend()
            info["healthy"] = await backend.health_check()
            info["class"] = backend.__class__.__name__
        except EngineError as e:
            info["healthy"] = False
            info["error"] = e.describe()
        info["wallets"] = sorted({await b.get_address() for b in self._backends.values()})
        return info


_provider_instance: Optional[SignerProvider] = None


def get_signer_provider() -> SignerProvider:
    """Get the process-wide signer provider."""
    global _provider_instance
    if _provider_instance is None:
        _provider_instance = SignerProvider()
        logger.info(f"Initializing {_provider_instance.wallet_type.value} signer provider")
    return _provider_instance


def reset_signer_provider() -> None:
    """Reset the provider instance (for testing)."""
    global _provider_instance
    _provider_instance = None
