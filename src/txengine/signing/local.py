"""Local signing backend.

Private keys are stored on disk as encrypted V3 keystore files
(``<address>.json``) and decrypted into memory with the configured
passphrase. Suitable for development and hot wallets.

WARNING: The decrypted key lives in process memory. Use AWS or GCP KMS for
production wallets holding significant funds.
"""

import asyncio
import json
import logging
from functools import partial
from pathlib import Path
from typing import Optional

from eth_account import Account
from eth_keys import keys
from web3 import Web3

from txengine.errors import ConfigurationError
from txengine.signing.base import RecoverableSignature, WalletType

logger = logging.getLogger(__name__)


class LocalKeystore:
    """Directory of encrypted keystore files, one per wallet address."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, address: str) -> Path:
        return self.directory / f"{address.lower()}.json"

    def save(self, address: str, keystore: dict) -> Path:
        """Write a keystore file, refusing to overwrite an existing wallet."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(address)
        if path.exists():
            raise FileExistsError(f"Keystore for {address} already exists")
        path.write_text(json.dumps(keystore))
        logger.info(f"Saved keystore for {address}")
        return path

    def load(self, address: str) -> dict:
        """Read a keystore file.

        Raises:
            ConfigurationError: If no keystore exists for the address
        """
        path = self.path_for(address)
        if not path.exists():
            raise ConfigurationError(f"No local keystore found for {address}")
        return json.loads(path.read_text())

    def list_addresses(self) -> list[str]:
        if not self.directory.exists():
            return []
        addresses = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                address = json.loads(path.read_text()).get("address")
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable keystore {path}: {e}")
                continue
            if address:
                addresses.append(_checksum(address))
        return addresses


def _checksum(address: str) -> str:
    if not address.startswith("0x"):
        address = "0x" + address
    return Web3.to_checksum_address(address)


class LocalWalletBackend:
    """Signing backend holding one decrypted private key."""

    wallet_type = WalletType.LOCAL

    def __init__(self, private_key: bytes):
        self._key = keys.PrivateKey(private_key)
        self._address = self._key.public_key.to_checksum_address()

    @classmethod
    def from_keystore(cls, keystore: dict, passphrase: Optional[str]) -> "LocalWalletBackend":
        """Decrypt a V3 keystore.

        Raises:
            ConfigurationError: Missing passphrase or wrong passphrase
        """
        if not passphrase:
            raise ConfigurationError("LOCAL_WALLET_PASSPHRASE is required to unlock local wallets")
        try:
            private_key = Account.decrypt(keystore, passphrase)
        except ValueError as e:
            raise ConfigurationError("Could not decrypt local keystore", cause=e) from e
        return cls(bytes(private_key))

    @classmethod
    async def unlock(cls, keystore: dict, passphrase: Optional[str]) -> "LocalWalletBackend":
        """Decrypt a keystore on the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(cls.from_keystore, keystore, passphrase))

    async def get_address(self) -> str:
        return self._address

    async def sign_digest(self, digest: bytes) -> RecoverableSignature:
        signature = self._key.sign_msg_hash(digest)
        return RecoverableSignature(recovery_id=signature.v, r=signature.r, s=signature.s)

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"LocalWalletBackend(address={self._address})"
