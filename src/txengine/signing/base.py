"""Base interfaces for transaction signing.

Signing flow:
1. Populate the prepared transaction (chain id, fees, gas)
2. Serialize the unsigned transaction and hash it
3. Backend signs the 32-byte digest (raw key never leaves the backend)
4. Recovery id is attached and the signed transaction is encoded
5. Signed bytes are broadcast

Backends only need to produce an address and a recoverable signature over a
digest. Everything chain-specific lives in ``NetworkSigner`` so queue, nonce and
status handling behave the same whichever backend is active.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePublicKey
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_public_key,
    load_pem_public_key,
)
from eth_account._utils.legacy_transactions import (
    Transaction,
    encode_transaction,
    serializable_unsigned_transaction_from_dict,
)
from eth_account.typed_transactions import TypedTransaction
from eth_keys import keys
from hexbytes import HexBytes
from web3 import Web3

from txengine.errors import (
    BackendUnavailableError,
    BroadcastRejectedError,
    EngineError,
    NonceConflictError,
)

logger = logging.getLogger(__name__)

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Fields copied from a prepared transaction into the signed one
TX_FIELDS = (
    "to",
    "data",
    "value",
    "gas",
    "gasPrice",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
    "chainId",
    "accessList",
)
INT_FIELDS = ("value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "chainId", "nonce")


class WalletType(str, Enum):
    """Key custody backend."""
    LOCAL = "local"           # Encrypted keystore on local disk
    AWS_KMS = "aws-kms"       # AWS KMS ECC_SECG_P256K1 key
    GCP_KMS = "gcp-kms"       # GCP KMS EC_SIGN_SECP256K1_SHA256 key


@dataclass(frozen=True)
class RecoverableSignature:
    """ECDSA signature with its recovery id (0 or 1)."""
    recovery_id: int
    r: int
    s: int


@dataclass
class SignedTransaction:
    """Signed transaction ready for broadcast."""
    raw_transaction: bytes
    tx_hash: str
    nonce: int

    @property
    def raw_hex(self) -> str:
        return Web3.to_hex(self.raw_transaction)


@dataclass
class BroadcastResult:
    """Outcome of one broadcast.

    Attributes:
        success: Node accepted the transaction (or already knew it)
        tx_hash: Hash of the signed transaction
        error: Classified failure when not successful
    """
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[EngineError] = None


class SigningBackend(Protocol):
    """Capability every custody backend provides.

    Implementations never expose private keys.
    """

    wallet_type: WalletType

    async def get_address(self) -> str:
        """Checksummed address controlled by this backend."""
        ...

    async def sign_digest(self, digest: bytes) -> RecoverableSignature:
        """Sign a 32-byte digest."""
        ...

    async def health_check(self) -> bool:
        ...


def public_key_to_address(public_key: EllipticCurvePublicKey) -> str:
    """Derive a checksummed address from a secp256k1 public key."""
    raw = public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return keys.PublicKey(raw[1:]).to_checksum_address()


def address_from_der_public_key(der_key: bytes) -> str:
    """Address for a DER SubjectPublicKeyInfo (AWS KMS GetPublicKey)."""
    return public_key_to_address(load_der_public_key(der_key))


def address_from_pem_public_key(pem_key: str) -> str:
    """Address for a PEM public key (GCP KMS GetPublicKey)."""
    return public_key_to_address(load_pem_public_key(pem_key.encode()))


def der_signature_to_rs(der_signature: bytes) -> tuple[int, int]:
    """Decode a DER ECDSA signature and normalize s to the lower half.

    KMS services may return high-s signatures, which EVM chains reject.
    """
    r, s = decode_dss_signature(der_signature)
    if s > SECP256K1_N // 2:
        s = SECP256K1_N - s
    return r, s


def recover_signature(digest: bytes, r: int, s: int, address: str) -> RecoverableSignature:
    """Find the recovery id that maps (r, s) back to ``address``.

    Raises:
        ValueError: If neither candidate recovers the expected address
    """
    for recovery_id in (0, 1):
        try:
            signature = keys.Signature(vrs=(recovery_id, r, s))
            recovered = signature.recover_public_key_from_msg_hash(digest)
        except Exception:
            continue
        if recovered.to_checksum_address() == address:
            return RecoverableSignature(recovery_id=recovery_id, r=r, s=s)
    raise ValueError(f"Signature does not recover to {address}")


def decode_signed_nonce(raw: bytes) -> int:
    """Nonce of a signed legacy or typed (EIP-2718) transaction."""
    if raw[0] <= 0x7F:
        return TypedTransaction.from_bytes(HexBytes(raw)).as_dict()["nonce"]
    return Transaction.from_bytes(raw).nonce


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def build_transaction_dict(payload: dict) -> dict:
    """Copy the signable fields of a prepared transaction."""
    tx = {key: payload[key] for key in TX_FIELDS if payload.get(key) not in (None, "")}
    for key in INT_FIELDS:
        if key in tx:
            tx[key] = _to_int(tx[key])
    if "to" in tx:
        tx["to"] = Web3.to_checksum_address(tx["to"])
    tx.setdefault("data", "0x")
    tx.setdefault("value", 0)
    return tx


class NetworkSigner:
    """Signer bound to one wallet backend and one network.

    Exposes the address and sign-and-send for that network. The finer steps
    (``populate``, ``sign_transaction``, ``send``) let the submitter retry each
    one under its own policy.
    """

    def __init__(self, backend: SigningBackend, address: str, network: str, chain):
        self.backend = backend
        self.address = address
        self.network = network
        self.chain = chain

    async def populate(self, payload: dict) -> dict:
        """Fill in chain id, fee and gas for a prepared transaction.

        Raises:
            BackendUnavailableError: RPC failure
            BroadcastRejectedError: Gas estimation reverted
        """
        tx = build_transaction_dict(payload)
        if "chainId" not in tx:
            tx["chainId"] = await self.chain.chain_id()
        if "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx:
            if "maxPriorityFeePerGas" not in tx:
                tx["maxPriorityFeePerGas"] = min(
                    await self.chain.max_priority_fee(), tx["maxFeePerGas"]
                )
            if "maxFeePerGas" not in tx:
                tx["maxFeePerGas"] = await self.chain.gas_price() * 2 + tx["maxPriorityFeePerGas"]
        elif "gasPrice" not in tx:
            tx["gasPrice"] = await self.chain.gas_price()
        if "gas" not in tx:
            tx["gas"] = await self.chain.estimate_gas({**tx, "from": self.address})
        return tx

    async def sign_transaction(self, tx: dict) -> SignedTransaction:
        """Serialize, sign via the backend and encode a populated transaction.

        ``tx`` must carry a nonce.
        """
        unsigned = serializable_unsigned_transaction_from_dict(tx)
        digest = unsigned.hash()
        signature = await self.backend.sign_digest(digest)

        if isinstance(unsigned, TypedTransaction):
            v = signature.recovery_id
        elif isinstance(unsigned, Transaction):
            # EIP-155: the unsigned legacy transaction carries chain id in v
            v = unsigned.v * 2 + 35 + signature.recovery_id
        else:
            v = 27 + signature.recovery_id

        raw = encode_transaction(unsigned, vrs=(v, signature.r, signature.s))
        return SignedTransaction(
            raw_transaction=raw,
            tx_hash=Web3.to_hex(Web3.keccak(raw)),
            nonce=tx["nonce"],
        )

    async def send(self, signed: SignedTransaction) -> BroadcastResult:
        """Broadcast signed bytes and classify the outcome."""
        try:
            tx_hash = await self.chain.send_raw_transaction(signed.raw_transaction)
        except (NonceConflictError, BroadcastRejectedError, BackendUnavailableError) as e:
            return BroadcastResult(success=False, tx_hash=signed.tx_hash, error=e)

        if tx_hash and tx_hash.lower() != signed.tx_hash.lower():
            logger.warning(f"Node returned hash {tx_hash}, expected {signed.tx_hash}")
        return BroadcastResult(success=True, tx_hash=signed.tx_hash)

    async def sign_and_send(self, tx: dict) -> BroadcastResult:
        """Sign a populated transaction (with nonce) and broadcast it once."""
        try:
            signed = await self.sign_transaction(tx)
        except EngineError as e:
            return BroadcastResult(success=False, error=e)
        return await self.send(signed)

    def __repr__(self) -> str:
        return f"NetworkSigner(address={self.address}, network={self.network})"
