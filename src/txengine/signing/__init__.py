"""Transaction signing.

Provides interchangeable custody backends behind one capability:
- LocalWalletBackend: encrypted keystore on disk
- AwsKmsBackend: AWS KMS secp256k1 key
- GcpKmsBackend: GCP KMS secp256k1 key version
"""

from txengine.signing.base import (
    BroadcastResult,
    NetworkSigner,
    RecoverableSignature,
    SignedTransaction,
    SigningBackend,
    WalletType,
)
from txengine.signing.local import LocalWalletBackend

__all__ = [
    "BroadcastResult",
    "NetworkSigner",
    "RecoverableSignature",
    "SignedTransaction",
    "SigningBackend",
    "WalletType",
    "LocalWalletBackend",
]
