"""AWS KMS signing backend.

Uses AWS Key Management Service for key storage and signing. KMS keys never
leave AWS - signing happens in the cloud.

Setup:
1. Set WALLET_BACKEND=aws-kms and AWS_REGION
2. Create a wallet through the API (creates an ECC_SECG_P256K1 key) or set
   AWS_KMS_KEY_ID to an existing key id, ARN or alias
3. Configure AWS credentials (IAM role, access keys, etc.)

Reference:
- https://docs.aws.amazon.com/kms/latest/developerguide/symm-asymm-concepts.html
"""

import asyncio
import logging
from functools import partial
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from txengine.errors import BackendUnavailableError, ConfigurationError, CredentialError, EngineError
from txengine.signing.base import (
    RecoverableSignature,
    WalletType,
    address_from_der_public_key,
    der_signature_to_rs,
    recover_signature,
)

logger = logging.getLogger(__name__)

CREDENTIAL_ERROR_CODES = {
    "AccessDeniedException",
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "IncompleteSignature",
    "InvalidClientTokenId",
}

# Key missing, disabled or of the wrong kind; retrying cannot help
KEY_ERROR_CODES = {
    "NotFoundException",
    "DisabledException",
    "KMSInvalidStateException",
    "InvalidKeyUsageException",
    "InvalidArnException",
    "IncorrectKeyException",
    "UnsupportedOperationException",
}


def map_aws_error(error: Exception, action: str) -> EngineError:
    """Classify a boto3 failure."""
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return CredentialError(f"AWS credentials unavailable for {action}", cause=error)
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "Unknown")
        if code in CREDENTIAL_ERROR_CODES:
            return CredentialError(f"AWS KMS denied {action} ({code})", cause=error)
        if code in KEY_ERROR_CODES:
            return ConfigurationError(f"AWS KMS key unusable for {action} ({code})", cause=error)
        return BackendUnavailableError(f"AWS KMS {action} failed ({code})", cause=error)
    return BackendUnavailableError(f"AWS KMS {action} failed", cause=error)


async def _run_kms(client: Any, method: str, action: str, **kwargs) -> dict:
    """Run a blocking boto3 call in the thread pool."""
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, partial(getattr(client, method), **kwargs))
    except (BotoCoreError, ClientError) as e:
        raise map_aws_error(e, action) from e


class AwsKmsBackend:
    """AWS KMS signing backend for one asymmetric secp256k1 key.

    Keys are identified by key id, ARN or alias.
    """

    wallet_type = WalletType.AWS_KMS

    def __init__(self, key_id: str, region: Optional[str] = None, client: Any = None):
        self.key_id = key_id
        self.region = region
        self._client = client
        self._address: Optional[str] = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("kms", region_name=self.region)
        return self._client

    async def get_address(self) -> str:
        """Derive the address from the KMS public key (cached)."""
        if self._address is None:
            response = await _run_kms(
                self.client, "get_public_key", "GetPublicKey", KeyId=self.key_id
            )
            self._address = address_from_der_public_key(response["PublicKey"])
            logger.info(f"Resolved AWS KMS key {self.key_id} to {self._address}")
        return self._address

    async def sign_digest(self, digest: bytes) -> RecoverableSignature:
        """Sign a digest with ECDSA_SHA_256 and recover v by trial."""
        address = await self.get_address()
        response = await _run_kms(
            self.client,
            "sign",
            "Sign",
            KeyId=self.key_id,
            Message=digest,
            MessageType="DIGEST",
            SigningAlgorithm="ECDSA_SHA_256",
        )
        r, s = der_signature_to_rs(response["Signature"])
        try:
            return recover_signature(digest, r, s, address)
        except ValueError as e:
            raise BackendUnavailableError("AWS KMS returned an unrecoverable signature", cause=e) from e

    async def health_check(self) -> bool:
        """Check the key is reachable."""
        try:
            await _run_kms(self.client, "describe_key", "DescribeKey", KeyId=self.key_id)
            return True
        except EngineError as e:
            logger.warning(f"KMS health check failed: {e.describe()}")
            return False

    def __repr__(self) -> str:
        return f"AwsKmsBackend(key_id={self.key_id}, region={self.region})"


async def create_aws_kms_key(
    description: str,
    region: Optional[str] = None,
    client: Any = None,
) -> dict:
    """Create an asymmetric secp256k1 signing key.

    Returns:
        Dict with ``key_id`` and ``arn``
    """
    client = client or boto3.client("kms", region_name=region)
    response = await _run_kms(
        client,
        "create_key",
        "CreateKey",
        Description=description,
        KeyUsage="SIGN_VERIFY",
        KeySpec="ECC_SECG_P256K1",
        MultiRegion=False,
    )
    metadata = response["KeyMetadata"]
    logger.debug(
        f"Created KMS Key in Region {region}, KeyId: {metadata['KeyId']}, KeyArn: {metadata['Arn']}"
    )
    return {"key_id": metadata["KeyId"], "arn": metadata["Arn"]}
