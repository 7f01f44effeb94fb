"""GCP Cloud KMS signing backend.

Keys are asymmetric EC_SIGN_SECP256K1_SHA256 crypto keys inside a key ring.
A signer references one crypto key version:
``projects/{project}/locations/{location}/keyRings/{ring}/cryptoKeys/{key}/cryptoKeyVersions/{version}``

Setup:
1. Set WALLET_BACKEND=gcp-kms
2. Set GCP_PROJECT_ID, GCP_LOCATION_ID and GCP_KEY_RING_ID
3. Set GCP_CREDENTIAL_EMAIL / GCP_CREDENTIAL_PRIVATE_KEY, or rely on
   application default credentials
"""

import logging
import time
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import kms_v1
from google.oauth2 import service_account

from txengine.config import Settings
from txengine.errors import (
    BackendUnavailableError,
    ConfigurationError,
    CredentialError,
    EngineError,
)
from txengine.signing.base import (
    RecoverableSignature,
    WalletType,
    address_from_pem_public_key,
    der_signature_to_rs,
    recover_signature,
)

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"

# Key version missing, disabled or of the wrong algorithm
KEY_ERRORS = (
    google_exceptions.NotFound,
    google_exceptions.InvalidArgument,
    google_exceptions.FailedPrecondition,
)


def key_ring_path(project_id: str, location_id: str, key_ring_id: str) -> str:
    return f"projects/{project_id}/locations/{location_id}/keyRings/{key_ring_id}"


def key_version_path(
    project_id: str,
    location_id: str,
    key_ring_id: str,
    key_id: str,
    version_id: str = "1",
) -> str:
    return (
        f"{key_ring_path(project_id, location_id, key_ring_id)}"
        f"/cryptoKeys/{key_id}/cryptoKeyVersions/{version_id}"
    )


def map_gcp_error(error: Exception, action: str) -> EngineError:
    """Classify a Google API failure."""
    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return CredentialError(f"GCP KMS denied {action}", cause=error)
    if isinstance(error, auth_exceptions.GoogleAuthError):
        return CredentialError(f"GCP credentials unavailable for {action}", cause=error)
    if isinstance(error, KEY_ERRORS):
        return ConfigurationError(f"GCP KMS key unusable for {action}: {error.message}", cause=error)
    return BackendUnavailableError(f"GCP KMS {action} failed", cause=error)


def build_credentials(settings: Settings) -> Optional[service_account.Credentials]:
    """Service account credentials from settings, or None for ADC."""
    if not (settings.gcp_credential_email and settings.gcp_credential_private_key):
        return None
    info = {
        "type": "service_account",
        "client_email": settings.gcp_credential_email,
        "private_key": settings.gcp_credential_private_key.replace("\\n", "\n"),
        "token_uri": TOKEN_URI,
        "project_id": settings.gcp_project_id,
    }
    try:
        return service_account.Credentials.from_service_account_info(info)
    except ValueError as e:
        raise ConfigurationError("Invalid GCP service account credentials", cause=e) from e


def create_kms_client(settings: Settings) -> Any:
    """Async KMS client using configured credentials."""
    try:
        return kms_v1.KeyManagementServiceAsyncClient(credentials=build_credentials(settings))
    except auth_exceptions.GoogleAuthError as e:
        raise CredentialError("Could not create GCP KMS client", cause=e) from e


def require_gcp_config(settings: Settings, require_key: bool = False) -> None:
    """Raise ConfigurationError naming every missing GCP setting."""
    missing = settings.missing_gcp_fields(require_key=require_key)
    if missing:
        raise ConfigurationError(
            f"{' or '.join(missing)} is not defined. Please check .env file"
        )


class GcpKmsBackend:
    """GCP KMS signing backend for one crypto key version."""

    wallet_type = WalletType.GCP_KMS

    def __init__(self, key_version_name: str, client: Any = None, settings: Optional[Settings] = None):
        self.key_version_name = key_version_name
        self._client = client
        self._settings = settings
        self._address: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings, key_id: Optional[str] = None,
                      version_id: Optional[str] = None, client: Any = None) -> "GcpKmsBackend":
        """Backend for a key in the configured key ring.

        Raises:
            ConfigurationError: listing missing GCP settings
        """
        require_gcp_config(settings, require_key=key_id is None)
        name = key_version_path(
            settings.gcp_project_id,
            settings.gcp_location_id,
            settings.gcp_key_ring_id,
            key_id or settings.gcp_kms_key_id,
            version_id or settings.gcp_kms_key_version_id,
        )
        return cls(name, client=client, settings=settings)

    @property
    def client(self) -> Any:
        if self._client is None:
            if self._settings is None:
                raise ConfigurationError("GCP KMS backend has neither client nor settings")
            self._client = create_kms_client(self._settings)
        return self._client

    async def get_address(self) -> str:
        """Derive the address from the key version's PEM public key (cached)."""
        if self._address is None:
            try:
                response = await self.client.get_public_key(request={"name": self.key_version_name})
            except (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
                raise map_gcp_error(e, "GetPublicKey") from e
            self._address = address_from_pem_public_key(response.pem)
            logger.info(f"Resolved GCP KMS key {self.key_version_name} to {self._address}")
        return self._address

    async def sign_digest(self, digest: bytes) -> RecoverableSignature:
        address = await self.get_address()
        try:
            response = await self.client.asymmetric_sign(
                request={"name": self.key_version_name, "digest": {"sha256": digest}}
            )
        except (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
            raise map_gcp_error(e, "AsymmetricSign") from e

        r, s = der_signature_to_rs(response.signature)
        try:
            return recover_signature(digest, r, s, address)
        except ValueError as e:
            raise BackendUnavailableError("GCP KMS returned an unrecoverable signature", cause=e) from e

    async def health_check(self) -> bool:
        try:
            await self.get_address()
            return True
        except EngineError as e:
            logger.warning(f"GCP KMS health check failed: {e.describe()}")
            return False

    def __repr__(self) -> str:
        return f"GcpKmsBackend(key={self.key_version_name})"


async def create_gcp_kms_key(settings: Settings, client: Any = None) -> dict:
    """Create a secp256k1 signing key in the configured key ring.

    Returns:
        Dict with ``key_id``, ``key_name`` and ``key_version_name`` (version 1)
    """
    require_gcp_config(settings)
    client = client or create_kms_client(settings)
    parent = key_ring_path(settings.gcp_project_id, settings.gcp_location_id, settings.gcp_key_ring_id)
    crypto_key_id = f"web3api-{int(time.time() * 1000)}"

    try:
        key = await client.create_crypto_key(
            request={
                "parent": parent,
                "crypto_key_id": crypto_key_id,
                "crypto_key": {
                    "purpose": kms_v1.CryptoKey.CryptoKeyPurpose.ASYMMETRIC_SIGN,
                    "version_template": {
                        "algorithm": kms_v1.CryptoKeyVersion.CryptoKeyVersionAlgorithm.EC_SIGN_SECP256K1_SHA256,
                        "protection_level": kms_v1.ProtectionLevel.HSM,
                    },
                },
            }
        )
    except (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError) as e:
        raise map_gcp_error(e, "CreateCryptoKey") from e

    logger.debug(f"Created GCP KMS key {key.name}")
    return {
        "key_id": crypto_key_id,
        "key_name": key.name,
        "key_version_name": f"{key.name}/cryptoKeyVersions/1",
    }
