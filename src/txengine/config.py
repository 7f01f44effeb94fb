"""Application configuration using pydantic-settings.

A single wallet backend (local keystore, AWS KMS or GCP KMS) is active per
process, selected with WALLET_BACKEND.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from txengine.errors import ConfigurationError
from txengine.signing.base import WalletType


DEFAULT_RPC_URLS = {
    "localhost": "http://127.0.0.1:8545",
    "ethereum": "https://eth.llamarpc.com",
    "sepolia": "https://rpc.sepolia.org",
    "polygon": "https://polygon-rpc.com",
    "mumbai": "https://rpc-mumbai.maticvigil.com",
    "base": "https://mainnet.base.org",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/txengine.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=3005, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Wallet backend
    # ======================
    wallet_backend: WalletType = Field(
        default=WalletType.LOCAL, description="Active key custody backend"
    )

    # Local encrypted keystores
    local_wallet_dir: str = Field(
        default="./data/wallets", description="Directory holding V3 keystore files"
    )
    local_wallet_passphrase: Optional[str] = Field(
        default=None, description="Passphrase used to encrypt/decrypt local keystores"
    )
    local_wallet_address: Optional[str] = Field(
        default=None, description="Default backend wallet address for local custody"
    )
    local_keystore_iterations: Optional[int] = Field(
        default=None, description="scrypt work factor for new keystores (library default if unset)"
    )

    # AWS KMS
    aws_region: Optional[str] = Field(default=None, description="AWS region for KMS")
    aws_kms_key_id: Optional[str] = Field(
        default=None, description="Default KMS key id, ARN or alias"
    )

    # GCP KMS
    gcp_project_id: Optional[str] = Field(default=None, description="GCP project id")
    gcp_location_id: Optional[str] = Field(default=None, description="GCP key ring location")
    gcp_key_ring_id: Optional[str] = Field(default=None, description="GCP key ring id")
    gcp_kms_key_id: Optional[str] = Field(default=None, description="Default GCP crypto key id")
    gcp_kms_key_version_id: str = Field(default="1", description="GCP crypto key version")
    gcp_credential_email: Optional[str] = Field(
        default=None, description="Service account client email"
    )
    gcp_credential_private_key: Optional[str] = Field(
        default=None, description="Service account private key (PEM)"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    chain_rpc_urls: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_RPC_URLS),
        description="Network name -> JSON-RPC URL (JSON object in env)",
    )
    rpc_timeout_seconds: float = Field(default=30.0, description="JSON-RPC request timeout")

    # ======================
    # Submission policy
    # ======================
    max_nonce_retries: int = Field(default=3, description="Retries after a nonce conflict")
    max_signing_attempts: int = Field(default=3, description="Attempts for KMS/backend signing")
    max_rpc_attempts: int = Field(default=3, description="Attempts for a chain RPC call")
    retry_backoff_seconds: float = Field(default=1.0, description="Base retry backoff")
    retry_backoff_max_seconds: float = Field(default=30.0, description="Backoff cap")
    max_concurrent_wallets: int = Field(
        default=8, description="Wallet/network pairs submitted in parallel"
    )
    submitter_poll_interval: float = Field(default=1.0, description="Seconds between queue scans")

    # ======================
    # Confirmation
    # ======================
    confirmations_required: int = Field(default=1, description="Blocks before a tx is mined")
    confirmation_timeout_seconds: float = Field(
        default=600.0, description="Submitted txs without receipt after this are errored"
    )
    confirmation_poll_interval: float = Field(
        default=2.0, description="Seconds between receipt polls"
    )
    resync_lock_timeout_seconds: float = Field(
        default=30.0, description="Wait for a busy wallet before skipping a timeout resync"
    )

    # ======================
    # Await / retention
    # ======================
    await_poll_interval: float = Field(default=0.5, description="Await polling interval")
    await_default_timeout: float = Field(default=30.0, description="Default await timeout")
    record_retention_hours: float = Field(
        default=24 * 7, description="Terminal records are archived after this window"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, network: str) -> str:
        """Get RPC URL for a network, or empty string if unknown."""
        return self.chain_rpc_urls.get(network.lower(), "")

    @property
    def networks(self) -> list[str]:
        return sorted(self.chain_rpc_urls)

    def missing_gcp_fields(self, require_key: bool = False) -> list[str]:
        """List GCP settings that must be set but are not."""
        required = {
            "GCP_PROJECT_ID": self.gcp_project_id,
            "GCP_LOCATION_ID": self.gcp_location_id,
            "GCP_KEY_RING_ID": self.gcp_key_ring_id,
        }
        if require_key:
            required["GCP_KMS_KEY_ID"] = self.gcp_kms_key_id
        return [name for name, value in required.items() if not value]

    def validate_wallet_backend(self) -> None:
        """Check the active backend has the configuration it needs.

        Raises:
            ConfigurationError: listing what is missing
        """
        if self.wallet_backend == WalletType.LOCAL:
            if not self.local_wallet_passphrase:
                raise ConfigurationError(
                    "LOCAL_WALLET_PASSPHRASE is not defined. Please check .env file"
                )
        elif self.wallet_backend == WalletType.AWS_KMS:
            if not self.aws_region:
                raise ConfigurationError("AWS_REGION is not defined. Please check .env file")
        elif self.wallet_backend == WalletType.GCP_KMS:
            missing = self.missing_gcp_fields()
            if missing:
                raise ConfigurationError(
                    f"{' or '.join(missing)} is not defined. Please check .env file"
                )

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "wallet_backend": self.wallet_backend.value,
            "local": {
                "wallet_dir": self.local_wallet_dir,
                "passphrase": "***" if self.local_wallet_passphrase else "(not set)",
                "default_address": self.local_wallet_address or "(not set)",
            },
            "aws": {
                "region": self.aws_region or "(not set)",
                "kms_key_id": "***" if self.aws_kms_key_id else "(not set)",
            },
            "gcp": {
                "project_id": self.gcp_project_id or "(not set)",
                "location_id": self.gcp_location_id or "(not set)",
                "key_ring_id": self.gcp_key_ring_id or "(not set)",
                "credentials": "***" if self.gcp_credential_private_key else "(default)",
            },
            "networks": self.networks,
            "submission": {
                "max_nonce_retries": self.max_nonce_retries,
                "max_signing_attempts": self.max_signing_attempts,
                "max_rpc_attempts": self.max_rpc_attempts,
                "confirmations_required": self.confirmations_required,
                "confirmation_timeout_seconds": self.confirmation_timeout_seconds,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
