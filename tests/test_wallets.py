"""Tests for backend wallet provisioning."""

import pytest

from txengine.config import Settings
from txengine.errors import ConfigurationError
from txengine.signing.base import WalletType
from txengine.signing.local import LocalKeystore, LocalWalletBackend
from txengine.wallets.provisioning import (
    create_aws_kms_wallet,
    create_backend_wallet,
    create_local_wallet,
    list_backend_wallets,
)

from fakes import TEST_PASSPHRASE, FakeAwsKms, FakeGcpKms, ec_address


def backend_settings(settings: Settings, **values) -> Settings:
    """Copy of the test settings with a different wallet backend."""
    return settings.model_copy(update=values)


class TestLocalProvisioning:
    """Tests for keystore wallet creation."""

    @pytest.mark.asyncio
    async def test_creates_keystore_and_details(self, database, settings):
        details = await create_backend_wallet(label="hot", settings=settings)

        keystore = LocalKeystore(settings.local_wallet_dir).load(details.address)
        backend = LocalWalletBackend.from_keystore(keystore, TEST_PASSPHRASE)
        assert await backend.get_address() == details.address
        assert details.wallet_type == WalletType.LOCAL.value
        assert details.label == "hot"

    @pytest.mark.asyncio
    async def test_rejected_for_other_backend(self, database, settings):
        aws = backend_settings(settings, wallet_backend=WalletType.AWS_KMS, aws_region="us-east-1")

        with pytest.raises(ConfigurationError, match="not configured for local wallet creation"):
            await create_local_wallet(aws)

    @pytest.mark.asyncio
    async def test_requires_passphrase(self, database, settings):
        locked = backend_settings(settings, local_wallet_passphrase=None)

        with pytest.raises(ConfigurationError, match="LOCAL_WALLET_PASSPHRASE"):
            await create_local_wallet(locked)


class TestKmsProvisioning:
    """Tests for KMS key creation."""

    @pytest.mark.asyncio
    async def test_aws_key(self, database, settings):
        aws = backend_settings(settings, wallet_backend=WalletType.AWS_KMS, aws_region="us-east-1")
        client = FakeAwsKms()

        details = await create_backend_wallet(label="treasury", settings=aws, client=client)

        assert details.address == ec_address(client.key)
        assert details.aws_kms_key_id == "key-1"
        assert details.aws_kms_arn.endswith("key/key-1")
        assert client.create_kwargs["KeySpec"] == "ECC_SECG_P256K1"
        assert client.create_kwargs["Description"] == "treasury"

    @pytest.mark.asyncio
    async def test_aws_requires_region(self, database, settings):
        aws = backend_settings(settings, wallet_backend=WalletType.AWS_KMS, aws_region=None)

        with pytest.raises(ConfigurationError, match="AWS_REGION"):
            await create_aws_kms_wallet(aws, client=FakeAwsKms())

    @pytest.mark.asyncio
    async def test_gcp_key(self, database, settings):
        gcp = backend_settings(
            settings,
            wallet_backend=WalletType.GCP_KMS,
            gcp_project_id="project",
            gcp_location_id="global",
            gcp_key_ring_id="ring",
        )
        client = FakeGcpKms()

        details = await create_backend_wallet(settings=gcp, client=client)

        assert details.address == ec_address(client.key)
        assert details.gcp_kms_key_ring_id == "ring"
        assert details.gcp_kms_key_version_id == "1"
        assert details.gcp_kms_resource_path.startswith(
            "projects/project/locations/global/keyRings/ring/cryptoKeys/web3api-"
        )
        assert details.gcp_kms_resource_path.endswith("/cryptoKeyVersions/1")

    @pytest.mark.asyncio
    async def test_gcp_missing_key_ring(self, database, settings):
        gcp = backend_settings(
            settings,
            wallet_backend=WalletType.GCP_KMS,
            gcp_project_id="project",
            gcp_location_id="global",
            gcp_key_ring_id=None,
        )

        with pytest.raises(ConfigurationError, match="GCP_KEY_RING_ID"):
            await create_backend_wallet(settings=gcp, client=FakeGcpKms())


class TestListWallets:
    """Tests for listing provisioned wallets."""

    @pytest.mark.asyncio
    async def test_lists_active_backend_only(self, database, settings):
        local = await create_backend_wallet(settings=settings)
        aws = backend_settings(settings, wallet_backend=WalletType.AWS_KMS, aws_region="us-east-1")
        await create_backend_wallet(settings=aws, client=FakeAwsKms())

        wallets = await list_backend_wallets(settings)

        assert [wallet.address for wallet in wallets] == [local.address]
        assert len(await list_backend_wallets(aws)) == 1
