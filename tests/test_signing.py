"""Tests for signing backends and the signer provider."""

from unittest.mock import MagicMock

import pytest
import rlp
from botocore.exceptions import ClientError, NoCredentialsError
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from eth_account import Account
from eth_keys import keys
from google.api_core import exceptions as google_exceptions

from txengine.config import Settings
from txengine.errors import BackendUnavailableError, ConfigurationError, CredentialError, NonceConflictError
from txengine.signing.aws_kms import AwsKmsBackend, create_aws_kms_key, map_aws_error
from txengine.signing.base import (
    SECP256K1_N,
    NetworkSigner,
    WalletType,
    build_transaction_dict,
    der_signature_to_rs,
)
from txengine.signing.factory import SignerProvider, build_backend
from txengine.signing.gcp_kms import GcpKmsBackend, create_gcp_kms_key, map_gcp_error
from txengine.signing.local import LocalKeystore, LocalWalletBackend
from txengine.store.models import WalletDetails

from fakes import TEST_CHAIN_ID, TEST_PASSPHRASE, FakeAwsKms, FakeGcpKms, ec_address, no_wallet_details


def gcp_settings(**overrides) -> Settings:
    values = {
        "wallet_backend": WalletType.GCP_KMS,
        "gcp_project_id": "project",
        "gcp_location_id": "global",
        "gcp_key_ring_id": "ring",
        "gcp_kms_key_id": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def signed_fields(raw: bytes) -> list:
    """Decoded fields of a signed legacy transaction, without v, r, s."""
    return rlp.decode(raw)[:-3]


class TestSignatureHelpers:
    """Tests for DER conversion and payload copying."""

    def test_high_s_is_normalized(self):
        r, s = 12345, SECP256K1_N - 10

        assert der_signature_to_rs(encode_dss_signature(r, s)) == (r, 10)

    def test_low_s_is_kept(self):
        assert der_signature_to_rs(encode_dss_signature(5, 7)) == (5, 7)

    def test_build_transaction_dict_copies_known_fields(self):
        tx = build_transaction_dict(
            {
                "to": "0x000000000000000000000000000000000000dead",
                "value": "0x10",
                "gas": "21000",
                "functionName": "mint",
            }
        )

        assert tx == {
            "to": "0x000000000000000000000000000000000000dEaD",
            "value": 16,
            "gas": 21000,
            "data": "0x",
        }


class TestLocalBackend:
    """Tests for the keystore-backed signer."""

    @pytest.mark.asyncio
    async def test_from_keystore(self, local_wallet, settings):
        keystore = LocalKeystore(settings.local_wallet_dir).load(local_wallet.address)
        backend = LocalWalletBackend.from_keystore(keystore, TEST_PASSPHRASE)

        assert await backend.get_address() == local_wallet.address
        assert backend.wallet_type == WalletType.LOCAL

    def test_wrong_passphrase(self, local_wallet, settings):
        keystore = LocalKeystore(settings.local_wallet_dir).load(local_wallet.address)

        with pytest.raises(ConfigurationError):
            LocalWalletBackend.from_keystore(keystore, "wrong")

    @pytest.mark.asyncio
    async def test_unlock_off_the_event_loop(self, local_wallet, settings):
        keystore = LocalKeystore(settings.local_wallet_dir).load(local_wallet.address)

        backend = await LocalWalletBackend.unlock(keystore, TEST_PASSPHRASE)

        assert await backend.get_address() == local_wallet.address
        with pytest.raises(ConfigurationError):
            await LocalWalletBackend.unlock(keystore, "wrong")

    def test_missing_keystore(self, settings):
        with pytest.raises(ConfigurationError):
            LocalKeystore(settings.local_wallet_dir).load("0x" + "ab" * 20)

    def test_keystore_refuses_overwrite(self, local_wallet, settings):
        store = LocalKeystore(settings.local_wallet_dir)

        with pytest.raises(FileExistsError):
            store.save(local_wallet.address, {"address": local_wallet.address[2:].lower()})

    def test_list_addresses(self, local_wallet, settings):
        assert LocalKeystore(settings.local_wallet_dir).list_addresses() == [local_wallet.address]


class TestAwsKmsBackend:
    """Tests for AWS KMS signing with a fake client."""

    @pytest.mark.asyncio
    async def test_address_from_public_key(self):
        client = FakeAwsKms()
        backend = AwsKmsBackend("key-1", region="us-east-1", client=client)

        assert await backend.get_address() == ec_address(client.key)

    @pytest.mark.asyncio
    async def test_signature_recovers_to_key_address(self):
        client = FakeAwsKms()
        backend = AwsKmsBackend("key-1", client=client)
        digest = bytes(range(32))

        signature = await backend.sign_digest(digest)

        recovered = keys.Signature(vrs=(signature.recovery_id, signature.r, signature.s))
        assert recovered.recover_public_key_from_msg_hash(digest).to_checksum_address() == ec_address(
            client.key
        )
        assert signature.s <= SECP256K1_N // 2

    @pytest.mark.asyncio
    async def test_access_denied_is_credential_error(self):
        client = MagicMock()
        client.get_public_key.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "GetPublicKey"
        )
        backend = AwsKmsBackend("key-1", client=client)

        with pytest.raises(CredentialError):
            await backend.get_address()

    def test_error_mapping(self):
        throttled = ClientError({"Error": {"Code": "ThrottlingException"}}, "Sign")

        assert isinstance(map_aws_error(throttled, "Sign"), BackendUnavailableError)
        assert isinstance(map_aws_error(NoCredentialsError(), "Sign"), CredentialError)

    @pytest.mark.parametrize(
        "code", ["NotFoundException", "DisabledException", "KMSInvalidStateException", "InvalidKeyUsageException"]
    )
    def test_unusable_key_is_configuration_error(self, code):
        error = map_aws_error(ClientError({"Error": {"Code": code}}, "Sign"), "Sign")

        assert isinstance(error, ConfigurationError)
        assert not error.retryable
        assert code in str(error)

    @pytest.mark.asyncio
    async def test_disabled_key_fails_on_first_sign(self):
        client = FakeAwsKms()
        client.sign = MagicMock(
            side_effect=ClientError({"Error": {"Code": "DisabledException", "Message": "disabled"}}, "Sign")
        )
        backend = AwsKmsBackend("key-1", client=client)

        with pytest.raises(ConfigurationError):
            await backend.sign_digest(bytes(32))
        assert client.sign.call_count == 1

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self):
        client = MagicMock()
        client.describe_key.side_effect = ClientError({"Error": {"Code": "KMSInternalException"}}, "DescribeKey")

        assert await AwsKmsBackend("key-1", client=client).health_check() is False

    @pytest.mark.asyncio
    async def test_create_key_uses_secp256k1(self):
        client = FakeAwsKms()

        key = await create_aws_kms_key("wallet", region="us-east-1", client=client)

        assert key == {"key_id": "key-1", "arn": "arn:aws:kms:us-east-1:123:key/key-1"}
        assert client.create_kwargs["KeySpec"] == "ECC_SECG_P256K1"
        assert client.create_kwargs["KeyUsage"] == "SIGN_VERIFY"
        assert client.create_kwargs["MultiRegion"] is False


class TestGcpKmsBackend:
    """Tests for GCP KMS signing with a fake client."""

    @pytest.mark.asyncio
    async def test_sign_and_recover(self):
        client = FakeGcpKms()
        backend = GcpKmsBackend.from_settings(gcp_settings(), key_id="key", client=client)
        digest = bytes(reversed(range(32)))

        signature = await backend.sign_digest(digest)

        recovered = keys.Signature(vrs=(signature.recovery_id, signature.r, signature.s))
        assert recovered.recover_public_key_from_msg_hash(digest).to_checksum_address() == ec_address(
            client.key
        )
        assert backend.key_version_name == (
            "projects/project/locations/global/keyRings/ring/cryptoKeys/key/cryptoKeyVersions/1"
        )

    def test_missing_config_lists_fields(self):
        settings = gcp_settings(gcp_project_id=None, gcp_key_ring_id=None)

        with pytest.raises(ConfigurationError) as exc_info:
            GcpKmsBackend.from_settings(settings)

        message = str(exc_info.value)
        assert "GCP_PROJECT_ID" in message
        assert "GCP_KEY_RING_ID" in message
        assert "GCP_KMS_KEY_ID" in message
        assert "GCP_LOCATION_ID" not in message

    @pytest.mark.asyncio
    async def test_permission_denied_is_credential_error(self):
        client = MagicMock()

        async def denied(request):
            raise google_exceptions.PermissionDenied("no access")

        client.get_public_key = denied
        backend = GcpKmsBackend("projects/p/locations/l/keyRings/r/cryptoKeys/k/cryptoKeyVersions/1", client=client)

        with pytest.raises(CredentialError):
            await backend.get_address()

    def test_unavailable_is_retryable(self):
        error = map_gcp_error(google_exceptions.ServiceUnavailable("down"), "AsymmetricSign")

        assert isinstance(error, BackendUnavailableError)
        assert error.retryable

    @pytest.mark.parametrize(
        "error",
        [
            google_exceptions.NotFound("key version not found"),
            google_exceptions.InvalidArgument("wrong algorithm"),
            google_exceptions.FailedPrecondition("key version DISABLED"),
        ],
    )
    def test_unusable_key_is_configuration_error(self, error):
        mapped = map_gcp_error(error, "AsymmetricSign")

        assert isinstance(mapped, ConfigurationError)
        assert not mapped.retryable

    @pytest.mark.asyncio
    async def test_create_key_request(self):
        client = FakeGcpKms()

        key = await create_gcp_kms_key(gcp_settings(), client=client)

        request = client.created[0]
        assert request["parent"] == "projects/project/locations/global/keyRings/ring"
        assert request["crypto_key_id"].startswith("web3api-")
        assert key["key_version_name"].endswith(f"/cryptoKeys/{key['key_id']}/cryptoKeyVersions/1")


class TestBackendInterchangeability:
    """The same transaction signed by each backend differs only in signature."""

    @pytest.mark.asyncio
    async def test_backends_produce_equivalent_transactions(self, local_wallet, fake_chain):
        backends = [
            LocalWalletBackend(bytes(local_wallet.key)),
            AwsKmsBackend("key-1", client=FakeAwsKms()),
            GcpKmsBackend("projects/p/locations/l/keyRings/r/cryptoKeys/k/cryptoKeyVersions/1", client=FakeGcpKms()),
        ]
        payload = {"to": "0x000000000000000000000000000000000000dEaD", "value": 5}

        signed = []
        for backend in backends:
            address = await backend.get_address()
            signer = NetworkSigner(backend, address, "localhost", fake_chain)
            tx = await signer.populate(payload)
            result = await signer.sign_transaction({**tx, "nonce": 4})
            assert Account.recover_transaction(result.raw_transaction) == address
            signed.append(result)

        fields = [signed_fields(s.raw_transaction) for s in signed]
        assert fields[0] == fields[1] == fields[2]
        assert len({s.raw_transaction for s in signed}) == 3

    @pytest.mark.asyncio
    async def test_eip1559_transaction(self, local_wallet, fake_chain):
        backend = LocalWalletBackend(bytes(local_wallet.key))
        signer = NetworkSigner(backend, local_wallet.address, "localhost", fake_chain)

        tx = await signer.populate({"to": "0x000000000000000000000000000000000000dEaD", "maxFeePerGas": 5 * 10**9})
        signed = await signer.sign_transaction({**tx, "nonce": 0})

        assert tx["maxPriorityFeePerGas"] == 10**9
        assert tx["chainId"] == TEST_CHAIN_ID
        assert signed.raw_transaction[0] == 2
        assert Account.recover_transaction(signed.raw_transaction) == local_wallet.address

    @pytest.mark.asyncio
    async def test_sign_and_send(self, local_wallet, fake_chain):
        signer = NetworkSigner(LocalWalletBackend(bytes(local_wallet.key)), local_wallet.address, "localhost", fake_chain)
        tx = await signer.populate({"to": "0x000000000000000000000000000000000000dEaD", "value": 1})

        result = await signer.sign_and_send({**tx, "nonce": 0})

        assert result.success
        assert result.tx_hash == fake_chain.sent[0]["hash"]

    @pytest.mark.asyncio
    async def test_sign_and_send_reports_conflict(self, local_wallet, fake_chain):
        signer = NetworkSigner(LocalWalletBackend(bytes(local_wallet.key)), local_wallet.address, "localhost", fake_chain)
        tx = await signer.populate({"to": "0x000000000000000000000000000000000000dEaD", "value": 1})

        result = await signer.sign_and_send({**tx, "nonce": 3})

        assert not result.success
        assert isinstance(result.error, NonceConflictError)
        assert fake_chain.sent == []


class TestSignerProvider:
    """Tests for backend resolution and caching."""

    @pytest.mark.asyncio
    async def test_default_wallet_is_only_keystore(self, signer_provider, local_wallet):
        assert await signer_provider.default_address() == local_wallet.address

    @pytest.mark.asyncio
    async def test_signers_are_cached_per_wallet_and_network(self, signer_provider, local_wallet):
        first = await signer_provider.get_signer("localhost")
        second = await signer_provider.get_signer("LOCALHOST", local_wallet.address)
        other = await signer_provider.get_signer("sepolia")

        assert first is second
        assert first is not other
        assert first.backend is other.backend

    @pytest.mark.asyncio
    async def test_no_keystore_is_configuration_error(self, settings, chain_factory):
        provider = SignerProvider(settings, chain_factory=chain_factory, wallet_lookup=no_wallet_details)

        with pytest.raises(ConfigurationError):
            await provider.get_signer("localhost")

    @pytest.mark.asyncio
    async def test_missing_passphrase_is_configuration_error(self, local_wallet, chain_factory):
        settings = Settings(_env_file=None, wallet_backend=WalletType.LOCAL, local_wallet_passphrase=None)
        provider = SignerProvider(settings, chain_factory=chain_factory, wallet_lookup=no_wallet_details)

        with pytest.raises(ConfigurationError):
            await provider.get_backend(local_wallet.address)

    @pytest.mark.asyncio
    async def test_wallet_of_other_backend_is_rejected(self, settings):
        details = WalletDetails(address="0x" + "11" * 20, wallet_type=WalletType.AWS_KMS.value)

        with pytest.raises(ConfigurationError):
            await build_backend(settings, details.address, details)

    @pytest.mark.asyncio
    async def test_aws_backend_uses_provisioned_key(self):
        settings = Settings(_env_file=None, wallet_backend=WalletType.AWS_KMS, aws_region="us-east-1")
        details = WalletDetails(
            address="0x" + "11" * 20, wallet_type=WalletType.AWS_KMS.value, aws_kms_key_id="key-9"
        )

        backend = await build_backend(settings, details.address, details)

        assert isinstance(backend, AwsKmsBackend)
        assert backend.key_id == "key-9"

    @pytest.mark.asyncio
    async def test_gcp_backend_uses_provisioned_resource_path(self):
        path = "projects/p/locations/l/keyRings/r/cryptoKeys/web3api-1/cryptoKeyVersions/1"
        details = WalletDetails(
            address="0x" + "11" * 20, wallet_type=WalletType.GCP_KMS.value, gcp_kms_resource_path=path
        )

        backend = await build_backend(gcp_settings(), details.address, details)

        assert isinstance(backend, GcpKmsBackend)
        assert backend.key_version_name == path

    @pytest.mark.asyncio
    async def test_requested_wallet_must_match_key(self, settings, chain_factory):
        client = FakeAwsKms()

        async def aws_backend(settings, address, details):
            return AwsKmsBackend("key-1", client=client)

        provider = SignerProvider(
            settings,
            chain_factory=chain_factory,
            backend_factory=aws_backend,
            wallet_lookup=no_wallet_details,
        )

        with pytest.raises(ConfigurationError):
            await provider.get_backend("0x" + "22" * 20)
