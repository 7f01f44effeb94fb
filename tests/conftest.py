"""Pytest configuration and fixtures."""

import json
import os
from typing import Optional

import pytest
import pytest_asyncio
from eth_account import Account

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"

from txengine.chain.rpc import reset_chain_clients
from txengine.config import Settings, get_settings
from txengine.services.confirmation_poller import ConfirmationPoller
from txengine.services.nonce_allocator import NonceAllocator
from txengine.services.submitter import Submitter
from txengine.services.transaction_queue import TransactionQueue, reset_transaction_queue
from txengine.signing.factory import SignerProvider, reset_signer_provider
from txengine.signing.local import LocalKeystore
from txengine.store.database import close_db, init_db
from txengine.store.queue_store import QueueStore
from txengine.utils.locks import clear_wallet_locks

from fakes import TEST_PASSPHRASE, FakeChain, no_wallet_details


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset process-wide caches around each test."""
    reset_signer_provider()
    reset_transaction_queue()
    reset_chain_clients()
    clear_wallet_locks()
    yield
    reset_signer_provider()
    reset_transaction_queue()
    reset_chain_clients()
    clear_wallet_locks()


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    """Settings for a local-keystore engine on a throwaway database."""
    env = {
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'txengine.db'}",
        "WALLET_BACKEND": "local",
        "LOCAL_WALLET_DIR": str(tmp_path / "wallets"),
        "LOCAL_WALLET_PASSPHRASE": TEST_PASSPHRASE,
        "LOCAL_KEYSTORE_ITERATIONS": "2",
        "CHAIN_RPC_URLS": json.dumps(
            {"localhost": "http://127.0.0.1:8545", "sepolia": "http://127.0.0.1:8546"}
        ),
        "RETRY_BACKOFF_SECONDS": "0",
        "RETRY_BACKOFF_MAX_SECONDS": "0",
        "AWAIT_POLL_INTERVAL": "0.05",
        "CONFIRMATIONS_REQUIRED": "1",
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    for name in ("LOCAL_WALLET_ADDRESS", "AWS_KMS_KEY_ID", "GCP_PROJECT_ID", "GCP_KMS_KEY_ID"):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database(settings):
    """Fresh database with all tables."""
    await init_db(settings.database_url)
    yield
    await close_db()


@pytest.fixture
def store(database) -> QueueStore:
    return QueueStore()


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def chain_factory(fake_chain):
    def factory(network: str, settings: Optional[Settings] = None) -> FakeChain:
        return fake_chain

    return factory


@pytest.fixture
def local_wallet(settings):
    """Account saved as the only local keystore."""
    account = Account.create()
    keystore = Account.encrypt(account.key, TEST_PASSPHRASE, iterations=2)
    LocalKeystore(settings.local_wallet_dir).save(account.address, keystore)
    return account


@pytest.fixture
def signer_provider(settings, chain_factory, local_wallet) -> SignerProvider:
    return SignerProvider(settings, chain_factory=chain_factory, wallet_lookup=no_wallet_details)


@pytest.fixture
def nonces(settings, chain_factory, store) -> NonceAllocator:
    return NonceAllocator(chain_factory=chain_factory, settings=settings, store=store)


@pytest.fixture
def submitter(store, signer_provider, nonces, settings) -> Submitter:
    return Submitter(store, signer_provider, nonces, settings)


@pytest.fixture
def poller(store, nonces, settings, chain_factory) -> ConfirmationPoller:
    return ConfirmationPoller(store, nonces, settings, chain_factory=chain_factory)


@pytest.fixture
def tx_queue(store, signer_provider, settings) -> TransactionQueue:
    return TransactionQueue(store=store, signers=signer_provider, settings=settings)


@pytest.fixture
def transfer() -> dict:
    """Prepared value transfer."""
    return {"to": "0x000000000000000000000000000000000000dEaD", "data": "0x", "value": 1000}
