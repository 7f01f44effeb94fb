"""Tests for enqueue, status, await, cancel and simulate."""

import asyncio
import time

import pytest

from txengine.errors import ConfigurationError, RecordNotFoundError, SimulationError
from txengine.store.models import TransactionStatus


class TestEnqueue:
    """Tests for TransactionQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_returns_queue_id_immediately(self, tx_queue, fake_chain, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost", extension="transfer")

        record = await tx_queue.get_status(queue_id)
        assert record.status == TransactionStatus.QUEUED
        assert record.extension == "transfer"
        assert fake_chain.send_calls == 0

    @pytest.mark.asyncio
    async def test_idempotency_key(self, tx_queue, store, transfer):
        first = await tx_queue.enqueue(transfer, "localhost", idempotency_key="order-1")
        second = await tx_queue.enqueue(transfer, "localhost", idempotency_key="order-1")

        assert first == second
        assert len(await store.list_pending()) == 1

    @pytest.mark.asyncio
    async def test_unknown_network(self, tx_queue, transfer):
        with pytest.raises(ConfigurationError):
            await tx_queue.enqueue(transfer, "atlantis")

    @pytest.mark.asyncio
    async def test_invalid_wallet_address(self, tx_queue, transfer):
        with pytest.raises(ConfigurationError):
            await tx_queue.enqueue(transfer, "localhost", wallet_address="0x1234")

    @pytest.mark.asyncio
    async def test_explicit_wallet_is_checksummed(self, tx_queue, transfer, local_wallet):
        queue_id = await tx_queue.enqueue(
            transfer, "localhost", wallet_address=local_wallet.address.lower()
        )

        assert (await tx_queue.get_status(queue_id)).wallet_address == local_wallet.address


class TestAwaitSubmission:
    """Tests for TransactionQueue.await_submission."""

    @pytest.mark.asyncio
    async def test_unknown_queue_id(self, tx_queue):
        assert await tx_queue.await_submission("missing", timeout=0.1) is None

    @pytest.mark.asyncio
    async def test_times_out_with_pending_record(self, tx_queue, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost")
        timeout, poll_interval = 0.3, 0.1

        started = time.monotonic()
        record = await tx_queue.await_submission(queue_id, timeout=timeout, poll_interval=poll_interval)
        elapsed = time.monotonic() - started

        assert record.status == TransactionStatus.QUEUED
        assert elapsed < timeout + poll_interval + 0.2

    @pytest.mark.asyncio
    async def test_returns_terminal_record(self, tx_queue, submitter, poller, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost")

        async def work():
            await asyncio.sleep(0.05)
            await submitter.process_pending()
            await poller.poll_once()

        waiter = asyncio.create_task(tx_queue.await_submission(queue_id, timeout=5, poll_interval=0.02))
        await work()
        record = await waiter

        assert record.status == TransactionStatus.MINED
        assert (await tx_queue.store.get(queue_id)).read_at is not None

    @pytest.mark.asyncio
    async def test_await_does_not_cancel_submission(self, tx_queue, submitter, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost")

        await tx_queue.await_submission(queue_id, timeout=0)
        await submitter.process_pending()

        assert (await tx_queue.get_status(queue_id)).status == TransactionStatus.SUBMITTED


class TestCancel:
    """Tests for TransactionQueue.cancel."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, tx_queue, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost")

        record = await tx_queue.cancel(queue_id)

        assert record.status == TransactionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_submitted_has_no_effect(self, tx_queue, submitter, transfer):
        queue_id = await tx_queue.enqueue(transfer, "localhost")
        await submitter.process_pending()

        record = await tx_queue.cancel(queue_id)

        assert record.status == TransactionStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, tx_queue):
        with pytest.raises(RecordNotFoundError):
            await tx_queue.cancel("missing")


class TestSimulate:
    """Tests for pre-flight simulation."""

    @pytest.mark.asyncio
    async def test_successful_simulation(self, tx_queue, transfer):
        assert await tx_queue.simulate(transfer, "localhost") == "0x"

    @pytest.mark.asyncio
    async def test_reverting_simulation(self, tx_queue, fake_chain, transfer):
        fake_chain.revert_calls = True

        with pytest.raises(SimulationError):
            await tx_queue.simulate(transfer, "localhost")
