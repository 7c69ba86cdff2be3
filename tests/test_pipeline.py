import asyncio
from collections import Counter
from unittest.mock import patch

import pytest

from exceptions import (
    ChannelDeliveryError,
    ConfigurationError,
    PipelineError,
    SourceReadError,
    TransactionParseError,
)
from generators import generate_random_transactions, generate_transactions
from models import ChargeBack, Deposit, DiagnosticKind, Dispute, Output, Resolve, Withdrawal
from services import AccountWorker, ClientPartitioner, TransactionPipeline, replay


def by_client(outputs):
    return {output.client: output for output in outputs}


class TestPartitioner:
    """Test client to worker routing."""

    def test_partition_is_stable(self):
        partitioner = ClientPartitioner(4)
        assert [partitioner.partition_for(c) for c in (0, 1, 5, 8, 5)] == [0, 1, 1, 0, 1]

    def test_single_worker_takes_everything(self):
        partitioner = ClientPartitioner(1)
        assert {partitioner.partition_for(c) for c in range(100)} == {0}

    @pytest.mark.parametrize("worker_count", [0, -1])
    def test_invalid_worker_count(self, worker_count):
        with pytest.raises(ConfigurationError):
            ClientPartitioner(worker_count)

    def test_invalid_channel_capacity(self):
        with pytest.raises(ConfigurationError):
            TransactionPipeline(worker_count=1, channel_capacity=0)


class TestReplay:
    """Test end-to-end replays."""

    def test_empty_source(self):
        assert replay([], worker_count=3) == []

    def test_one_output_per_client(self):
        transactions = [
            Deposit(client=1, tx=1, amount=1.0),
            Deposit(client=2, tx=2, amount=2.0),
            Deposit(client=1, tx=3, amount=2.0),
            Withdrawal(client=2, tx=4, amount=1.5),
            Dispute(client=3, tx=9),
        ]

        outputs = by_client(replay(transactions, worker_count=2))

        assert outputs == {
            1: Output(client=1, available=3.0, held=0.0, total=3.0, locked=False),
            2: Output(client=2, available=0.5, held=0.0, total=0.5, locked=False),
            3: Output(client=3, available=0.0, held=0.0, total=0.0, locked=False),
        }

    def test_per_client_order_is_preserved(self):
        """Interleaved clients with tiny channels still see their own transactions in order."""
        transactions = []
        for client in range(6):
            transactions += [
                Deposit(client=client, tx=client * 10 + 1, amount=5.0),
                Withdrawal(client=client, tx=client * 10 + 2, amount=4.0),
                Dispute(client=client, tx=client * 10 + 1),
                ChargeBack(client=client, tx=client * 10 + 1),
                Deposit(client=client, tx=client * 10 + 3, amount=100.0),
            ]
        # Round-robin interleave across clients, keeping per-client order
        interleaved = [transactions[c * 5 + i] for i in range(5) for c in range(6)]

        outputs = replay(interleaved, worker_count=3, channel_capacity=1)

        assert len(outputs) == 6
        for output in outputs:
            assert output == Output(client=output.client, available=-4.0, held=0.0, total=-4.0, locked=True)

    @pytest.mark.parametrize("worker_count", [2, 3, 8])
    def test_partition_count_invariance(self, worker_count):
        transactions = list(generate_transactions(5000, seed=7))

        single = replay(transactions, worker_count=1)
        multi = replay(transactions, worker_count=worker_count, channel_capacity=16)

        assert Counter(single) == Counter(multi)
        assert len(single) == len({output.client for output in single})

    def test_partition_count_invariance_random_stream(self):
        transactions = list(generate_random_transactions(2000, seed=11))

        assert Counter(replay(transactions, worker_count=1)) == Counter(
            replay(transactions, worker_count=5, channel_capacity=3)
        )

    def test_total_matches_available_plus_held(self):
        for output in replay(generate_transactions(3000, seed=3), worker_count=4):
            assert output.total == output.available + output.held

    def test_diagnostic_sink_receives_rejections(self):
        diagnostics = []
        transactions = [
            Withdrawal(client=1, tx=1, amount=5.0),
            Resolve(client=2, tx=2),
            Deposit(client=3, tx=3, amount=1.0),
            Dispute(client=3, tx=3),
            ChargeBack(client=3, tx=3),
        ]

        replay(transactions, worker_count=2, diagnostic_sink=diagnostics.append)

        assert sorted((d.client, d.kind) for d in diagnostics) == [
            (1, DiagnosticKind.insufficient_funds),
            (2, DiagnosticKind.no_such_deposit),
            (3, DiagnosticKind.account_locked),
        ]

    @patch("services.logger")
    def test_diagnostics_are_logged(self, mock_logger):
        replay([Withdrawal(client=1, tx=1, amount=5.0)])

        mock_logger.warning.assert_called_once()
        _, kwargs = mock_logger.warning.call_args
        assert kwargs["kind"] == "insufficient_funds"
        assert kwargs["client"] == 1
        assert kwargs["available"] == 0.0


class TestPipelineAsync:
    """Test the asynchronous pipeline API."""

    @pytest.mark.asyncio
    async def test_async_source(self):
        async def source():
            for tx in range(10):
                await asyncio.sleep(0)
                yield Deposit(client=tx % 3, tx=tx, amount=1.0)

        pipeline = TransactionPipeline(worker_count=2, channel_capacity=2)
        outputs = by_client(await pipeline.run(source()))

        assert pipeline.transactions_routed == 10
        assert {client: output.available for client, output in outputs.items()} == {0: 4.0, 1: 3.0, 2: 3.0}

    @pytest.mark.asyncio
    async def test_backpressure_bounds_channel(self):
        """The producer never overfills a worker channel."""
        observed = []
        original_process = AccountWorker.process

        def recording_process(worker, transaction):
            observed.append(worker.channel.qsize())
            return original_process(worker, transaction)

        with patch.object(AccountWorker, "process", recording_process):
            pipeline = TransactionPipeline(worker_count=1, channel_capacity=4)
            outputs = list(await pipeline.run(
                Deposit(client=1, tx=tx, amount=1.0) for tx in range(100)
            ))

        assert outputs[0].available == 100.0
        assert max(observed) <= 4

    @pytest.mark.asyncio
    async def test_source_failure_aborts_run(self):
        def source():
            yield Deposit(client=1, tx=1, amount=1.0)
            raise TransactionParseError("amount", 2)

        pipeline = TransactionPipeline(worker_count=2)

        with pytest.raises(SourceReadError) as exc_info:
            await pipeline.run(source())

        assert isinstance(exc_info.value.__cause__, TransactionParseError)

    @pytest.mark.asyncio
    async def test_source_failure_cancels_workers(self):
        async def source():
            yield Deposit(client=1, tx=1, amount=1.0)
            raise OSError("disk gone")

        before = asyncio.all_tasks()
        with pytest.raises(SourceReadError):
            await TransactionPipeline(worker_count=3).run(source())

        leftover = [task for task in asyncio.all_tasks() - before if not task.done()]
        assert leftover == []

    @pytest.mark.asyncio
    async def test_worker_failure_is_fatal(self):
        """A crashed worker aborts the run instead of silently dropping transactions."""
        def failing_sink(diagnostic):
            raise RuntimeError("audit log unavailable")

        pipeline = TransactionPipeline(worker_count=1, channel_capacity=1, diagnostic_sink=failing_sink)
        transactions = [Withdrawal(client=1, tx=tx, amount=1.0) for tx in range(10)]

        with pytest.raises(PipelineError) as exc_info:
            await pipeline.run(transactions)

        assert isinstance(exc_info.value, ChannelDeliveryError)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
