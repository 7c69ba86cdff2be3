import asyncio
import itertools
import uuid
from collections.abc import AsyncIterable
from datetime import datetime
from typing import AsyncIterator, Callable, Iterable, Iterator, List, Optional, Union
from zoneinfo import ZoneInfo

import structlog
from fastapi import HTTPException

from codec import format_outputs, parse_transactions
from config import Settings
from exceptions import (
    ChannelDeliveryError,
    ConfigurationError,
    SourceReadError,
    TransactionParseError,
    WorkerFailedError,
)
from models import Diagnostic, DiagnosticKind, Output, ReplayRequest, ReplayResponse, Transaction
from repositories import AccountRepository, InMemoryAccountRepository, ReplayLogRepository

# Configure structured logging
logger = structlog.get_logger()

DEFAULT_CHANNEL_CAPACITY = 100_000

TransactionSource = Union[Iterable[Transaction], AsyncIterable]
DiagnosticSink = Callable[[Diagnostic], None]

# Placed on a worker channel after the last transaction
_END_OF_INPUT = object()

_DIAGNOSTIC_MESSAGES = {
    DiagnosticKind.insufficient_funds: "Insufficient funds for withdrawal",
    DiagnosticKind.no_such_deposit: "Referenced deposit does not exist",
    DiagnosticKind.already_disputed: "Deposit is already disputed",
    DiagnosticKind.not_disputed: "Deposit is not disputed",
    DiagnosticKind.account_locked: "Account locked after chargeback",
}


def report_diagnostic(diagnostic: Diagnostic, worker_id: int) -> None:
    """Log a rejected or account-locking transaction."""
    logger.warning(
        _DIAGNOSTIC_MESSAGES[diagnostic.kind],
        kind=diagnostic.kind.value,
        client=diagnostic.client,
        tx=diagnostic.tx,
        worker_id=worker_id,
        **diagnostic.context
    )


class ClientPartitioner:
    """Stable client -> worker assignment for the duration of a run."""

    def __init__(self, worker_count: int):
        if worker_count < 1:
            raise ConfigurationError(f"worker_count must be at least 1, got {worker_count}")
        self.worker_count = worker_count

    def partition_for(self, client_id: int) -> int:
        return client_id % self.worker_count


class AccountWorker:
    """Applies the transactions of one partition to its private account shard."""

    def __init__(
        self,
        worker_id: int,
        channel_capacity: int,
        repository: Optional[AccountRepository] = None,
        diagnostic_sink: Optional[DiagnosticSink] = None
    ):
        self.worker_id = worker_id
        self.channel: asyncio.Queue = asyncio.Queue(maxsize=channel_capacity)
        self.accounts = repository if repository is not None else InMemoryAccountRepository()
        self.diagnostic_sink = diagnostic_sink
        self.processed = 0

    async def run(self) -> AccountRepository:
        """Process the channel until end of input, then hand back the shard."""
        while True:
            transaction = await self.channel.get()
            if transaction is _END_OF_INPUT:
                break
            self.process(transaction)

        logger.debug(
            "Worker drained",
            worker_id=self.worker_id,
            transactions=self.processed,
            accounts=len(self.accounts)
        )
        return self.accounts

    def process(self, transaction: Transaction) -> Optional[Diagnostic]:
        account = self.accounts.get_or_create(transaction.client)
        diagnostic = account.apply(transaction)
        self.processed += 1

        if diagnostic is not None:
            report_diagnostic(diagnostic, self.worker_id)
            if self.diagnostic_sink is not None:
                self.diagnostic_sink(diagnostic)

        return diagnostic


async def _iterate(source: TransactionSource) -> AsyncIterator[Transaction]:
    if isinstance(source, AsyncIterable):
        async for transaction in source:
            yield transaction
    else:
        for transaction in source:
            yield transaction


class TransactionPipeline:
    """Replays a transaction stream across ``worker_count`` partitioned workers.

    Every transaction of a client is routed to the same worker through a FIFO
    channel, so per-client order is preserved while shards stay disjoint and
    need no locking. Each channel holds at most ``channel_capacity`` pending
    transactions; the producer waits when a channel is full.

    A failing source or worker aborts the whole run: the remaining workers are
    cancelled and no output is produced.

    ``diagnostic_sink`` is called from inside the workers. Diagnostics never
    change how a transaction is applied, but an exception raised by the sink
    itself fails its worker and therefore aborts the run.
    """

    def __init__(
        self,
        worker_count: int = 1,
        channel_capacity: int = DEFAULT_CHANNEL_CAPACITY,
        diagnostic_sink: Optional[DiagnosticSink] = None
    ):
        if channel_capacity < 1:
            raise ConfigurationError(f"channel_capacity must be at least 1, got {channel_capacity}")
        self.partitioner = ClientPartitioner(worker_count)
        self.channel_capacity = channel_capacity
        self.diagnostic_sink = diagnostic_sink
        self.transactions_routed = 0

    @property
    def worker_count(self) -> int:
        return self.partitioner.worker_count

    async def run(self, source: TransactionSource) -> Iterator[Output]:
        """Replay ``source`` and return the summaries of every client seen."""
        workers = [
            AccountWorker(i, self.channel_capacity, diagnostic_sink=self.diagnostic_sink)
            for i in range(self.worker_count)
        ]
        tasks = [
            asyncio.create_task(worker.run(), name=f"account-worker-{worker.worker_id}")
            for worker in workers
        ]

        self.transactions_routed = 0
        logger.info(
            "Replay started",
            worker_count=self.worker_count,
            channel_capacity=self.channel_capacity
        )

        try:
            self.transactions_routed = await self._produce(source, workers, tasks)

            # Close every channel so workers drain and stop
            for worker, task in zip(workers, tasks):
                await self._deliver(worker, task, _END_OF_INPUT)

            shards = await self._join(workers, tasks)
        except BaseException as e:
            logger.error(
                "Replay aborted",
                error=str(e),
                transactions_routed=self.transactions_routed
            )
            await self._abort(tasks)
            raise

        logger.info(
            "Replay completed",
            transactions=self.transactions_routed,
            accounts=sum(len(shard) for shard in shards)
        )

        return itertools.chain.from_iterable(shard.outputs() for shard in shards)

    async def _produce(
        self,
        source: TransactionSource,
        workers: List[AccountWorker],
        tasks: List[asyncio.Task]
    ) -> int:
        routed = 0
        transactions = _iterate(source)
        try:
            while True:
                try:
                    transaction = await transactions.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as e:
                    raise SourceReadError(
                        f"Transaction source failed after {routed} transactions: {e}"
                    ) from e

                index = self.partitioner.partition_for(transaction.client)
                await self._deliver(workers[index], tasks[index], transaction)
                routed += 1
                self.transactions_routed = routed
        finally:
            await transactions.aclose()

        return routed

    @staticmethod
    def _ensure_alive(worker: AccountWorker, task: asyncio.Task) -> None:
        if task.done():
            cause = None if task.cancelled() else task.exception()
            raise ChannelDeliveryError(worker.worker_id) from cause

    async def _deliver(self, worker: AccountWorker, task: asyncio.Task, item: object) -> None:
        self._ensure_alive(worker, task)
        try:
            worker.channel.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        # Channel is full: wait for room unless the worker dies first
        put = asyncio.ensure_future(worker.channel.put(item))
        done, _ = await asyncio.wait({put, task}, return_when=asyncio.FIRST_COMPLETED)
        if put not in done:
            put.cancel()
            self._ensure_alive(worker, task)

    @staticmethod
    async def _join(workers: List[AccountWorker], tasks: List[asyncio.Task]) -> List[AccountRepository]:
        shards = []
        for worker, task in zip(workers, tasks):
            try:
                shards.append(await task)
            except Exception as e:
                raise WorkerFailedError(worker.worker_id) from e
        return shards

    @staticmethod
    async def _abort(tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def replay(
    source: TransactionSource,
    worker_count: int = 1,
    channel_capacity: int = DEFAULT_CHANNEL_CAPACITY,
    diagnostic_sink: Optional[DiagnosticSink] = None
) -> List[Output]:
    """Run a pipeline to completion on a fresh event loop."""
    pipeline = TransactionPipeline(worker_count, channel_capacity, diagnostic_sink)

    async def _run() -> List[Output]:
        return list(await pipeline.run(source))

    return asyncio.run(_run())


class ReplayService:
    def __init__(self, replay_log_repo: ReplayLogRepository, settings: Settings):
        self.replay_log_repo = replay_log_repo
        self.settings = settings

    async def process_replay(self, request: ReplayRequest) -> ReplayResponse:
        """Replay a JSON batch of transactions."""
        worker_count = request.workerCount or self.settings.worker_count

        logger.info(
            "Processing replay",
            transactions=len(request.transactions),
            worker_count=worker_count
        )

        self._check_batch_size(len(request.transactions))

        diagnostics: List[Diagnostic] = []
        pipeline = TransactionPipeline(worker_count, self.settings.channel_capacity, diagnostics.append)
        accounts = list(await pipeline.run(request.transactions))

        return await self._record(accounts, diagnostics, pipeline.transactions_routed)

    async def process_csv(self, body: str) -> str:
        """Replay a CSV document and render the summaries as CSV."""
        lines = body.splitlines()
        self._check_batch_size(max(len(lines) - 1, 0))

        diagnostics: List[Diagnostic] = []
        pipeline = TransactionPipeline(
            self.settings.worker_count,
            self.settings.channel_capacity,
            diagnostics.append
        )

        try:
            accounts = list(await pipeline.run(parse_transactions(lines)))
        except SourceReadError as e:
            if isinstance(e.__cause__, TransactionParseError):
                logger.warning("Rejected CSV replay", error=str(e.__cause__))
                raise HTTPException(status_code=422, detail=str(e.__cause__))
            raise

        await self._record(accounts, diagnostics, pipeline.transactions_routed)
        return format_outputs(accounts)

    def _check_batch_size(self, size: int) -> None:
        if size > self.settings.max_batch_size:
            logger.warning(
                "Replay batch too large",
                size=size,
                max_batch_size=self.settings.max_batch_size
            )
            raise HTTPException(
                status_code=413,
                detail=f"Batch exceeds {self.settings.max_batch_size} transactions"
            )

    async def _record(
        self,
        accounts: List[Output],
        diagnostics: List[Diagnostic],
        transactions: int
    ) -> ReplayResponse:
        response = ReplayResponse(
            replayId=str(uuid.uuid4()),
            accounts=accounts,
            diagnostics=diagnostics,
            transactionsProcessed=transactions,
            timestamp=datetime.now(ZoneInfo(self.settings.timezone))
        )

        await self.replay_log_repo.store_replay(response)

        logger.info(
            "Replay processed successfully",
            replay_id=response.replayId,
            transactions=transactions,
            accounts=len(accounts),
            diagnostics=len(diagnostics)
        )

        return response


# Factory function for dependency injection
def get_replay_service(replay_log_repo: ReplayLogRepository, settings: Settings) -> ReplayService:
    return ReplayService(replay_log_repo, settings)
