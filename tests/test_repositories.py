from datetime import datetime

import pytest

from models import Deposit, Output, ReplayResponse
from repositories import InMemoryAccountRepository, InMemoryReplayLogRepository


class TestInMemoryAccountRepository:
    """Test the account table."""

    def test_accounts_are_created_lazily(self):
        repo = InMemoryAccountRepository()

        assert len(repo) == 0

        account = repo.get_or_create(7)

        assert repo.get_or_create(7) is account
        assert len(repo) == 1

    def test_outputs(self):
        repo = InMemoryAccountRepository()
        repo.get_or_create(1).apply(Deposit(client=1, tx=1, amount=2.5))
        repo.get_or_create(2)

        assert sorted(repo.outputs(), key=lambda o: o.client) == [
            Output(client=1, available=2.5, held=0.0, total=2.5, locked=False),
            Output(client=2, available=0.0, held=0.0, total=0.0, locked=False),
        ]


class TestInMemoryReplayLogRepository:
    """Test the replay log."""

    @pytest.mark.asyncio
    async def test_store_and_count(self):
        repo = InMemoryReplayLogRepository()
        for replay_id, transactions in (("a", 3), ("b", 4)):
            await repo.store_replay(ReplayResponse(
                replayId=replay_id,
                accounts=[],
                transactionsProcessed=transactions,
                timestamp=datetime.now()
            ))

        assert await repo.get_replays_count() == 2
        assert await repo.get_transactions_count() == 7
        assert (await repo.get_replay("a")).transactionsProcessed == 3
        assert await repo.get_replay("missing") is None

        repo.clear()
        assert await repo.get_replays_count() == 0
