from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional

from accounts import Account
from models import Output, ReplayResponse


class AccountRepository(ABC):
    """Account table keyed by client id.

    Implementations are owned by a single worker and are never shared, so
    they carry no locking.
    """

    @abstractmethod
    def get_or_create(self, client_id: int) -> Account:
        """Get the client's account, creating an empty one on first reference."""
        pass

    @abstractmethod
    def outputs(self) -> Iterator[Output]:
        """Yield the final summary of every account in the table."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


class ReplayLogRepository(ABC):
    @abstractmethod
    async def get_replay(self, replay_id: str) -> Optional[ReplayResponse]:
        """Get a stored replay result by id."""
        pass

    @abstractmethod
    async def store_replay(self, response: ReplayResponse) -> None:
        """Store a completed replay result."""
        pass

    @abstractmethod
    async def get_replays_count(self) -> int:
        """Get total number of stored replays."""
        pass

    @abstractmethod
    async def get_transactions_count(self) -> int:
        """Get total number of transactions across stored replays."""
        pass


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[int, Account] = {}

    def get_or_create(self, client_id: int) -> Account:
        account = self.accounts.get(client_id)
        if account is None:
            account = self.accounts[client_id] = Account()
        return account

    def outputs(self) -> Iterator[Output]:
        for client_id, account in self.accounts.items():
            yield account.to_output(client_id)

    def __len__(self) -> int:
        return len(self.accounts)


class InMemoryReplayLogRepository(ReplayLogRepository):
    def __init__(self):
        self.store: Dict[str, ReplayResponse] = {}

    async def get_replay(self, replay_id: str) -> Optional[ReplayResponse]:
        return self.store.get(replay_id)

    async def store_replay(self, response: ReplayResponse) -> None:
        self.store[response.replayId] = response

    async def get_replays_count(self) -> int:
        return len(self.store)

    async def get_transactions_count(self) -> int:
        return sum(replay.transactionsProcessed for replay in self.store.values())

    def clear(self) -> None:
        """Clear all stored replays (for testing)."""
        self.store.clear()


# Process-wide instance used by the HTTP layer
_replay_log_repo = InMemoryReplayLogRepository()


def get_replay_log_repository() -> ReplayLogRepository:
    return _replay_log_repo


def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _replay_log_repo
    _replay_log_repo = InMemoryReplayLogRepository()
