"""Synthetic transaction streams for load and property tests."""
import random
from typing import Iterator, List, Optional, Tuple

from models import ChargeBack, Deposit, Dispute, Resolve, Transaction, Withdrawal

_MAX_CLIENT_ID = 0xFFFF
_MAX_TRANSACTION_ID = 0xFFFFFFFF


def generate_transactions(count: int, seed: Optional[int] = None) -> Iterator[Transaction]:
    """Generate a plausible stream of up to ``count`` transactions.

    Disputes, resolves and chargebacks always target a deposit generated
    earlier in the stream. Chargebacks are rare so most clients stay unlocked.
    Rolls that would need a deposit before any exists are skipped, so the
    stream can be slightly shorter than ``count``.
    """
    rng = random.Random(seed)
    next_tx = 0
    next_client = 1
    clients: List[int] = [0]
    deposits: List[Tuple[int, int]] = []

    for _ in range(count):
        roll = rng.randrange(100)

        if roll <= 25:
            if next_client <= _MAX_CLIENT_ID and rng.random() < 0.2:
                client = next_client
                clients.append(client)
                next_client += 1
            else:
                client = rng.choice(clients)
            deposits.append((next_tx, client))
            yield Deposit(client=client, tx=next_tx, amount=rng.uniform(0.0, 1000.0))
            next_tx += 1
        elif roll <= 50:
            yield Withdrawal(client=rng.choice(clients), tx=next_tx, amount=rng.uniform(0.0, 1000.0))
            next_tx += 1
        elif not deposits:
            continue
        else:
            tx, client = rng.choice(deposits)
            if roll <= 70:
                yield Dispute(client=client, tx=tx)
            elif roll <= 98:
                yield Resolve(client=client, tx=tx)
            else:
                yield ChargeBack(client=client, tx=tx)


def generate_random_transactions(count: int, seed: Optional[int] = None) -> Iterator[Transaction]:
    """Generate ``count`` transactions with uniformly random kinds, ids and amounts."""
    rng = random.Random(seed)

    for _ in range(count):
        client = rng.randint(0, _MAX_CLIENT_ID)
        tx = rng.randint(0, _MAX_TRANSACTION_ID)
        kind = rng.randrange(5)

        if kind == 0:
            yield Deposit(client=client, tx=tx, amount=rng.random())
        elif kind == 1:
            yield Withdrawal(client=client, tx=tx, amount=rng.random())
        elif kind == 2:
            yield Dispute(client=client, tx=tx)
        elif kind == 3:
            yield Resolve(client=client, tx=tx)
        else:
            yield ChargeBack(client=client, tx=tx)
