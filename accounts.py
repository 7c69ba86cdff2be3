"""Per-client account state machine.

The decision logic lives in :func:`transition`, a pure function of the current
balances, the deposit record referenced by the transaction and the transaction
itself. :class:`Account` is the mutable shell that commits its result.

Deposit records move ``normal -> disputed -> normal | charged_back``; a
chargeback is terminal for the deposit and locks the whole account. A locked
account ignores every further transaction without emitting a diagnostic.
"""
from typing import Any, Dict, NamedTuple, Optional

from models import (
    DepositRecord,
    DepositStatus,
    Diagnostic,
    DiagnosticKind,
    Output,
    Transaction,
    TransactionType,
)


class Balances(NamedTuple):
    available: float = 0.0
    held: float = 0.0
    locked: bool = False

    @property
    def total(self) -> float:
        return self.available + self.held


class Transition(NamedTuple):
    """Result of applying one transaction to an account."""

    balances: Balances
    # Record to store under the transaction id; None leaves the deposits untouched.
    deposit: Optional[DepositRecord] = None
    diagnostic: Optional[Diagnostic] = None


def _reject(
    balances: Balances,
    kind: DiagnosticKind,
    transaction: Transaction,
    **context: Any
) -> Transition:
    diagnostic = Diagnostic(kind=kind, client=transaction.client, tx=transaction.tx, context=context)
    return Transition(balances, None, diagnostic)


def transition(
    balances: Balances,
    deposit: Optional[DepositRecord],
    transaction: Transaction
) -> Transition:
    """Decide the effect of ``transaction`` without mutating anything.

    ``deposit`` is the record currently stored under ``transaction.tx``, or
    None when the account never saw a deposit with that id.
    """
    if balances.locked:
        return Transition(balances)

    if transaction.type == TransactionType.deposit:
        return Transition(
            balances._replace(available=balances.available + transaction.amount),
            DepositRecord(amount=transaction.amount),
        )

    if transaction.type == TransactionType.withdrawal:
        if balances.available - transaction.amount < 0:
            return _reject(
                balances,
                DiagnosticKind.insufficient_funds,
                transaction,
                amount=transaction.amount,
                available=balances.available,
            )
        return Transition(balances._replace(available=balances.available - transaction.amount))

    if transaction.type not in (TransactionType.dispute, TransactionType.resolve, TransactionType.chargeback):
        raise ValueError(f"Unsupported transaction type: {transaction.type!r}")

    if deposit is None:
        return _reject(balances, DiagnosticKind.no_such_deposit, transaction)

    amount = deposit.amount

    if transaction.type == TransactionType.dispute:
        if deposit.status != DepositStatus.normal:
            return _reject(balances, DiagnosticKind.already_disputed, transaction, status=deposit.status.value)
        # No floor check: available goes negative if the funds were already withdrawn.
        return Transition(
            balances._replace(available=balances.available - amount, held=balances.held + amount),
            deposit.model_copy(update={"status": DepositStatus.disputed}),
        )

    if deposit.status != DepositStatus.disputed:
        return _reject(balances, DiagnosticKind.not_disputed, transaction, status=deposit.status.value)

    if transaction.type == TransactionType.resolve:
        return Transition(
            balances._replace(available=balances.available + amount, held=balances.held - amount),
            deposit.model_copy(update={"status": DepositStatus.normal}),
        )

    # Chargeback
    return Transition(
        Balances(available=balances.available, held=balances.held - amount, locked=True),
        deposit.model_copy(update={"status": DepositStatus.charged_back}),
        Diagnostic(
            kind=DiagnosticKind.account_locked,
            client=transaction.client,
            tx=transaction.tx,
            context={"amount": amount},
        ),
    )


class Account:
    """Mutable state of one client."""

    __slots__ = ("balances", "deposits")

    def __init__(self):
        self.balances = Balances()
        self.deposits: Dict[int, DepositRecord] = {}

    @property
    def available(self) -> float:
        return self.balances.available

    @property
    def held(self) -> float:
        return self.balances.held

    @property
    def total(self) -> float:
        return self.balances.total

    @property
    def locked(self) -> bool:
        return self.balances.locked

    def apply(self, transaction: Transaction) -> Optional[Diagnostic]:
        """Apply ``transaction`` and return the diagnostic it produced, if any."""
        result = transition(self.balances, self.deposits.get(transaction.tx), transaction)
        self.balances = result.balances
        if result.deposit is not None:
            self.deposits[transaction.tx] = result.deposit
        return result.diagnostic

    def to_output(self, client: int) -> Output:
        available, held, locked = self.balances
        return Output(
            client=client,
            available=available,
            held=held,
            total=available + held,
            locked=locked,
        )

    def __repr__(self) -> str:
        return (
            f"Account(available={self.available!r}, held={self.held!r}, "
            f"locked={self.locked!r}, deposits={len(self.deposits)})"
        )
