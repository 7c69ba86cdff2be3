"""CSV encoding of transactions and account summaries.

Transaction rows are ``type, client, tx, amount``; the first row is a header
and is skipped. Surrounding whitespace is ignored and only the first four
columns are read. Disputes, resolves and chargebacks leave ``amount`` empty.
"""
import csv
import io
from typing import Iterable, Iterator, List, Optional, TextIO

from exceptions import TransactionParseError
from models import (
    ChargeBack,
    Deposit,
    Dispute,
    Output,
    Resolve,
    Transaction,
    TransactionType,
    Withdrawal,
)

TRANSACTION_HEADER = ["type", "client", "tx", "amount"]
OUTPUT_HEADER = ["client", "available", "held", "total", "locked"]

_MAX_CLIENT_ID = 0xFFFF
_MAX_TRANSACTION_ID = 0xFFFFFFFF


def _parse_unsigned(value: Optional[str], limit: int) -> Optional[int]:
    if not value or not (value.isascii() and value.isdigit()):
        return None
    # int() refuses very long digit strings
    if len(value.lstrip("0")) > len(str(limit)):
        return None
    number = int(value)
    return number if number <= limit else None


def _parse_amount(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_row(fields: List[str], line: int) -> Transaction:
    fields = [field.strip() for field in fields[:4]]
    fields += [None] * (4 - len(fields))
    raw_type, raw_client, raw_tx, raw_amount = fields

    try:
        kind = TransactionType(raw_type)
    except ValueError:
        raise TransactionParseError("type", line) from None

    client = _parse_unsigned(raw_client, _MAX_CLIENT_ID)
    if client is None:
        raise TransactionParseError("client", line)

    tx = _parse_unsigned(raw_tx, _MAX_TRANSACTION_ID)
    if tx is None:
        raise TransactionParseError("tx", line)

    if kind in (TransactionType.deposit, TransactionType.withdrawal):
        amount = _parse_amount(raw_amount)
        if amount is None:
            raise TransactionParseError("amount", line)
        model = Deposit if kind == TransactionType.deposit else Withdrawal
        return model(client=client, tx=tx, amount=amount)

    if kind == TransactionType.dispute:
        return Dispute(client=client, tx=tx)
    if kind == TransactionType.resolve:
        return Resolve(client=client, tx=tx)
    return ChargeBack(client=client, tx=tx)


def parse_transactions(lines: Iterable[str]) -> Iterator[Transaction]:
    """Lazily decode CSV ``lines`` into transactions.

    Rows are split on every comma; quoting is not supported, so a quoted
    value is read literally and fails validation. Raises
    TransactionParseError on the first malformed row. Line numbers in errors
    count the header as line 0.
    """
    for line, text in enumerate(lines):
        if line == 0:
            continue
        yield _parse_row(text.split(",", 4), line)


def _format_amount(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _transaction_row(transaction: Transaction) -> List[str]:
    amount = getattr(transaction, "amount", None)
    return [
        transaction.type,
        str(transaction.client),
        str(transaction.tx),
        "" if amount is None else _format_amount(amount),
    ]


def _output_row(output: Output) -> List[str]:
    return [
        str(output.client),
        _format_amount(output.available),
        _format_amount(output.held),
        _format_amount(output.total),
        "true" if output.locked else "false",
    ]


def write_transactions(transactions: Iterable[Transaction], stream: TextIO) -> int:
    """Write a header and one row per transaction. Returns the row count."""
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(TRANSACTION_HEADER)
    count = 0
    for transaction in transactions:
        writer.writerow(_transaction_row(transaction))
        count += 1
    return count


def write_outputs(outputs: Iterable[Output], stream: TextIO) -> int:
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(OUTPUT_HEADER)
    count = 0
    for output in outputs:
        writer.writerow(_output_row(output))
        count += 1
    return count


def format_transactions(transactions: Iterable[Transaction]) -> str:
    buffer = io.StringIO()
    write_transactions(transactions, buffer)
    return buffer.getvalue()


def format_outputs(outputs: Iterable[Output]) -> str:
    buffer = io.StringIO()
    write_outputs(outputs, buffer)
    return buffer.getvalue()
