from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime


ClientId = Annotated[int, Field(ge=0, le=0xFFFF, description="Client identifier")]
TransactionId = Annotated[int, Field(ge=0, le=0xFFFFFFFF, description="Transaction identifier")]


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    dispute = "dispute"
    resolve = "resolve"
    chargeback = "chargeback"


class _TransactionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    client: ClientId
    tx: TransactionId


class Deposit(_TransactionBase):
    type: Literal["deposit"] = "deposit"
    amount: float = Field(..., description="Credited amount; sign is not checked")


class Withdrawal(_TransactionBase):
    type: Literal["withdrawal"] = "withdrawal"
    amount: float = Field(..., description="Debited amount; sign is not checked")


class Dispute(_TransactionBase):
    type: Literal["dispute"] = "dispute"


class Resolve(_TransactionBase):
    type: Literal["resolve"] = "resolve"


class ChargeBack(_TransactionBase):
    type: Literal["chargeback"] = "chargeback"


Transaction = Annotated[
    Union[Deposit, Withdrawal, Dispute, Resolve, ChargeBack],
    Field(discriminator="type"),
]


class DepositStatus(str, Enum):
    normal = "normal"
    disputed = "disputed"
    charged_back = "charged_back"


class DepositRecord(BaseModel):
    """A processed deposit that may later be disputed."""

    model_config = ConfigDict(frozen=True)

    amount: float
    status: DepositStatus = DepositStatus.normal


class DiagnosticKind(str, Enum):
    insufficient_funds = "insufficient_funds"
    no_such_deposit = "no_such_deposit"
    already_disputed = "already_disputed"
    not_disputed = "not_disputed"
    account_locked = "account_locked"


class Diagnostic(BaseModel):
    """Advisory event emitted when a transaction is rejected or locks an account."""

    model_config = ConfigDict(frozen=True, ser_json_inf_nan="strings")

    kind: DiagnosticKind = Field(..., description="Machine-readable diagnostic kind")
    client: ClientId
    tx: TransactionId
    context: Dict[str, Any] = Field(default_factory=dict, description="Balances involved, if any")


class Output(BaseModel):
    """Final balance summary of a single client."""

    model_config = ConfigDict(frozen=True, ser_json_inf_nan="strings")

    client: ClientId
    available: float
    held: float
    total: float
    locked: bool


# HTTP payloads

class ReplayRequest(BaseModel):
    transactions: List[Transaction] = Field(
        ...,
        description="Transactions in arrival order"
    )
    workerCount: Optional[int] = Field(
        None,
        ge=1,
        le=64,
        description="Number of workers; defaults to the configured value"
    )


class ReplayResponse(BaseModel):
    replayId: str = Field(..., description="Unique replay identifier")
    accounts: List[Output] = Field(..., description="Per-client summaries, unordered")
    diagnostics: List[Diagnostic] = Field(default_factory=list, description="Rejections and locks")
    transactionsProcessed: int = Field(..., description="Number of transactions replayed")
    timestamp: datetime = Field(..., description="Replay completion timestamp")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    replays_count: int = Field(..., description="Number of replays completed")
    transactions_processed: int = Field(..., description="Total transactions replayed")
