from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum
from typing import List, Optional
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN


# Amounts are fixed-point with four fractional digits.
AMOUNT_PLACES = Decimal("0.0001")
ZERO = Decimal("0.0000")

MAX_CLIENT_ID = 2**16 - 1
MAX_TRANSACTION_ID = 2**32 - 1
# With at most 2**32 root transactions per ledger, balances built from amounts
# up to this bound stay within the 28 significant digits of the decimal context.
MAX_AMOUNT = Decimal("99999999999999.9999")


def to_amount(value: Decimal) -> Decimal:
    """Quantize a decimal to the ledger's four-place representation."""
    return value.quantize(AMOUNT_PLACES, rounding=ROUND_HALF_EVEN)


def format_amount(value: Decimal) -> str:
    """Render an amount as fixed-point text, e.g. ``3.0000``."""
    return f"{to_amount(value):f}"


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    dispute = "dispute"
    resolve = "resolve"
    chargeback = "chargeback"

    @property
    def is_root(self) -> bool:
        """Deposits and withdrawals stand alone; everything else references one."""
        return self in (TransactionType.deposit, TransactionType.withdrawal)


class TransactionState(str, Enum):
    """Lifecycle of a root transaction.

    needs_processing -> processed -> disputed -> (processed | charged_back)
    """

    needs_processing = "needs_processing"
    processed = "processed"
    disputed = "disputed"
    charged_back = "charged_back"


class TransactionRecord(BaseModel):
    type: TransactionType = Field(..., description="Transaction type")
    client: int = Field(..., ge=0, le=MAX_CLIENT_ID, description="Owning client id")
    tx: int = Field(
        ...,
        ge=0,
        le=MAX_TRANSACTION_ID,
        description="Transaction id, or the referenced root transaction id for control operations",
    )
    amount: Optional[Decimal] = Field(
        default=None,
        ge=0,
        le=MAX_AMOUNT,
        description="Present for deposits and withdrawals only",
    )
    state: TransactionState = Field(default=TransactionState.needs_processing, exclude=True)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def empty_amount_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("amount")
    @classmethod
    def quantize_amount(cls, v):
        if v is None:
            return v
        return to_amount(v)

    @model_validator(mode="after")
    def check_amount_for_type(self):
        if self.type.is_root:
            if self.amount is None:
                raise ValueError(f"{self.type.value} requires an amount")
        else:
            # Control operations carry no amount of their own.
            self.amount = None
        return self

    @property
    def is_root(self) -> bool:
        return self.type.is_root

    def __repr__(self) -> str:
        return f"TransactionRecord({self.type.value}, client={self.client}, tx={self.tx}, amount={self.amount})"


class Account(BaseModel):
    client: int
    held: Decimal = ZERO
    total: Decimal = ZERO
    locked: bool = False

    @property
    def available(self) -> Decimal:
        # Derived so it can never drift from total and held.
        return self.total - self.held

    def snapshot(self) -> "Account":
        return self.model_copy()


class AccountResponse(BaseModel):
    client: int = Field(..., description="Client id")
    available: str = Field(..., description="Funds available for withdrawal")
    held: str = Field(..., description="Funds held by open disputes")
    total: str = Field(..., description="Available plus held")
    locked: bool = Field(..., description="Whether a chargeback locked the account")

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            client=account.client,
            available=format_amount(account.available),
            held=format_amount(account.held),
            total=format_amount(account.total),
            locked=account.locked,
        )


class LedgerReport(BaseModel):
    records_applied: int = Field(..., description="Records that passed their preconditions")
    records_skipped: int = Field(..., description="Records skipped on a failed precondition")
    accounts: List[AccountResponse] = Field(..., description="Account table after processing")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in the ledger")
    transactions_indexed: int = Field(..., description="Root transactions known to the index")
