import datetime as dt
from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import Frequency, TransactionKind


TRANSFER_CATEGORY = "Transfer"
LOAN_REPAYMENT_CATEGORY = "Loan Repayment"


def new_id() -> str:
    return uuid4().hex


def _check_accounts(
    kind: TransactionKind, account_id: str, to_account_id: Optional[str]
) -> None:
    if kind == TransactionKind.transfer:
        if not to_account_id:
            raise ValueError("Transfer requires a destination account")
        if to_account_id == account_id:
            raise ValueError("Transfer source and destination must differ")
    elif to_account_id:
        raise ValueError("Only transfers may carry a destination account")


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    kind: TransactionKind
    category: str = Field(default="", max_length=100)
    account_id: str = Field(..., min_length=1)
    to_account_id: Optional[str] = None
    date: dt.date
    note: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _validate_accounts(self) -> "TransactionIn":
        _check_accounts(self.kind, self.account_id, self.to_account_id)
        if self.kind == TransactionKind.transfer and not self.category:
            self.category = TRANSFER_CATEGORY
        if not self.category:
            raise ValueError("Category is required")
        return self


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    kind: Optional[TransactionKind] = None
    category: Optional[str] = Field(default=None, max_length=100)
    account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=200)


class TransactionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    amount_cents: int
    kind: TransactionKind
    category: str
    account_id: str
    to_account_id: Optional[str] = None
    date: dt.date
    note: Optional[str] = None
    recurring_rule_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_recurring(self) -> bool:
        return self.recurring_rule_id is not None


class RecurringRuleIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    kind: TransactionKind
    category: str = Field(default="", max_length=100)
    account_id: str = Field(..., min_length=1)
    to_account_id: Optional[str] = None
    note: Optional[str] = Field(default=None, max_length=200)
    frequency: Frequency
    anchor_date: date
    max_occurrences: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _validate_accounts(self) -> "RecurringRuleIn":
        _check_accounts(self.kind, self.account_id, self.to_account_id)
        if self.kind == TransactionKind.transfer and not self.category:
            self.category = TRANSFER_CATEGORY
        if not self.category:
            raise ValueError("Category is required")
        return self


class RecurringRule(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    amount_cents: int
    kind: TransactionKind
    category: str
    account_id: str
    to_account_id: Optional[str] = None
    note: Optional[str] = None
    frequency: Frequency
    anchor_date: date
    max_occurrences: Optional[int] = None
    # slots consumed so far, counted from the anchor; never decremented
    materialized_count: int = 0
    active: bool = True
    liability_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def remaining_occurrences(self) -> Optional[int]:
        if self.max_occurrences is None:
            return None
        return max(self.max_occurrences - self.materialized_count, 0)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    asset_type: str = Field(default="bank", max_length=40)
    cost_basis_cents: int = 0


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=100)
    asset_type: Optional[str] = Field(default=None, max_length=40)


class RebaseIn(BaseModel):
    base_cents: int


class Account(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str
    asset_type: str = "bank"
    cost_basis_cents: int = 0
    current_value_cents: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class LiabilityIn(BaseModel):
    id: Optional[str] = Field(default=None, max_length=32)
    name: str = Field(..., min_length=1, max_length=100)
    liability_type: str = Field(default="personal_loan", max_length=40)
    base_balance_cents: int = 0
    interest_rate: Optional[float] = Field(default=None, ge=0)
    monthly_payment_cents: Optional[int] = Field(default=None, ge=0)
    payment_account_id: Optional[str] = None
    payment_day: Optional[int] = Field(default=None, ge=1, le=31)
    payment_periods: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[date] = None


class Liability(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str
    liability_type: str = "personal_loan"
    base_balance_cents: int = 0
    balance_cents: int = 0
    interest_rate: Optional[float] = None
    monthly_payment_cents: Optional[int] = None
    payment_account_id: Optional[str] = None
    payment_day: Optional[int] = None
    payment_periods: Optional[int] = None
    start_date: Optional[date] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_autopay(self) -> bool:
        return bool(
            self.monthly_payment_cents
            and self.payment_account_id
            and self.payment_day
        )
