from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class TransactionType:
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class TransactionStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    values = {PENDING, COMPLETED, FAILED}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction status.")
        return normalized


class RecurringInterval:
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    values = {DAILY, WEEKLY, MONTHLY, YEARLY}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Only DAILY, WEEKLY, MONTHLY, or YEARLY intervals are supported.")
        return normalized


class AccountType:
    values = {"CURRENT", "SAVINGS"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


def to_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class TransactionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    type: str
    amount: Decimal
    description: str | None = None
    date: datetime
    category: str
    receipt_url: str | None = None
    status: str = TransactionStatus.COMPLETED
    is_recurring: bool = False
    recurring_interval: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.status = TransactionStatus.validate(payload.status)
        if not payload.amount.is_finite() or payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.description = payload.description.strip() if payload.description else None
        payload.receipt_url = payload.receipt_url.strip() if payload.receipt_url else None
        payload.date = to_naive(payload.date)
        if payload.is_recurring:
            if not payload.recurring_interval:
                raise ValueError("Recurring transactions require an interval.")
            payload.recurring_interval = RecurringInterval.validate(payload.recurring_interval)
        else:
            payload.recurring_interval = None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    type: str
    amount: Decimal
    description: str | None = None
    date: datetime
    category: str
    receipt_url: str | None = None
    status: str
    is_recurring: bool
    recurring_interval: str | None = None
    next_recurring_date: datetime | None = None
    last_processed: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BulkDeletePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_ids: list[int]


class BulkDeleteResponse(BaseModel):
    deleted_count: int
    balance_changes: dict[int, Decimal]


class SeedTransaction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    amount: Decimal
    description: str | None = None
    date: datetime
    category: str
    status: str = TransactionStatus.COMPLETED

    @classmethod
    def validate_payload(cls, payload: "SeedTransaction") -> "SeedTransaction":
        payload.type = TransactionType.validate(payload.type)
        payload.status = TransactionStatus.validate(payload.status)
        if not payload.amount.is_finite() or payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.category = payload.category.strip()
        if not payload.category:
            raise ValueError("Category required.")
        payload.date = to_naive(payload.date)
        return payload


class ReseedPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transactions: list[SeedTransaction] | None = None


class ReseedResponse(BaseModel):
    account_id: int
    inserted_count: int
    balance: Decimal


class AccountPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    type: str = "CURRENT"
    balance: Decimal = Decimal("0")
    is_default: bool = False

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.type = AccountType.validate(payload.type)
        if not payload.balance.is_finite():
            raise ValueError("Invalid balance amount.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    balance: Decimal
    is_default: bool
    created_at: datetime | None = None
    transaction_count: int | None = None


class AccountDetailResponse(AccountResponse):
    transactions: list[TransactionResponse]


class BudgetPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    last_alert_sent: datetime | None = None


class CurrentBudgetResponse(BaseModel):
    budget: BudgetResponse | None = None
    current_expenses: Decimal


class UserSyncPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_id: str
    email: str
    name: str | None = None


class UserResponse(BaseModel):
    id: int
    external_id: str | None = None
    email: str
    name: str | None = None
    created_at: datetime | None = None


class ReceiptScanResponse(BaseModel):
    amount: Decimal
    date: datetime
    description: str
    merchant_name: str
    category: str


class DashboardResponse(BaseModel):
    accounts: list[AccountResponse]
    transactions: list[TransactionResponse]


class JobResponse(BaseModel):
    job: str
    processed: int
    failed: int = 0
