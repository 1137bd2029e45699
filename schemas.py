import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, RecurringInterval, TransactionStatus, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance_cents: int = 0
    is_default: bool = False


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int
    date: dt.date
    category: str = Field(..., min_length=1, max_length=60)
    description: Optional[str] = Field(default=None, max_length=500)
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    status: TransactionStatus = TransactionStatus.completed


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int


class WorkItem(BaseModel):
    """Descriptor handed to the dispatch transport for one due recurring row."""

    model_config = ConfigDict(frozen=True)

    transaction_id: int
    user_id: int


class ScannedReceipt(BaseModel):
    amount_cents: int = 0
    date: Optional[dt.date] = None
    description: str = ""
    merchant_name: str = ""
    category: str = ""


class MonthlyStats(BaseModel):
    income_cents: int = 0
    expense_cents: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    transaction_count: int = 0


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    is_default: bool
    transaction_count: int = 0


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount_cents: int
    date: dt.date
    category: str
    description: Optional[str]
    receipt_url: Optional[str]
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[dt.date]
    last_processed: Optional[dt.datetime]
    status: TransactionStatus


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    amount_cents: int
    last_alert_sent: Optional[dt.datetime]
