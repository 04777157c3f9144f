import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field

from models import AccountType, EventType, RecurrenceFrequency


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    balance: Decimal = Decimal("0")


class AccountOut(BaseModel):
    id: int
    name: str
    type: AccountType
    balance: Decimal


class TransactionIn(BaseModel):
    account_id: int
    amount: Decimal
    type: str
    date: dt.date
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    to_account_id: Optional[int] = None
    pending: bool = False


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    account_id: Optional[int] = None
    amount: Optional[Decimal] = None
    type: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = None
    to_account_id: Optional[int] = None
    pending: Optional[bool] = None


class TransactionOut(BaseModel):
    id: int
    account_id: int
    to_account_id: Optional[int]
    amount: Decimal
    type: str
    date: dt.date
    description: Optional[str]
    category_id: Optional[int]
    pending: bool


class BulkCategoryIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)
    category_id: Optional[int] = None


class ClearIn(BaseModel):
    account_id: Optional[int] = None


class ImportRowIn(BaseModel):
    """Raw statement line; unparsable values are dropped by the reconciler."""

    date: Optional[str] = None
    description: Optional[str] = None
    amount: Union[Decimal, str, None] = None
    type: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    pending: bool = False


class ImportIn(BaseModel):
    account_id: int
    rows: list[ImportRowIn]


class ImportResult(BaseModel):
    imported: int
    skipped: int
    total: int


class CalendarEventIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    type: EventType
    amount: Decimal
    due_date: datetime
    recurring: Optional[RecurrenceFrequency] = None
    confirmed: bool = False
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None


class CalendarEventPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[EventType] = None
    amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    recurring: Optional[RecurrenceFrequency] = None
    confirmed: Optional[bool] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None


class CalendarEntryOut(BaseModel):
    id: str
    template_id: Optional[int] = None
    title: str
    amount: Decimal
    due_date: datetime
    type: EventType
    recurring: Optional[RecurrenceFrequency]
    confirmed: bool
    account_id: Optional[int]
    to_account_id: Optional[int]
    category_id: Optional[int]


class CalendarOverview(BaseModel):
    pending_confirmations: list[CalendarEntryOut]
    upcoming_next_7_days: list[CalendarEntryOut]
    recurring_events: list[CalendarEntryOut]
    month_events: list[CalendarEntryOut]
