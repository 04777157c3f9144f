from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    cash = "cash"
    investment = "investment"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class EventType(str, Enum):
    debit = "debit"
    credit = "credit"


class RecurrenceFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        foreign_keys="Transaction.account_id",
    )

    __table_args__ = (Index("ix_accounts_owner", "owner_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    keywords: Mapped[list["CategoryKeyword"]] = relationship(
        "CategoryKeyword", back_populates="category", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


class CategoryKeyword(Base, TimestampMixin):
    __tablename__ = "category_keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    keyword: Mapped[str] = mapped_column(String(100), nullable=False)

    category: Mapped["Category"] = relationship("Category", back_populates="keywords")


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions", foreign_keys=[account_id]
    )
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_to_account_date", "to_account_id", "date"),
        CheckConstraint(
            "(type = 'transfer') = (to_account_id IS NOT NULL)",
            name="ck_transactions_transfer_destination",
        ),
        CheckConstraint(
            "to_account_id IS NULL OR to_account_id != account_id",
            name="ck_transactions_distinct_accounts",
        ),
        CheckConstraint(
            "(type = 'expense' AND amount_cents <= 0)"
            " OR (type != 'expense' AND amount_cents >= 0)",
            name="ck_transactions_amount_sign",
        ),
    )


class CalendarEvent(Base, TimestampMixin):
    __tablename__ = "calendar_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[EventType] = mapped_column(SAEnum(EventType), nullable=False)
    recurring: Mapped[Optional[RecurrenceFrequency]] = mapped_column(
        SAEnum(RecurrenceFrequency)
    )
    confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))

    exceptions: Mapped[list["CalendarEventException"]] = relationship(
        "CalendarEventException", back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_calendar_events_user_due", "user_id", "due_date"),)


class CalendarEventException(Base, TimestampMixin):
    __tablename__ = "calendar_event_exceptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        ForeignKey("calendar_events.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)

    event: Mapped["CalendarEvent"] = relationship(
        "CalendarEvent", back_populates="exceptions"
    )

    __table_args__ = (
        UniqueConstraint("event_id", "date", name="uq_calendar_exception_event_date"),
    )


class InvestmentAsset(Base, TimestampMixin):
    __tablename__ = "investment_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    balance_mirrored: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    current_value_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_valuation_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_investment_assets_account_mirrored", "account_id", "balance_mirrored"),
    )
