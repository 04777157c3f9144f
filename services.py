from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import atomic
from errors import ForbiddenError, NotFoundError, ValidationError
from ledger import LedgerEntry, LedgerService, account_locks
from models import (
    Account,
    CalendarEvent,
    CalendarEventException,
    Category,
    CategoryKeyword,
    EventType,
    InvestmentAsset,
    Transaction,
)
from money import from_cents, to_cents
from recurrence import (
    Occurrence,
    as_window_end,
    as_window_start,
    confirm_occurrences,
    expand_occurrences,
    local_now,
)
from schemas import (
    AccountIn,
    AccountOut,
    CalendarEntryOut,
    CalendarEventIn,
    CalendarEventPatch,
    CalendarOverview,
    TransactionOut,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_KEYWORDS = re.compile(
    r"(abonn|subscription|spotify|netflix|canal|prime video|primevideo|youtube"
    r"|deezer|disney|molotov|salto|mycanal|itunes|apple music|playstation plus"
    r"|xbox game pass|basic fit|fitness park|club|box internet|freebox|bbox|livebox)"
)
SUBSCRIPTION_CATEGORY_MARKERS = ("subscr", "abonn")

UPCOMING_HORIZON = timedelta(days=7)


def account_out(account: Account) -> AccountOut:
    return AccountOut(
        id=account.id,
        name=account.name,
        type=account.type,
        balance=from_cents(account.balance_cents),
    )


def transaction_out(txn: Transaction) -> TransactionOut:
    return TransactionOut(
        id=txn.id,
        account_id=txn.account_id,
        to_account_id=txn.to_account_id,
        amount=from_cents(txn.amount_cents),
        type=txn.type.value,
        date=txn.date,
        description=txn.description,
        category_id=txn.category_id,
        pending=txn.pending,
    )


def calendar_entry_out(entry: Union[CalendarEvent, Occurrence]) -> CalendarEntryOut:
    if isinstance(entry, Occurrence):
        entry_id, template_id = entry.id, entry.template_id
    else:
        entry_id, template_id = str(entry.id), None
    return CalendarEntryOut(
        id=entry_id,
        template_id=template_id,
        title=entry.title,
        amount=from_cents(entry.amount_cents),
        due_date=entry.due_date,
        type=entry.type,
        recurring=entry.recurring,
        confirmed=entry.confirmed,
        account_id=entry.account_id,
        to_account_id=entry.to_account_id,
        category_id=entry.category_id,
    )


class KeywordCategorizer:
    """Match a description against the user's category keywords.

    The longest keyword contained in the description wins, so "uber eats"
    takes precedence over "uber".
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def categorize(self, description: Optional[str], user_id: int) -> Optional[int]:
        if not description:
            return None
        haystack = description.lower()
        stmt = (
            select(CategoryKeyword.keyword, CategoryKeyword.category_id)
            .join(CategoryKeyword.category)
            .where(Category.user_id == user_id)
            .order_by(func.length(CategoryKeyword.keyword).desc(), CategoryKeyword.id)
        )
        for row in self.session.execute(stmt):
            keyword = (row.keyword or "").strip().lower()
            if keyword and keyword in haystack:
                return row.category_id
        return None


class CategoryResolver:
    def __init__(
        self,
        session: Session,
        user_id: int,
        categorizer: Optional[KeywordCategorizer] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.categorizer = categorizer or KeywordCategorizer(session)
        self._by_name: Optional[dict[str, int]] = None

    def _lookup(self) -> dict[str, int]:
        if self._by_name is None:
            stmt = select(Category.id, Category.name).where(
                Category.user_id == self.user_id
            )
            self._by_name = {
                row.name.strip().lower(): row.id for row in self.session.execute(stmt)
            }
        return self._by_name

    def _subscription_category(self) -> Optional[int]:
        for name, category_id in sorted(self._lookup().items()):
            if any(marker in name for marker in SUBSCRIPTION_CATEGORY_MARKERS):
                return category_id
        return None

    def resolve(
        self,
        description: Optional[str],
        category_id: Optional[int] = None,
        category_name: Optional[str] = None,
    ) -> Optional[int]:
        lookup = self._lookup()
        if category_id is not None and category_id in lookup.values():
            return category_id

        hint = (category_name or "").strip().lower()
        if hint and hint in lookup:
            return lookup[hint]

        if description:
            matched = self.categorizer.categorize(description, self.user_id)
            if matched is not None:
                return matched

        subscription_id = self._subscription_category()
        if subscription_id is not None:
            text = f"{description or ''} {category_name or ''}".lower()
            if SUBSCRIPTION_KEYWORDS.search(text):
                return subscription_id

        if hint:
            return lookup.get(get_settings().fallback_category.strip().lower())
        return None


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.owner_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        if account.owner_id != self.user_id:
            raise ForbiddenError("Account belongs to another user")
        return account

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValidationError("Account name cannot be empty")
        try:
            opening_cents = to_cents(data.balance)
        except (ValueError, ArithmeticError) as exc:
            raise ValidationError("Invalid balance") from exc
        with atomic(self.session):
            account = Account(
                owner_id=self.user_id,
                name=name,
                type=data.type,
                balance_cents=opening_cents,
            )
            self.session.add(account)
            self.session.flush()
        logger.info(
            f"account_create: account_id={account.id} balance_cents={opening_cents}"
        )
        return account

    def delete(self, account_id: int) -> None:
        """Remove an account and every transaction that touches it.

        Incoming transfers are reversed on their source account first. Linked
        calendar events and investment assets are detached, not deleted.
        """
        self.get(account_id)
        ledger = LedgerService(self.session, self.user_id)
        transactions = list(
            self.session.scalars(
                select(Transaction).where(
                    or_(
                        Transaction.account_id == account_id,
                        Transaction.to_account_id == account_id,
                    )
                )
            ).all()
        )
        touched = {account_id}
        for txn in transactions:
            touched.update(LedgerEntry.of(txn).impact())

        with account_locks(touched), atomic(self.session):
            ledger.reverse_and_delete(transactions)
            self.session.execute(
                update(CalendarEvent)
                .where(CalendarEvent.account_id == account_id)
                .values(account_id=None)
            )
            self.session.execute(
                update(CalendarEvent)
                .where(CalendarEvent.to_account_id == account_id)
                .values(to_account_id=None)
            )
            self.session.execute(
                update(InvestmentAsset)
                .where(InvestmentAsset.account_id == account_id)
                .values(account_id=None, balance_mirrored=False)
            )
            self.session.delete(self.session.get(Account, account_id))
            self.session.flush()
        logger.info(
            f"account_delete: account_id={account_id} transactions={len(transactions)}"
        )


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    search: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _scoped(self, filters: TransactionFilters):
        stmt = select(Transaction).join(Transaction.account)
        if filters.account_id is not None:
            AccountService(self.session, self.user_id).get(filters.account_id)
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        else:
            stmt = stmt.where(Account.owner_id == self.user_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.search:
            term = filters.search.strip()
            pattern = f"%{term}%"
            clauses = [
                Transaction.description.ilike(pattern),
                Transaction.category.has(Category.name.ilike(pattern)),
            ]
            try:
                clauses.append(Transaction.amount_cents == to_cents(Decimal(term)))
            except (InvalidOperation, ValueError):
                pass
            stmt = stmt.where(or_(*clauses))
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        limit: int = 200,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            self._scoped(filters or TransactionFilters())
            .options(joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).unique().all())

    def all_matching(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        stmt = (
            self._scoped(filters or TransactionFilters())
            .options(joinedload(Transaction.category))
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).unique().all())

    def bulk_set_category(
        self, transaction_ids: list[int], category_id: Optional[int]
    ) -> int:
        """Re-categorize several transactions; balances are untouched."""
        ids = sorted(set(transaction_ids))
        if not ids:
            raise ValidationError("No transactions selected")
        owned = self.session.scalar(
            select(func.count(Transaction.id))
            .join(Transaction.account)
            .where(Transaction.id.in_(ids), Account.owner_id == self.user_id)
        )
        if owned != len(ids):
            raise ForbiddenError("Some transactions are missing or not yours")
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise ValidationError("Unknown category")
        with atomic(self.session):
            self.session.execute(
                update(Transaction)
                .where(Transaction.id.in_(ids))
                .values(category_id=category_id)
                .execution_options(synchronize_session="fetch")
            )
        logger.info(f"bulk_category: count={len(ids)} category_id={category_id}")
        return len(ids)


class CalendarService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, event_id: int) -> CalendarEvent:
        event = self.session.get(CalendarEvent, event_id)
        if not event:
            raise NotFoundError("Event not found")
        if event.user_id != self.user_id:
            raise ForbiddenError("Event belongs to another user")
        return event

    def _check_links(
        self,
        account_id: Optional[int],
        to_account_id: Optional[int],
        category_id: Optional[int],
    ) -> None:
        accounts = AccountService(self.session, self.user_id)
        for linked in (account_id, to_account_id):
            if linked is not None:
                accounts.get(linked)
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise ValidationError("Unknown category")

    @staticmethod
    def _cents(amount: Decimal) -> int:
        try:
            return abs(to_cents(amount))
        except (ValueError, ArithmeticError) as exc:
            raise ValidationError("Invalid amount") from exc

    def create_event(self, data: CalendarEventIn) -> CalendarEvent:
        title = data.title.strip()
        if not title:
            raise ValidationError("Title cannot be empty")
        self._check_links(data.account_id, data.to_account_id, data.category_id)
        with atomic(self.session):
            event = CalendarEvent(
                user_id=self.user_id,
                title=title,
                amount_cents=self._cents(data.amount),
                due_date=data.due_date.replace(tzinfo=None),
                type=data.type,
                recurring=data.recurring,
                confirmed=data.confirmed,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                category_id=data.category_id,
            )
            self.session.add(event)
            self.session.flush()
        return event

    def update_event(self, event_id: int, patch: CalendarEventPatch) -> CalendarEvent:
        event = self.get(event_id)
        changes = patch.model_dump(exclude_unset=True)
        self._check_links(
            changes.get("account_id"),
            changes.get("to_account_id"),
            changes.get("category_id"),
        )
        if "title" in changes and not (changes["title"] or "").strip():
            raise ValidationError("Title cannot be empty")
        with atomic(self.session):
            for key, value in changes.items():
                if key == "amount":
                    if value is not None:
                        event.amount_cents = self._cents(value)
                elif key == "title":
                    event.title = value.strip()
                elif key == "due_date":
                    if value is not None:
                        event.due_date = value.replace(tzinfo=None)
                elif key in {"type", "confirmed"}:
                    if value is not None:
                        setattr(event, key, value)
                else:
                    setattr(event, key, value)
            self.session.flush()
        return event

    def delete_event(
        self, event_id: int, *, scope: str = "series", on: Optional[date] = None
    ) -> None:
        """Delete a whole event, or skip one occurrence of a recurring one."""
        event = self.get(event_id)
        if scope == "occurrence":
            if on is None:
                raise ValidationError("An occurrence date is required")
            if event.recurring is None:
                raise ValidationError("Only recurring events have occurrences")
            existing = self.session.scalar(
                select(CalendarEventException).where(
                    CalendarEventException.event_id == event.id,
                    CalendarEventException.date == on,
                )
            )
            if existing:
                return
            with atomic(self.session):
                event.exceptions.append(CalendarEventException(date=on))
            logger.info(f"calendar_skip: event_id={event.id} date={on.isoformat()}")
            return
        if scope != "series":
            raise ValidationError(f"Unknown scope: {scope}")
        with atomic(self.session):
            self.session.delete(event)
        logger.info(f"calendar_delete: event_id={event_id}")

    def _expand(
        self,
        template: CalendarEvent,
        window_start: Union[date, datetime],
        window_end: Union[date, datetime],
    ) -> list[Occurrence]:
        skipped = {exc.date for exc in template.exceptions}
        return [
            occ
            for occ in expand_occurrences(template, window_start, window_end)
            if occ.due_date.date() not in skipped
        ]

    def _booked_for(
        self, templates: list[CalendarEvent], start: datetime, end: datetime
    ) -> list[Transaction]:
        titles = sorted({t.title for t in templates})
        if not titles:
            return []
        stmt = (
            select(Transaction)
            .join(Transaction.account)
            .where(
                Account.owner_id == self.user_id,
                Transaction.description.in_(titles),
                Transaction.date.between(start.date(), end.date()),
            )
        )
        account_ids = sorted({t.account_id for t in templates if t.account_id})
        if account_ids:
            stmt = stmt.where(Transaction.account_id.in_(account_ids))
        return list(self.session.scalars(stmt).all())

    def overview(
        self,
        window_start: Union[date, datetime],
        window_end: Union[date, datetime],
        now: Optional[datetime] = None,
    ) -> CalendarOverview:
        now = now or local_now()
        horizon = now + UPCOMING_HORIZON
        events = list(
            self.session.scalars(
                select(CalendarEvent)
                .options(joinedload(CalendarEvent.exceptions))
                .where(CalendarEvent.user_id == self.user_id)
                .order_by(CalendarEvent.due_date, CalendarEvent.id)
            )
            .unique()
            .all()
        )
        one_offs = [e for e in events if e.recurring is None]
        templates = [e for e in events if e.recurring is not None]

        pending = [
            e
            for e in events
            if not e.confirmed and e.type == EventType.debit and e.due_date <= horizon
        ]

        upcoming: list[Union[CalendarEvent, Occurrence]] = [
            e
            for e in one_offs
            if e.type == EventType.debit and now < e.due_date <= horizon
        ]
        for template in templates:
            if template.type != EventType.debit:
                continue
            upcoming.extend(self._expand(template, now, horizon))
        upcoming.sort(key=lambda entry: entry.due_date)

        start_bound = as_window_start(window_start)
        end_bound = as_window_end(window_end)
        month: list[Union[CalendarEvent, Occurrence]] = [
            e for e in one_offs if start_bound <= e.due_date <= end_bound
        ]
        occurrences: list[Occurrence] = []
        for template in templates:
            occurrences.extend(self._expand(template, window_start, window_end))
        if occurrences:
            booked = self._booked_for(templates, start_bound, end_bound)
            month.extend(confirm_occurrences(occurrences, booked))
        month.sort(key=lambda entry: entry.due_date)

        return CalendarOverview(
            pending_confirmations=[calendar_entry_out(e) for e in pending],
            upcoming_next_7_days=[calendar_entry_out(e) for e in upcoming],
            recurring_events=[calendar_entry_out(e) for e in templates],
            month_events=[calendar_entry_out(e) for e in month],
        )
