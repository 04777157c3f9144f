"""Balance-mutating operations on transactions.

Every balance change is expressed as an impact, a mapping of account id to
a signed delta in cents. Editing or deleting a transaction first applies the
exact reverse of its stored impact, then (for edits) applies the impact of
the new values, so type or account changes never double count.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from database import atomic
from errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from mirror import BalanceMirror
from models import Account, Category, Transaction, TransactionType
from money import to_cents
from schemas import TransactionIn, TransactionPatch

logger = logging.getLogger(__name__)

Impact = dict[int, int]

_registry_lock = threading.Lock()
_account_locks: dict[int, threading.RLock] = {}


def _lock_for(account_id: int) -> threading.RLock:
    with _registry_lock:
        lock = _account_locks.get(account_id)
        if lock is None:
            lock = _account_locks[account_id] = threading.RLock()
        return lock


@contextmanager
def account_locks(account_ids: Iterable[int]) -> Iterator[None]:
    """Serialize mutations that touch the same accounts within this process.

    Locks are taken in ascending id order.
    """
    locks = [_lock_for(account_id) for account_id in sorted(set(account_ids))]
    for lock in locks:
        lock.acquire()
    try:
        yield
    finally:
        for lock in reversed(locks):
            lock.release()


def parse_type(value: object) -> TransactionType:
    try:
        return TransactionType(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Invalid transaction type: {value}") from exc


def normalize_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -abs(amount_cents)
    return abs(amount_cents)


def balance_impact(
    txn_type: TransactionType,
    amount_cents: int,
    account_id: int,
    to_account_id: Optional[int],
) -> Impact:
    if txn_type == TransactionType.transfer:
        return {account_id: -amount_cents, to_account_id: amount_cents}
    return {account_id: amount_cents}


def reverse_impact(impact: Impact) -> Impact:
    return {account_id: -delta for account_id, delta in impact.items()}


@dataclass(frozen=True)
class LedgerEntry:
    type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int]

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerEntry":
        return cls(txn.type, txn.amount_cents, txn.account_id, txn.to_account_id)

    def impact(self) -> Impact:
        return balance_impact(
            self.type, self.amount_cents, self.account_id, self.to_account_id
        )


class LedgerService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        mirror: Optional[BalanceMirror] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.mirror = mirror or BalanceMirror(session)

    def create(self, data: TransactionIn) -> Transaction:
        entry = self._resolve_entry(
            data.type, self._cents(data.amount), data.account_id, data.to_account_id
        )
        self._check_category(data.category_id)
        impact = entry.impact()

        with account_locks(impact), atomic(self.session):
            txn = Transaction(
                account_id=entry.account_id,
                to_account_id=entry.to_account_id,
                amount_cents=entry.amount_cents,
                type=entry.type,
                date=data.date,
                description=data.description,
                category_id=data.category_id,
                pending=data.pending,
            )
            self.session.add(txn)
            self.session.flush()
            self._apply(impact)
            self.mirror.sync(impact)

        logger.info(
            f"ledger_create: transaction_id={txn.id} type={entry.type.value}"
            f" amount_cents={entry.amount_cents}"
        )
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        txn = self._owned_transaction(transaction_id)
        changes = patch.model_dump(exclude_unset=True)

        type_value = changes.get("type") or txn.type.value
        if changes.get("amount") is not None:
            amount_cents = self._cents(changes["amount"])
        else:
            amount_cents = txn.amount_cents
        account_id = changes.get("account_id") or txn.account_id
        if "to_account_id" in changes:
            to_account_id = changes["to_account_id"]
        else:
            to_account_id = txn.to_account_id

        new_entry = self._resolve_entry(type_value, amount_cents, account_id, to_account_id)
        if "category_id" in changes:
            self._check_category(changes["category_id"])

        old_impact = LedgerEntry.of(txn).impact()
        new_impact = new_entry.impact()
        touched = set(old_impact) | set(new_impact)

        with account_locks(touched), atomic(self.session):
            self.session.refresh(txn, with_for_update=True)
            old_impact = LedgerEntry.of(txn).impact()
            if not set(old_impact) <= touched:
                raise InternalError("Transaction changed concurrently, retry")

            self._apply(reverse_impact(old_impact))

            txn.type = new_entry.type
            txn.amount_cents = new_entry.amount_cents
            txn.account_id = new_entry.account_id
            txn.to_account_id = new_entry.to_account_id
            if changes.get("date") is not None:
                txn.date = changes["date"]
            if changes.get("pending") is not None:
                txn.pending = changes["pending"]
            if "description" in changes:
                txn.description = changes["description"]
            if "category_id" in changes:
                txn.category_id = changes["category_id"]
            self.session.flush()

            self._apply(new_impact)
            self.mirror.sync(touched)

        logger.info(
            f"ledger_update: transaction_id={txn.id} type={new_entry.type.value}"
            f" amount_cents={new_entry.amount_cents} accounts={sorted(touched)}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self._owned_transaction(transaction_id)
        impact = LedgerEntry.of(txn).impact()
        with account_locks(impact), atomic(self.session):
            self.session.refresh(txn, with_for_update=True)
            self.reverse_and_delete([txn])
        logger.info(f"ledger_delete: transaction_id={transaction_id}")

    def clear(self, account_id: Optional[int] = None) -> int:
        if account_id is not None:
            self._owned_account(account_id)
            stmt = select(Transaction).where(
                or_(
                    Transaction.account_id == account_id,
                    Transaction.to_account_id == account_id,
                )
            )
        else:
            stmt = (
                select(Transaction)
                .join(Transaction.account)
                .where(Account.owner_id == self.user_id)
            )
        transactions = list(self.session.scalars(stmt).all())
        if not transactions:
            return 0

        touched: set[int] = set()
        for txn in transactions:
            touched.update(LedgerEntry.of(txn).impact())
        with account_locks(touched), atomic(self.session):
            self.reverse_and_delete(transactions)
        logger.info(
            f"ledger_clear: account_id={account_id} cleared={len(transactions)}"
        )
        return len(transactions)

    def reverse_and_delete(self, transactions: Sequence[Transaction]) -> set[int]:
        """Undo and remove transactions inside the caller's unit of work."""
        touched: set[int] = set()
        for txn in transactions:
            impact = LedgerEntry.of(txn).impact()
            self._apply(reverse_impact(impact))
            self.session.delete(txn)
            touched.update(impact)
        self.session.flush()
        self.mirror.sync(touched)
        return touched

    def apply_impact(self, impact: Impact) -> None:
        self._apply(impact)

    def _apply(self, impact: Impact) -> None:
        if not impact:
            return
        stmt = (
            select(Account)
            .where(Account.id.in_(sorted(impact)))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        accounts = {account.id: account for account in self.session.scalars(stmt)}
        for account_id, delta in impact.items():
            account = accounts.get(account_id)
            if account is None:
                raise NotFoundError("Account not found")
            account.balance_cents += delta
        self.session.flush()

    def _resolve_entry(
        self,
        type_value: object,
        amount_cents: int,
        account_id: int,
        to_account_id: Optional[int],
    ) -> LedgerEntry:
        txn_type = parse_type(type_value)
        self._owned_account(account_id)
        if txn_type == TransactionType.transfer:
            if to_account_id is None:
                raise ValidationError("Destination account is required for a transfer")
            if to_account_id == account_id:
                raise ValidationError("Source and destination accounts must differ")
            self._owned_account(to_account_id, label="Destination account")
        else:
            to_account_id = None
        return LedgerEntry(
            type=txn_type,
            amount_cents=normalize_amount(txn_type, amount_cents),
            account_id=account_id,
            to_account_id=to_account_id,
        )

    def _owned_account(self, account_id: int, *, label: str = "Account") -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError(f"{label} not found")
        if account.owner_id != self.user_id:
            raise ForbiddenError(f"{label} belongs to another user")
        return account

    def _owned_transaction(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        if txn.account.owner_id != self.user_id:
            raise ForbiddenError("Transaction belongs to another user")
        return txn

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValidationError("Unknown category")

    @staticmethod
    def _cents(amount: Decimal) -> int:
        try:
            return to_cents(amount)
        except (ValueError, ArithmeticError) as exc:
            raise ValidationError("Invalid amount") from exc
