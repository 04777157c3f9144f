import threading
from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import ledger as ledger_module
from database import Base
from errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from ledger import LedgerService, account_locks, balance_impact, reverse_impact
from mirror import BalanceMirror
from models import (
    Account,
    AccountType,
    Category,
    InvestmentAsset,
    Transaction,
    TransactionType,
)
from schemas import TransactionIn, TransactionPatch


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _account(
    session: Session, name: str = "Checking", balance_cents: int = 0, owner_id: int = 1
) -> Account:
    account = Account(
        owner_id=owner_id,
        name=name,
        type=AccountType.checking,
        balance_cents=balance_cents,
    )
    session.add(account)
    session.commit()
    return account


def _draft(account: Account, amount: str, txn_type: str, **extra) -> TransactionIn:
    return TransactionIn(
        account_id=account.id,
        amount=Decimal(amount),
        type=txn_type,
        date=extra.pop("date", date(2024, 3, 1)),
        **extra,
    )


def _balance(session: Session, account_id: int) -> int:
    return session.get(Account, account_id).balance_cents


def _count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_balance_impact_for_transfer_moves_between_accounts():
    impact = balance_impact(TransactionType.transfer, 5000, 1, 2)
    assert impact == {1: -5000, 2: 5000}
    assert reverse_impact(impact) == {1: 5000, 2: -5000}
    assert balance_impact(TransactionType.expense, -700, 1, None) == {1: -700}


def test_create_then_delete_restores_balance():
    with _session() as session:
        account = _account(session, balance_cents=100_000)
        ledger = LedgerService(session, 1)

        txn = ledger.create(_draft(account, "42.50", "expense", description="Groceries"))
        assert txn.amount_cents == -4250
        assert _balance(session, account.id) == 95_750

        ledger.delete(txn.id)
        assert _balance(session, account.id) == 100_000
        assert _count(session) == 0


def test_amount_sign_follows_type():
    with _session() as session:
        account = _account(session)
        ledger = LedgerService(session, 1)

        expense = ledger.create(_draft(account, "10", "EXPENSE"))
        income = ledger.create(_draft(account, "-5", "income"))

        assert expense.type == TransactionType.expense
        assert expense.amount_cents == -1000
        assert income.amount_cents == 500
        assert _balance(session, account.id) == -500


def test_transfer_conserves_total_balance():
    with _session() as session:
        source = _account(session, "Checking", 100_000)
        target = _account(session, "Savings", 0)
        ledger = LedgerService(session, 1)

        txn = ledger.create(
            _draft(source, "250", "transfer", to_account_id=target.id)
        )
        assert txn.amount_cents == 25_000
        assert _balance(session, source.id) == 75_000
        assert _balance(session, target.id) == 25_000

        ledger.delete(txn.id)
        assert _balance(session, source.id) == 100_000
        assert _balance(session, target.id) == 0


def test_update_expense_to_income_adds_twice_the_amount():
    with _session() as session:
        account = _account(session, balance_cents=100_000)
        ledger = LedgerService(session, 1)
        txn = ledger.create(_draft(account, "20", "expense"))
        assert _balance(session, account.id) == 98_000

        updated = ledger.update(txn.id, TransactionPatch(type="income"))

        assert updated.type == TransactionType.income
        assert updated.amount_cents == 2000
        assert _balance(session, account.id) == 102_000


def test_update_moves_effect_to_new_account():
    with _session() as session:
        first = _account(session, "First", 10_000)
        second = _account(session, "Second", 10_000)
        ledger = LedgerService(session, 1)
        txn = ledger.create(_draft(first, "30", "expense"))

        ledger.update(txn.id, TransactionPatch(account_id=second.id, amount=Decimal("35")))

        assert _balance(session, first.id) == 10_000
        assert _balance(session, second.id) == 6_500


def test_update_transfer_to_expense_clears_destination():
    with _session() as session:
        source = _account(session, "Checking", 10_000)
        target = _account(session, "Savings", 0)
        ledger = LedgerService(session, 1)
        txn = ledger.create(_draft(source, "50", "transfer", to_account_id=target.id))

        updated = ledger.update(txn.id, TransactionPatch(type="expense"))

        assert updated.to_account_id is None
        assert updated.amount_cents == -5000
        assert _balance(session, source.id) == 5_000
        assert _balance(session, target.id) == 0


def test_update_keeps_unset_fields():
    with _session() as session:
        account = _account(session)
        category = Category(user_id=1, name="Food")
        session.add(category)
        session.commit()
        ledger = LedgerService(session, 1)
        txn = ledger.create(
            _draft(account, "12", "expense", description="Bakery", category_id=category.id)
        )

        updated = ledger.update(txn.id, TransactionPatch(date=date(2024, 3, 5)))

        assert updated.date == date(2024, 3, 5)
        assert updated.description == "Bakery"
        assert updated.category_id == category.id
        assert _balance(session, account.id) == -1200


def test_create_rejects_unknown_type_without_writing():
    with _session() as session:
        account = _account(session, balance_cents=1000)
        with pytest.raises(ValidationError):
            LedgerService(session, 1).create(_draft(account, "5", "refund"))
        assert _count(session) == 0
        assert _balance(session, account.id) == 1000


@pytest.mark.parametrize(
    "destination, error",
    [
        (None, ValidationError),
        ("self", ValidationError),
        (999, NotFoundError),
        ("foreign", ForbiddenError),
    ],
)
def test_transfer_destination_is_validated(destination, error):
    with _session() as session:
        source = _account(session, "Checking", 1000)
        foreign = _account(session, "Theirs", 0, owner_id=2)
        to_account_id = {"self": source.id, "foreign": foreign.id}.get(
            destination, destination
        )
        with pytest.raises(error):
            LedgerService(session, 1).create(
                _draft(source, "5", "transfer", to_account_id=to_account_id)
            )
        assert _count(session) == 0


def test_source_account_must_exist_and_be_owned():
    with _session() as session:
        foreign = _account(session, owner_id=2)
        ledger = LedgerService(session, 1)
        with pytest.raises(ForbiddenError):
            ledger.create(_draft(foreign, "5", "expense"))
        with pytest.raises(NotFoundError):
            ledger.create(
                TransactionIn(account_id=404, amount=Decimal("5"), type="expense", date=date(2024, 1, 1))
            )


def test_unknown_category_is_rejected():
    with _session() as session:
        account = _account(session)
        other = Category(user_id=2, name="Not mine")
        session.add(other)
        session.commit()
        with pytest.raises(ValidationError):
            LedgerService(session, 1).create(
                _draft(account, "5", "expense", category_id=other.id)
            )


def test_foreign_transaction_cannot_be_changed():
    with _session() as session:
        theirs = _account(session, owner_id=2)
        txn = LedgerService(session, 2).create(_draft(theirs, "8", "expense"))

        ledger = LedgerService(session, 1)
        with pytest.raises(ForbiddenError):
            ledger.update(txn.id, TransactionPatch(amount=Decimal("1")))
        with pytest.raises(ForbiddenError):
            ledger.delete(txn.id)
        with pytest.raises(NotFoundError):
            ledger.delete(txn.id + 100)
        assert _balance(session, theirs.id) == -800


def test_mirror_follows_account_balance():
    with _session() as session:
        account = _account(session, balance_cents=5_000)
        mirrored = InvestmentAsset(
            user_id=1,
            name="Livret A",
            category="savings",
            account_id=account.id,
            balance_mirrored=True,
            current_value_cents=5_000,
        )
        manual = InvestmentAsset(
            user_id=1,
            name="Shares",
            category="stocks",
            account_id=account.id,
            balance_mirrored=False,
            current_value_cents=777,
        )
        session.add_all([mirrored, manual])
        session.commit()

        LedgerService(session, 1).create(_draft(account, "100", "income"))

        session.refresh(mirrored)
        session.refresh(manual)
        assert mirrored.current_value_cents == 15_000
        assert mirrored.last_valuation_at is not None
        assert manual.current_value_cents == 777


def test_mirror_failure_keeps_ledger_change(monkeypatch, caplog):
    def _boom(self, account_id, assets):
        raise SQLAlchemyError("valuation table locked")

    monkeypatch.setattr(BalanceMirror, "_revalue", _boom)
    with _session() as session:
        account = _account(session, balance_cents=5_000)
        asset = InvestmentAsset(
            user_id=1,
            name="Livret A",
            category="savings",
            account_id=account.id,
            balance_mirrored=True,
            current_value_cents=5_000,
        )
        session.add(asset)
        session.commit()

        txn = LedgerService(session, 1).create(_draft(account, "100", "income"))

        assert txn.id is not None
        assert _balance(session, account.id) == 15_000
        session.refresh(asset)
        assert asset.current_value_cents == 5_000
        assert "mirror_failed" in caplog.text


@pytest.mark.parametrize("method", ["_revalue", "find_balance_mirrored_assets"])
def test_any_mirror_error_is_logged_and_ledger_change_kept(monkeypatch, caplog, method):
    def _broken(self, *args):
        raise TypeError("bad valuation value")

    monkeypatch.setattr(BalanceMirror, method, _broken)
    with _session() as session:
        account = _account(session, balance_cents=0)
        asset = InvestmentAsset(
            user_id=1,
            name="Livret A",
            category="savings",
            account_id=account.id,
            balance_mirrored=True,
            current_value_cents=0,
        )
        session.add(asset)
        session.commit()

        LedgerService(session, 1).create(_draft(account, "10", "income"))

        assert _count(session) == 1
        assert _balance(session, account.id) == 1_000
        session.refresh(asset)
        assert asset.current_value_cents == 0
        assert "mirror_failed" in caplog.text


def test_failure_inside_mutation_rolls_back(monkeypatch):
    def _crash(self, account_ids):
        raise RuntimeError("crash after apply")

    monkeypatch.setattr(BalanceMirror, "sync", _crash)
    with _session() as session:
        account = _account(session, balance_cents=1_000)
        with pytest.raises(RuntimeError):
            LedgerService(session, 1).create(_draft(account, "5", "expense"))
        assert _count(session) == 0
        assert _balance(session, account.id) == 1_000


def test_persistence_error_surfaces_as_internal_error(monkeypatch):
    def _db_down(self, account_ids):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(BalanceMirror, "sync", _db_down)
    with _session() as session:
        account = _account(session, balance_cents=1_000)
        with pytest.raises(InternalError):
            LedgerService(session, 1).create(_draft(account, "5", "expense"))
        assert _balance(session, account.id) == 1_000


def test_clear_account_reverses_incoming_transfers():
    with _session() as session:
        checking = _account(session, "Checking", 10_000)
        savings = _account(session, "Savings", 0)
        ledger = LedgerService(session, 1)
        ledger.create(_draft(checking, "100", "transfer", to_account_id=savings.id))
        ledger.create(_draft(savings, "10", "expense"))
        ledger.create(_draft(checking, "1", "expense"))

        cleared = ledger.clear(savings.id)

        assert cleared == 2
        assert _balance(session, checking.id) == 9_900
        assert _balance(session, savings.id) == 0
        assert _count(session) == 1


def test_clear_everything_only_touches_own_transactions():
    with _session() as session:
        mine = _account(session, "Mine", 0)
        theirs = _account(session, "Theirs", 0, owner_id=2)
        LedgerService(session, 1).create(_draft(mine, "3", "income"))
        LedgerService(session, 2).create(_draft(theirs, "4", "income"))

        assert LedgerService(session, 1).clear() == 1
        assert _balance(session, mine.id) == 0
        assert _balance(session, theirs.id) == 400
        assert LedgerService(session, 1).clear() == 0


def test_account_locks_are_reentrant():
    with account_locks([2, 1]):
        with account_locks([1]):
            pass


def _file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine


def test_concurrent_mutations_on_one_account_keep_every_effect(tmp_path):
    engine = _file_engine(tmp_path)
    rounds = 25
    with Session(engine) as session:
        account_id = _account(session, balance_cents=1_000).id
    errors: list[Exception] = []

    def _worker(amount: str) -> None:
        try:
            with Session(engine) as session:
                ledger = LedgerService(session, 1)
                for _ in range(rounds):
                    ledger.create(
                        TransactionIn(
                            account_id=account_id,
                            amount=Decimal(amount),
                            type="income",
                            date=date(2024, 3, 1),
                        )
                    )
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(amount,)) for amount in ("1", "2.50")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with Session(engine) as session:
        assert _count(session) == 2 * rounds
        assert _balance(session, account_id) == 1_000 + rounds * 100 + rounds * 250
    engine.dispose()


def test_update_refuses_transaction_moved_by_another_writer(tmp_path, monkeypatch):
    engine = _file_engine(tmp_path)
    with Session(engine) as session:
        checking = _account(session, "Checking", 1_000)
        other = _account(session, "Other", 0)
        txn = LedgerService(session, 1).create(_draft(checking, "5", "expense"))
        checking_id, other_id, txn_id = checking.id, other.id, txn.id

    real_locks = ledger_module.account_locks

    @contextmanager
    def _moved_before_locking(account_ids):
        with Session(engine) as writer:
            writer.execute(
                update(Transaction)
                .where(Transaction.id == txn_id)
                .values(account_id=other_id)
            )
            writer.commit()
        with real_locks(account_ids):
            yield

    monkeypatch.setattr(ledger_module, "account_locks", _moved_before_locking)
    with Session(engine) as session:
        with pytest.raises(InternalError):
            LedgerService(session, 1).update(txn_id, TransactionPatch(amount=Decimal("7")))

    with Session(engine) as session:
        assert _balance(session, checking_id) == 500
        assert _balance(session, other_id) == 0
        assert session.get(Transaction, txn_id).amount_cents == -500
    engine.dispose()
