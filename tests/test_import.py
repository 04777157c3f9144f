from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import ForbiddenError, NotFoundError, ValidationError
from importer import ImportService
from ledger import LedgerService
from models import (
    Account,
    AccountType,
    Category,
    CategoryKeyword,
    InvestmentAsset,
    Transaction,
    TransactionType,
)
from schemas import ImportRowIn, TransactionIn
from services import KeywordCategorizer


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _account(session: Session, balance_cents: int = 0, owner_id: int = 1) -> Account:
    account = Account(
        owner_id=owner_id,
        name="Checking",
        type=AccountType.checking,
        balance_cents=balance_cents,
    )
    session.add(account)
    session.commit()
    return account


def _row(day: str, description: str, amount, txn_type: str = "expense", **extra) -> ImportRowIn:
    return ImportRowIn(date=day, description=description, amount=amount, type=txn_type, **extra)


def _statement() -> list[ImportRowIn]:
    return [
        _row("2024-03-01", "MONOPRIX", Decimal("23.10")),
        _row("2024-03-02", "SALAIRE MARS", Decimal("2400"), "income"),
        _row("2024-03-03", "SNCF CONNECT", "45,00"),
    ]


def _count(session: Session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_importing_same_statement_twice_skips_everything_the_second_time():
    with _session() as session:
        account = _account(session, balance_cents=10_000)

        first = ImportService(session, 1).import_rows(account.id, _statement())
        assert (first.imported, first.skipped, first.total) == (3, 0, 3)
        balance_after_first = session.get(Account, account.id).balance_cents
        assert balance_after_first == 10_000 - 2_310 + 240_000 - 4_500

        second = ImportService(session, 1).import_rows(account.id, _statement())
        assert (second.imported, second.skipped, second.total) == (0, 3, 3)
        assert session.get(Account, account.id).balance_cents == balance_after_first
        assert _count(session) == 3


def test_near_duplicate_with_bank_prefix_is_skipped():
    with _session() as session:
        account = _account(session)
        LedgerService(session, 1).create(
            TransactionIn(
                account_id=account.id,
                amount=Decimal("15.49"),
                type="expense",
                date=date(2024, 3, 15),
                description="NETFLIX.COM",
            )
        )

        result = ImportService(session, 1).import_rows(
            account.id,
            [
                _row("2024-03-15", "PRLV SEPA NETFLIX.COM", "15.49"),
                _row("2024-03-15", "PRLV SEPA NETFLIX.COM", "17.99"),
                _row("2024-03-16", "NETFLIX.COM", "15.49"),
            ],
        )

        assert (result.imported, result.skipped) == (2, 1)
        assert session.get(Account, account.id).balance_cents == -1549 - 1799 - 1549


def test_rows_in_one_batch_are_not_compared_with_each_other():
    with _session() as session:
        account = _account(session)
        rows = [_row("2024-03-01", "Coffee", "2.50"), _row("2024-03-01", "Coffee", "2.50")]
        result = ImportService(session, 1).import_rows(account.id, rows)
        assert result.imported == 2


def test_unparsable_rows_are_dropped():
    with _session() as session:
        account = _account(session)
        rows = [
            _row("2024-03-01", "Savings", "100", "transfer"),
            _row("not a date", "Lunch", "12"),
            _row("2024-03-01", "Lunch", "twelve"),
            _row("2024-03-01", "Refund", "12", "refund"),
            _row("2024-03-01", "Lunch", None),
            _row("2024-03-01", "Lunch", "12"),
        ]
        result = ImportService(session, 1).import_rows(account.id, rows)
        assert (result.imported, result.skipped, result.total) == (1, 0, 1)


def test_rows_without_a_type_are_dropped():
    with _session() as session:
        account = _account(session, balance_cents=500)
        rows = [
            ImportRowIn(date="2024-03-01", description="Lunch", amount="12"),
            _row("2024-03-01", "Dinner", "20"),
        ]
        result = ImportService(session, 1).import_rows(account.id, rows)
        assert (result.imported, result.skipped, result.total) == (1, 0, 1)
        assert session.get(Account, account.id).balance_cents == 500 - 2_000


def test_nothing_importable_is_not_an_error():
    with _session() as session:
        account = _account(session, balance_cents=500)
        result = ImportService(session, 1).import_rows(
            account.id, [_row("", "Lunch", "12"), _row("2024-03-01", "Move", "5", "transfer")]
        )
        assert (result.imported, result.skipped, result.total) == (0, 0, 0)
        assert _count(session) == 0
        assert session.get(Account, account.id).balance_cents == 500


def test_empty_batch_and_foreign_accounts_are_rejected():
    with _session() as session:
        mine = _account(session)
        theirs = _account(session, owner_id=2)
        service = ImportService(session, 1)
        with pytest.raises(ValidationError):
            service.import_rows(mine.id, [])
        with pytest.raises(ForbiddenError):
            service.import_rows(theirs.id, _statement())
        with pytest.raises(NotFoundError):
            service.import_rows(404, _statement())


def test_amount_and_date_formats():
    with _session() as session:
        account = _account(session)
        rows = [
            _row("15.03.2024", "Furniture", "1 234,56 €"),
            _row("16/03/2024", "Refund", "-20", "income"),
            _row("2024-03-17T10:00:00Z", "Books", Decimal("-8.25")),
        ]
        result = ImportService(session, 1).import_rows(account.id, rows)
        assert result.imported == 3

        stored = {
            txn.description: txn
            for txn in session.scalars(select(Transaction)).all()
        }
        assert stored["Furniture"].amount_cents == -123_456
        assert stored["Furniture"].date == date(2024, 3, 15)
        assert stored["Refund"].amount_cents == 2_000
        assert stored["Refund"].type == TransactionType.income
        assert stored["Books"].amount_cents == -825
        assert stored["Books"].date == date(2024, 3, 17)


def test_category_resolution_chain():
    with _session() as session:
        account = _account(session)
        food = Category(user_id=1, name="Food")
        subscriptions = Category(user_id=1, name="Abonnements")
        other = Category(user_id=1, name="Other")
        session.add_all([food, subscriptions, other])
        session.flush()
        session.add(CategoryKeyword(category_id=food.id, keyword="Monoprix"))
        session.commit()

        rows = [
            _row("2024-03-01", "Dinner", "30", category_id=food.id),
            _row("2024-03-01", "Market", "31", category_name=" FOOD "),
            _row("2024-03-01", "CARTE MONOPRIX", "32"),
            _row("2024-03-01", "Spotify AB", "33"),
            _row("2024-03-01", "Mystery shop", "34", category_name="Unknown"),
            _row("2024-03-01", "Mystery shop", "35"),
        ]
        ImportService(session, 1).import_rows(account.id, rows)

        by_amount = {
            txn.amount_cents: txn.category_id
            for txn in session.scalars(select(Transaction)).all()
        }
        assert by_amount == {
            -3000: food.id,
            -3100: food.id,
            -3200: food.id,
            -3300: subscriptions.id,
            -3400: other.id,
            -3500: None,
        }


def test_longest_keyword_wins():
    with _session() as session:
        transport = Category(user_id=1, name="Transport")
        food = Category(user_id=1, name="Food")
        session.add_all([transport, food])
        session.flush()
        session.add_all(
            [
                CategoryKeyword(category_id=transport.id, keyword="uber"),
                CategoryKeyword(category_id=food.id, keyword="uber eats"),
            ]
        )
        session.commit()

        categorizer = KeywordCategorizer(session)
        assert categorizer.categorize("UBER EATS PARIS", 1) == food.id
        assert categorizer.categorize("UBER TRIP", 1) == transport.id
        assert categorizer.categorize("UBER TRIP", 2) is None
        assert categorizer.categorize("", 1) is None


def test_import_revalues_mirrored_asset():
    with _session() as session:
        account = _account(session, balance_cents=1_000)
        asset = InvestmentAsset(
            user_id=1,
            name="Livret A",
            category="savings",
            account_id=account.id,
            balance_mirrored=True,
            current_value_cents=1_000,
        )
        session.add(asset)
        session.commit()

        ImportService(session, 1).import_rows(
            account.id, [_row("2024-03-01", "Interest", "12.34", "income")]
        )

        session.refresh(asset)
        assert asset.current_value_cents == 2_234
