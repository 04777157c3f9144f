"""Bulk import of bank-statement lines with near-duplicate detection.

Statement exports overlap from one download to the next and the same line
rarely comes back byte-identical (reordered boilerplate, card suffixes,
embedded dates). Rows are therefore matched against existing transactions
on day and amount, then compared on a normalized description score.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from errors import ForbiddenError, NotFoundError, ValidationError
from ledger import LedgerService, account_locks
from models import Account, Transaction, TransactionType
from money import parse_amount, to_cents
from schemas import ImportResult, ImportRowIn
from services import CategoryResolver

logger = logging.getLogger(__name__)

IMPORTABLE_TYPES = (TransactionType.income, TransactionType.expense)

STATEMENT_PREFIXES = (
    re.compile(r"^prlv\s+sepa\s+"),
    re.compile(r"^virement\s+sepa\s+"),
    re.compile(r"^prelevement\s+sepa\s+"),
    re.compile(r"^direct\s+debit\s+"),
    re.compile(r"^prlv\s+"),
    re.compile(r"^virement\s+"),
    re.compile(r"^transfer\s+"),
    re.compile(r"^(carte|card)\s+\d{2}/\d{2}/\d{2,4}\s+"),
    re.compile(r"^(carte|card)\s+"),
)

CARD_FRAGMENTS = (
    re.compile(r"cb\*?\d{4,}"),
    re.compile(r"(carte|card)\s*\d{2}/\d{2}/\d{2,4}\s*"),
    re.compile(r"\*\d{4,}"),
)

EMBEDDED_DATES = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
)

TRAILING_PLACES = (
    "france",
    "paris",
    "lyon",
    "marseille",
    "toulouse",
    "nice",
    "nantes",
    "strasbourg",
    "montpellier",
    "bordeaux",
    "saint",
    r"st\.?",
)
TRAILING_PLACE_PATTERNS = tuple(
    re.compile(rf"\s+{place}\s*$") for place in TRAILING_PLACES
)

STOP_WORDS = frozenset(
    {
        "le", "la", "les", "de", "du", "des", "et", "ou", "un", "une",
        "pour", "avec", "sur", "dans", "par", "sepa", "prlv", "carte",
        "france", "the", "and", "for", "with", "from", "card", "debit",
        "direct", "transfer",
    }
)

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y", "%d/%m/%y")


@dataclass(frozen=True)
class SimilarityThresholds:
    """Tuned scoring constants for description comparison."""

    duplicate: float = 0.5
    containment: float = 0.9
    keyword_subset_floor: float = 0.85
    containment_fallback_floor: float = 0.7
    prefix_bonus: float = 0.15
    prefix_length: int = 8
    min_contained_length: int = 3
    min_keyword_length: int = 3


def normalize_description(description: Optional[str]) -> str:
    if not description:
        return ""
    normalized = description.strip().lower()
    for pattern in STATEMENT_PREFIXES:
        normalized = pattern.sub("", normalized)
    for pattern in CARD_FRAGMENTS:
        normalized = pattern.sub("", normalized)
    for pattern in EMBEDDED_DATES:
        normalized = pattern.sub("", normalized)
    for pattern in TRAILING_PLACE_PATTERNS:
        normalized = pattern.sub("", normalized)
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"[^\w\s]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def extract_keywords(
    normalized: str, thresholds: SimilarityThresholds = SimilarityThresholds()
) -> list[str]:
    return [
        word
        for word in normalized.split()
        if len(word) >= thresholds.min_keyword_length and word not in STOP_WORDS
    ]


def _containment_ratio(first: str, second: str, min_length: int) -> Optional[float]:
    longer, shorter = (first, second) if len(first) > len(second) else (second, first)
    if shorter in longer and len(shorter) > min_length:
        return len(shorter) / len(longer)
    return None


def description_similarity(
    first: Optional[str],
    second: Optional[str],
    thresholds: SimilarityThresholds = SimilarityThresholds(),
) -> float:
    """Score two statement descriptions between 0.0 and 1.0."""
    norm_first = normalize_description(first)
    norm_second = normalize_description(second)

    if norm_first == norm_second:
        return 1.0

    if not norm_first or not norm_second:
        ratio = _containment_ratio(
            (first or "").lower(),
            (second or "").lower(),
            thresholds.min_contained_length,
        )
        return ratio if ratio is not None else 0.0

    min_length = thresholds.min_contained_length
    if norm_second in norm_first and len(norm_second) > min_length:
        return thresholds.containment
    if norm_first in norm_second and len(norm_first) > min_length:
        return thresholds.containment

    keywords_first = extract_keywords(norm_first, thresholds)
    keywords_second = extract_keywords(norm_second, thresholds)
    if not keywords_first or not keywords_second:
        ratio = _containment_ratio(norm_first, norm_second, min_length)
        if ratio is None:
            return 0.0
        return max(thresholds.containment_fallback_floor, ratio)

    common = [word for word in keywords_first if word in keywords_second]
    similarity = len(common) / max(len(keywords_first), len(keywords_second))

    if len(keywords_first) <= len(keywords_second):
        shorter, longer = keywords_first, keywords_second
    else:
        shorter, longer = keywords_second, keywords_first
    if all(word in longer for word in shorter):
        similarity = max(thresholds.keyword_subset_floor, similarity)

    size = thresholds.prefix_length
    if norm_first[:size] == norm_second[:size] and len(norm_first) > size:
        similarity = min(1.0, similarity + thresholds.prefix_bonus)

    return similarity


def parse_row_date(value: Optional[str]) -> date:
    if not value or not value.strip():
        raise ValueError("Missing date")
    value = value.strip()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value}")


def parse_row_amount(value: object) -> int:
    if value is None:
        raise ValueError("Missing amount")
    if isinstance(value, str):
        return parse_amount(value, allow_negative=True)
    return to_cents(value)


@dataclass
class PreparedRow:
    date: date
    amount_cents: int
    type: TransactionType
    description: Optional[str]
    category_id: Optional[int]
    pending: bool = False


@dataclass
class ReconcileOutcome:
    fresh: list[PreparedRow] = field(default_factory=list)
    duplicates: list[PreparedRow] = field(default_factory=list)


class ImportService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        resolver: Optional[CategoryResolver] = None,
        thresholds: Optional[SimilarityThresholds] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.resolver = resolver or CategoryResolver(session, user_id)
        if thresholds is None:
            thresholds = SimilarityThresholds(
                duplicate=get_settings().duplicate_threshold
            )
        self.thresholds = thresholds
        self.ledger = LedgerService(session, user_id)

    def import_rows(self, account_id: int, rows: Sequence[ImportRowIn]) -> ImportResult:
        if not rows:
            raise ValidationError("No rows to import")
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        if account.owner_id != self.user_id:
            raise ForbiddenError("Account belongs to another user")

        prepared = self.prepare(rows)
        if not prepared:
            return ImportResult(imported=0, skipped=0, total=0)

        with account_locks([account_id]):
            outcome = self.reconcile(account_id, prepared)
            total = len(prepared)
            if not outcome.fresh:
                logger.info(
                    f"import_commit: account_id={account_id} imported=0 skipped={total}"
                )
                return ImportResult(imported=0, skipped=total, total=total)

            delta = sum(row.amount_cents for row in outcome.fresh)
            with atomic(self.session):
                self.session.add_all(
                    [
                        Transaction(
                            account_id=account_id,
                            amount_cents=row.amount_cents,
                            type=row.type,
                            date=row.date,
                            description=row.description,
                            category_id=row.category_id,
                            pending=row.pending,
                        )
                        for row in outcome.fresh
                    ]
                )
                self.session.flush()
                self.ledger.apply_impact({account_id: delta})
                self.ledger.mirror.sync([account_id])

        imported = len(outcome.fresh)
        logger.info(
            f"import_commit: account_id={account_id} imported={imported}"
            f" skipped={total - imported} delta_cents={delta}"
        )
        return ImportResult(imported=imported, skipped=total - imported, total=total)

    def prepare(self, rows: Sequence[ImportRowIn]) -> list[PreparedRow]:
        prepared: list[PreparedRow] = []
        for idx, row in enumerate(rows, start=1):
            try:
                txn_type = TransactionType((row.type or "").strip().lower())
                if txn_type not in IMPORTABLE_TYPES:
                    raise ValueError("Transfers cannot be imported")
                row_date = parse_row_date(row.date)
                amount_cents = parse_row_amount(row.amount)
            except (ValueError, ArithmeticError) as exc:
                logger.debug(f"import_row_dropped: row={idx} reason={exc}")
                continue

            if txn_type == TransactionType.expense:
                amount_cents = -abs(amount_cents)
            else:
                amount_cents = abs(amount_cents)

            prepared.append(
                PreparedRow(
                    date=row_date,
                    amount_cents=amount_cents,
                    type=txn_type,
                    description=row.description or None,
                    category_id=self.resolver.resolve(
                        row.description, row.category_id, row.category_name
                    ),
                    pending=bool(row.pending),
                )
            )
        return prepared

    def reconcile(self, account_id: int, prepared: Sequence[PreparedRow]) -> ReconcileOutcome:
        window_start = min(row.date for row in prepared) - timedelta(days=1)
        window_end = max(row.date for row in prepared) + timedelta(days=1)
        existing = self.session.execute(
            select(Transaction.date, Transaction.amount_cents, Transaction.description)
            .where(
                Transaction.account_id == account_id,
                Transaction.date.between(window_start, window_end),
            )
        ).all()

        by_day_amount: dict[tuple[date, int], list[Optional[str]]] = {}
        for row in existing:
            by_day_amount.setdefault((row.date, row.amount_cents), []).append(
                row.description
            )

        outcome = ReconcileOutcome()
        for row in prepared:
            candidates = by_day_amount.get((row.date, row.amount_cents), [])
            match = self._first_similar(row.description, candidates)
            if match is None:
                outcome.fresh.append(row)
                continue
            description, score = match
            logger.info(
                f"import_duplicate: description={row.description!r}"
                f" existing={description!r} similarity={score:.2f}"
            )
            outcome.duplicates.append(row)
        return outcome

    def _first_similar(
        self, description: Optional[str], candidates: Sequence[Optional[str]]
    ) -> Optional[tuple[Optional[str], float]]:
        for candidate in candidates:
            score = description_similarity(description or "", candidate or "", self.thresholds)
            if score > self.thresholds.duplicate:
                return candidate, score
        return None
