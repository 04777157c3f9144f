import logging
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Account, InvestmentAsset

logger = logging.getLogger(__name__)


class BalanceMirror:
    """Keeps balance-mirrored investment assets equal to their account balance.

    Runs inside the caller's unit of work, in a savepoint: a failure is
    logged and only the revaluation is rolled back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_balance_mirrored_assets(self, account_id: int) -> list[InvestmentAsset]:
        stmt = select(InvestmentAsset).where(
            InvestmentAsset.account_id == account_id,
            InvestmentAsset.balance_mirrored.is_(True),
        )
        return list(self.session.scalars(stmt).all())

    def sync(self, account_ids: Iterable[int]) -> int:
        revalued = 0
        for account_id in sorted(set(account_ids)):
            try:
                with self.session.begin_nested():
                    assets = self.find_balance_mirrored_assets(account_id)
                    if assets:
                        revalued += self._revalue(account_id, assets)
            except Exception:
                logger.exception(f"mirror_failed: account_id={account_id}")
        return revalued

    def _revalue(self, account_id: int, assets: Sequence[InvestmentAsset]) -> int:
        account = self.session.get(Account, account_id)
        if account is None:
            return 0
        stamped_at = datetime.utcnow()
        for asset in assets:
            asset.current_value_cents = account.balance_cents
            asset.last_valuation_at = stamped_at
        self.session.flush()
        logger.info(
            f"mirror_synced: account_id={account_id} assets={len(assets)}"
            f" balance_cents={account.balance_cents}"
        )
        return len(assets)
