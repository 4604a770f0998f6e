"""
Analytics Projection Module

Fixed-length monthly series for an account's dashboard. The series always
has exactly ``period`` points, one per calendar month, ending with the month
of ``as_of``. Persisted replay rows are used where they exist; months before
the account's origin carry the opening principal flat and months with no
replayed data are projected forward at the account's monthly rate.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .money import Currency, ZERO, round_money
from .ledger import LoanAccount, LoanLedger
from .replay import BalanceReplayService, MonthlyBalance, month_key
from .exceptions import NotFound
from .logging_config import get_logger

ALLOWED_PERIODS = (6, 12, 24)
DEFAULT_PERIOD = 24


class PointSource(Enum):
    ACTUAL = "actual"
    PROJECTED = "projected"
    OPENING = "opening"


@dataclass(frozen=True)
class AnalyticsPoint:
    month: str
    balance: Decimal
    monthly_payment: Decimal
    bonus_payment: Decimal
    withdrawal: Decimal
    net_growth: Decimal
    source: PointSource


@dataclass
class AnalyticsView:
    account_id: str
    period: int
    as_of: date
    current_balance: Decimal
    total_principal: Decimal
    total_bonuses: Decimal
    total_withdrawals: Decimal
    monthly_rate: Decimal
    points: List[AnalyticsPoint] = field(default_factory=list)


def normalize_period(value: Any, default: int = DEFAULT_PERIOD) -> int:
    """
    Coerce a requested period to 6, 12 or 24 months

    Anything else (None, bools, non-numeric strings, negative or other
    numbers) falls back to the default.
    """
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return default
        value = int(value)
    if isinstance(value, int) and value in ALLOWED_PERIODS:
        return value
    return default


def _shift_month(year: int, month: int, delta: int):
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def _month_index(key: str) -> int:
    year, month = key.split("-")
    return int(year) * 12 + int(month) - 1


def calendar_months(as_of: date, period: int) -> List[str]:
    """The ``period`` month keys ending with as_of's month, oldest first"""
    keys = []
    for offset in range(period - 1, -1, -1):
        year, month = _shift_month(as_of.year, as_of.month, -offset)
        keys.append(f"{year:04d}-{month:02d}")
    return keys


def project(
    account: LoanAccount,
    monthly_balances: List[MonthlyBalance],
    period: int,
    as_of: date,
    currency: Currency = Currency.USD
) -> AnalyticsView:
    """
    Build the analytics view of an account from its replayed months

    Args:
        account: The account (aggregates are copied from it)
        monthly_balances: Persisted replay rows of the account
        period: Number of points, already normalised
        as_of: Last month of the series

    Returns:
        AnalyticsView with exactly ``period`` points
    """
    months = calendar_months(as_of, period)
    origin_key = month_key(account.origin_date)
    by_month: Dict[str, MonthlyBalance] = {row.month: row for row in monthly_balances}

    # Balance carried into the first window month
    running = account.principal_amount
    anchor = origin_key
    for row in sorted(monthly_balances, key=lambda r: r.period_start):
        if row.month < months[0]:
            running = row.balance
            anchor = max(anchor, row.month)

    # Months between the last known balance and the window still earn interest
    for _ in range(_month_index(months[0]) - _month_index(anchor) - 1):
        if running > ZERO:
            running = running + round_money(running * account.monthly_rate, currency)

    points = []
    for key in months:
        row = by_month.get(key)
        if row is not None:
            running = row.balance
            points.append(AnalyticsPoint(
                month=key,
                balance=row.balance,
                monthly_payment=row.monthly_payment,
                bonus_payment=row.bonus_payment,
                withdrawal=row.withdrawal,
                net_growth=row.net_growth,
                source=PointSource.ACTUAL
            ))
        elif key <= origin_key:
            points.append(AnalyticsPoint(
                month=key,
                balance=account.principal_amount,
                monthly_payment=ZERO,
                bonus_payment=ZERO,
                withdrawal=ZERO,
                net_growth=ZERO,
                source=PointSource.OPENING
            ))
        else:
            interest = ZERO
            if running > ZERO:
                interest = round_money(running * account.monthly_rate, currency)
            running = running + interest
            points.append(AnalyticsPoint(
                month=key,
                balance=running,
                monthly_payment=interest,
                bonus_payment=ZERO,
                withdrawal=ZERO,
                net_growth=interest,
                source=PointSource.PROJECTED
            ))

    return AnalyticsView(
        account_id=account.id,
        period=period,
        as_of=as_of,
        current_balance=account.current_balance,
        total_principal=account.principal_amount,
        total_bonuses=account.total_bonuses,
        total_withdrawals=account.total_withdrawals,
        monthly_rate=account.monthly_rate,
        points=points
    )


class AnalyticsService:
    """Reads an account and its replayed months and projects the view"""

    def __init__(
        self,
        ledger: LoanLedger,
        replay_service: BalanceReplayService,
        default_period: int = DEFAULT_PERIOD,
        currency: Currency = Currency.USD
    ):
        self.ledger = ledger
        self.replay_service = replay_service
        self.default_period = normalize_period(default_period)
        self.currency = currency
        self.logger = get_logger("loan_engine.analytics")

    def get_analytics(
        self,
        account_id: str,
        period: Any = None,
        owner_id: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> AnalyticsView:
        """
        Raises:
            NotFound: The account does not exist, or belongs to someone other than owner_id
        """
        account = self.ledger.get_account(account_id)
        if account is None or (owner_id is not None and account.user_id != owner_id):
            # Missing and foreign accounts are indistinguishable
            raise NotFound("loan_account", account_id)

        months = normalize_period(period, self.default_period)
        rows = self.replay_service.get_monthly_balances(account_id)
        self.logger.debug("Projecting %s months for account %s", months, account_id)
        return project(account, rows, months, as_of or date.today(), self.currency)
