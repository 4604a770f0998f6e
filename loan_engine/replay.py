"""
Balance Replay Module

Deterministic reconstruction of monthly balances from an account's
transaction history. ``replay`` is a pure function of its inputs (no clock
reads, no storage); ``BalanceReplayService`` loads the inputs, runs it, and
persists the result as the account's MonthlyBalance rows.

Months are anchored on the origin's day of month: period k runs from
``origin + k months`` (inclusive) to ``origin + k+1 months`` (exclusive),
with the day clamped to the end of short months. Interest is credited only
for periods that have fully elapsed by ``as_of``.
"""

from decimal import Decimal
from datetime import datetime, time, timezone, date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Any
import calendar
import threading

from .money import Currency, ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import Conflict, InvalidTransaction
from .ledger import (
    LoanLedger, LoanAccount, Transaction, TransactionType,
    opening_reference, parse_transaction_type
)
from .logging_config import get_logger, log_action


def add_months(origin: date, months: int) -> date:
    """origin shifted by whole months, day clamped to the target month's length"""
    total = origin.year * 12 + (origin.month - 1) + months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(origin.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def replay_timestamp(as_of: date) -> datetime:
    """Record time of persisted replay rows: midnight UTC of the replay horizon"""
    return datetime.combine(as_of, time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class MonthSummary:
    """One replayed period; the pure output of ``replay``"""
    month: str
    period_start: date
    period_end: date
    opening_balance: Decimal
    balance: Decimal
    monthly_payment: Decimal
    bonus_payment: Decimal
    withdrawal: Decimal
    deposits: Decimal
    adjustments: Decimal
    net_growth: Decimal
    interest_bearing: bool


@dataclass(frozen=True)
class ReplayResult:
    closing_balance: Decimal
    monthly_balances: List[MonthSummary]
    months_processed: int
    total_bonuses: Decimal
    total_withdrawals: Decimal


def _validate(transactions: Iterable[Transaction], origin_date: date) -> List[Transaction]:
    validated = []
    for txn in transactions:
        txn_type = parse_transaction_type(txn.transaction_type)
        if txn_type != txn.transaction_type:
            raise InvalidTransaction(
                f"Transaction type must be a TransactionType, got {txn.transaction_type!r}",
                transaction_id=txn.id
            )
        try:
            amount = to_decimal(txn.amount)
        except ValueError:
            raise InvalidTransaction(f"Invalid amount {txn.amount!r}", transaction_id=txn.id)
        if amount == ZERO:
            raise InvalidTransaction("Transaction amount must be non-zero", transaction_id=txn.id)
        if txn.transaction_date < origin_date:
            raise InvalidTransaction(
                f"Transaction dated {txn.transaction_date.isoformat()} precedes origin "
                f"{origin_date.isoformat()}",
                transaction_id=txn.id
            )
        validated.append(txn)
    return validated


def replay(
    opening_principal: Decimal,
    monthly_rate: Decimal,
    origin_date: date,
    transactions: Iterable[Transaction],
    as_of: date,
    currency: Currency = Currency.USD
) -> ReplayResult:
    """
    Replay an account's history into monthly balances

    For each period in order: credit interest on the carried balance (fully
    elapsed periods only), apply the period's transactions in replay order,
    emit a MonthSummary and carry the closing balance forward. A period that
    already contains explicit ``monthly_payment`` transactions takes those as
    its interest instead of a computed amount.

    The trailing, not yet elapsed period is emitted without interest when it
    holds transactions or, past the origin period, at least one elapsed day.

    Args:
        opening_principal: Balance at origin_date
        monthly_rate: Monthly interest rate as a fraction
        origin_date: First day of the account's history
        transactions: Ledger rows excluding the opening principal
        as_of: Replay horizon; later-dated transactions are not applied
        currency: Minor unit used to round interest

    Returns:
        ReplayResult

    Raises:
        InvalidTransaction: Zero amount, unknown type, or a date before origin_date
    """
    validated = _validate(transactions, origin_date)
    applied = sorted(
        (t for t in validated if t.transaction_date <= as_of),
        key=lambda t: t.replay_key
    )

    balance = opening_principal
    summaries: List[MonthSummary] = []
    months_processed = 0
    total_bonuses = ZERO
    total_withdrawals = ZERO
    cursor = 0
    k = 0

    while True:
        start = add_months(origin_date, k)
        end = add_months(origin_date, k + 1)
        if start > as_of:
            break

        period_txns = []
        while cursor < len(applied) and applied[cursor].transaction_date < end:
            period_txns.append(applied[cursor])
            cursor += 1

        fully_elapsed = end <= as_of
        if not fully_elapsed:
            elapsed_days = (as_of - start).days
            if not period_txns and (k == 0 or elapsed_days == 0):
                break

        opening = balance
        interest = ZERO
        has_explicit_interest = any(
            t.transaction_type == TransactionType.MONTHLY_PAYMENT for t in period_txns
        )
        if fully_elapsed and not has_explicit_interest and balance > ZERO:
            interest = round_money(balance * monthly_rate, currency)
        balance += interest

        monthly_payment = interest
        bonus_payment = ZERO
        withdrawal = ZERO
        deposits = ZERO
        adjustments = ZERO
        for txn in period_txns:
            balance += txn.signed_amount
            txn_type = txn.transaction_type
            if txn_type in (TransactionType.MONTHLY_PAYMENT, TransactionType.YIELD_PAYMENT):
                monthly_payment += abs(txn.amount)
            elif txn_type == TransactionType.BONUS:
                bonus_payment += abs(txn.amount)
            elif txn_type == TransactionType.WITHDRAWAL:
                withdrawal += abs(txn.amount)
            elif txn_type in (TransactionType.DEPOSIT, TransactionType.LOAN):
                deposits += abs(txn.amount)
            else:
                adjustments += txn.amount

        total_bonuses += bonus_payment
        total_withdrawals += withdrawal

        summaries.append(MonthSummary(
            month=month_key(start),
            period_start=start,
            period_end=end,
            opening_balance=opening,
            balance=balance,
            monthly_payment=monthly_payment,
            bonus_payment=bonus_payment,
            withdrawal=withdrawal,
            deposits=deposits,
            adjustments=adjustments,
            net_growth=max(ZERO, monthly_payment + bonus_payment),
            interest_bearing=fully_elapsed
        ))

        if not fully_elapsed:
            break
        months_processed += 1
        k += 1

    return ReplayResult(
        closing_balance=balance,
        monthly_balances=summaries,
        months_processed=months_processed,
        total_bonuses=total_bonuses,
        total_withdrawals=total_withdrawals
    )


@dataclass
class MonthlyBalance(StorageRecord):
    """Persisted replay output for one period of one account"""
    loan_account_id: str
    month: str
    period_start: date
    period_end: date
    opening_balance: Decimal
    balance: Decimal
    monthly_payment: Decimal
    bonus_payment: Decimal
    withdrawal: Decimal
    deposits: Decimal
    adjustments: Decimal
    net_growth: Decimal
    interest_bearing: bool

    @classmethod
    def from_summary(cls, account_id: str, summary: MonthSummary, stamp: datetime) -> 'MonthlyBalance':
        return cls(
            id=f"{account_id}:{summary.month}",
            created_at=stamp,
            updated_at=stamp,
            loan_account_id=account_id,
            month=summary.month,
            period_start=summary.period_start,
            period_end=summary.period_end,
            opening_balance=summary.opening_balance,
            balance=summary.balance,
            monthly_payment=summary.monthly_payment,
            bonus_payment=summary.bonus_payment,
            withdrawal=summary.withdrawal,
            deposits=summary.deposits,
            adjustments=summary.adjustments,
            net_growth=summary.net_growth,
            interest_bearing=summary.interest_bearing
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MonthlyBalance':
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            loan_account_id=data['loan_account_id'],
            month=data['month'],
            period_start=date.fromisoformat(data['period_start']),
            period_end=date.fromisoformat(data['period_end']),
            opening_balance=Decimal(data['opening_balance']),
            balance=Decimal(data['balance']),
            monthly_payment=Decimal(data['monthly_payment']),
            bonus_payment=Decimal(data['bonus_payment']),
            withdrawal=Decimal(data['withdrawal']),
            deposits=Decimal(data['deposits']),
            adjustments=Decimal(data['adjustments']),
            net_growth=Decimal(data['net_growth']),
            interest_bearing=data['interest_bearing']
        )


@dataclass
class ReplaySummary:
    """What a replay persisted"""
    account_id: str
    as_of: date
    months_processed: int
    rows_written: int
    closing_balance: Decimal


class BalanceReplayService:
    """
    Runs replay for stored accounts and persists the monthly history

    Replays of one account are serialized: a second concurrent request raises
    Conflict instead of interleaving writes. Different accounts replay in
    parallel.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LoanLedger,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.currency = currency
        self.table_name = "monthly_balances"
        self.logger = get_logger("loan_engine.replay")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def replay_account(self, account: LoanAccount, as_of: date) -> ReplayResult:
        """Pure replay of a stored account (nothing is written)"""
        opening_ref = opening_reference(account.id)
        transactions = [
            t for t in self.ledger.list_transactions(account.id)
            if t.reference_id != opening_ref
        ]
        return replay(
            opening_principal=account.principal_amount,
            monthly_rate=account.monthly_rate,
            origin_date=account.origin_date,
            transactions=transactions,
            as_of=as_of,
            currency=self.currency
        )

    def replay_and_persist(
        self,
        account_id: str,
        as_of: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> ReplaySummary:
        """
        Recompute an account's monthly balances and reconcile its aggregates

        Args:
            account_id: Account to replay
            as_of: Replay horizon (defaults to today)
            user_id: Caller, for the audit trail

        Returns:
            ReplaySummary

        Raises:
            NotFound: Unknown account
            Conflict: A replay of the same account is already running
            InvalidTransaction: The stored history is malformed
        """
        as_of = as_of or date.today()
        lock = self._account_lock(account_id)
        if not lock.acquire(blocking=False):
            raise Conflict(account_id)

        try:
            # The ledger reads and the writes form one unit; record_transaction waits on it
            with self.storage.atomic():
                account = self.ledger.require_account(account_id)
                result = self.replay_account(account, as_of)
                stamp = replay_timestamp(as_of)

                self.storage.delete_where(self.table_name, {"loan_account_id": account.id})
                for summary in result.monthly_balances:
                    row = MonthlyBalance.from_summary(account.id, summary, stamp)
                    self.storage.save(self.table_name, row.id, row.to_dict())

                self.ledger.reconcile_account(
                    account,
                    current_balance=result.closing_balance,
                    total_bonuses=result.total_bonuses,
                    total_withdrawals=result.total_withdrawals
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.BALANCES_REPLAYED,
                    entity_type="loan_account",
                    entity_id=account.id,
                    user_id=user_id,
                    metadata={
                        "as_of": as_of,
                        "months_processed": result.months_processed,
                        "rows_written": len(result.monthly_balances),
                        "closing_balance": result.closing_balance
                    }
                )
        finally:
            lock.release()

        log_action(
            self.logger, "info",
            f"Replayed {len(result.monthly_balances)} months for account {account_id}",
            user_id=user_id, action="replay_and_persist", resource=account_id,
            extra={"months_processed": result.months_processed}
        )

        return ReplaySummary(
            account_id=account_id,
            as_of=as_of,
            months_processed=result.months_processed,
            rows_written=len(result.monthly_balances),
            closing_balance=result.closing_balance
        )

    def get_monthly_balances(self, account_id: str) -> List[MonthlyBalance]:
        """Persisted monthly balances of an account, oldest first"""
        rows = [
            MonthlyBalance.from_dict(d)
            for d in self.storage.find(self.table_name, {"loan_account_id": account_id})
        ]
        rows.sort(key=lambda r: r.period_start)
        return rows
