"""
Yield Payout Module

Daily and annual yield payouts for active deposits. Every payout is a
YieldPayout row paired with a ``yield_payment`` ledger transaction on the
owner's loan account; both are written in one atomic unit.

A payout is identified by (deposit_id, payout_date, kind). The daily batch
can be re-run for the same date without paying anything twice, and an
annual payout is a true-up: it pays the year's yield minus the daily
payouts already made inside its anniversary window, and the daily batch
treats dates inside a paid window as processed.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .money import Currency, ZERO, round_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import AlreadyProcessed, InvalidTransaction
from .ledger import LoanLedger, TransactionType
from .replay import add_months
from .yield_deposits import YieldDeposit, YieldDepositManager, annual_payout
from .logging_config import get_logger, log_action


class PayoutKind(Enum):
    DAILY = "daily"
    ANNUAL = "annual"


def parse_payout_kind(value: Any) -> PayoutKind:
    if isinstance(value, PayoutKind):
        return value
    try:
        return PayoutKind(value)
    except ValueError:
        raise InvalidTransaction(f"Unknown payout kind: {value!r}")


def daily_yield_amount(
    principal: Decimal,
    annual_rate: Decimal,
    days_in_year: int = 365,
    currency: Currency = Currency.USD
) -> Decimal:
    """One day of yield, rounded half-even to the minor unit"""
    return round_money(principal * annual_rate / Decimal(days_in_year), currency)


def payout_id(deposit_id: str, payout_date: date, kind: PayoutKind) -> str:
    """Deterministic record id; doubles as the idempotency key"""
    return f"{deposit_id}:{kind.value}:{payout_date.isoformat()}"


def anniversary_window_start(anniversary: date) -> date:
    """Exclusive lower bound of the year an annual payout at ``anniversary`` covers"""
    return add_months(anniversary, -12)


@dataclass
class YieldPayout(StorageRecord):
    """One applied payout; append-only"""
    deposit_id: str
    user_id: str
    amount: Decimal
    payout_date: date
    kind: PayoutKind
    transaction_id: str
    processed_by: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'YieldPayout':
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            deposit_id=data['deposit_id'],
            user_id=data['user_id'],
            amount=Decimal(data['amount']),
            payout_date=date.fromisoformat(data['payout_date']),
            kind=PayoutKind(data['kind']),
            transaction_id=data['transaction_id'],
            processed_by=data.get('processed_by'),
            notes=data.get('notes')
        )


@dataclass(frozen=True)
class PayoutLine:
    deposit_id: str
    user_id: str
    amount: Decimal
    payout_date: date


@dataclass(frozen=True)
class PayoutFailure:
    deposit_id: str
    code: str
    message: str


@dataclass
class DailyBatchResult:
    """Outcome of one batch run; a dry run reports what would be applied"""
    as_of: date
    kind: PayoutKind = PayoutKind.DAILY
    dry_run: bool = False
    payments_applied: int = 0
    total_amount: Decimal = ZERO
    already_processed_count: int = 0
    skipped_count: int = 0
    failures: List[PayoutFailure] = field(default_factory=list)
    payouts: List[PayoutLine] = field(default_factory=list)


@dataclass
class BatchStatus:
    as_of: date
    kind: PayoutKind
    processed_count: int
    processed_amount: Decimal
    unique_users: int
    eligible_count: int
    pending_count: int

    @property
    def is_complete(self) -> bool:
        return self.pending_count == 0


class PayoutBatch:
    """
    Applies daily and annual yield payouts

    The engine never schedules itself; a cron job, the CLI or an admin
    endpoint calls ``run_daily_batch`` / ``run_annual_payouts``.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LoanLedger,
        deposits: YieldDepositManager,
        audit_trail: AuditTrail,
        days_in_year: int = 365,
        currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.ledger = ledger
        self.deposits = deposits
        self.audit_trail = audit_trail
        self.days_in_year = days_in_year
        self.currency = currency
        self.table_name = "yield_payouts"
        self.logger = get_logger("loan_engine.payouts")

    # Queries

    def has_payout(self, deposit_id: str, payout_date: date, kind: PayoutKind) -> bool:
        return self.storage.exists(self.table_name, payout_id(deposit_id, payout_date, kind))

    def list_payouts(
        self,
        deposit_id: Optional[str] = None,
        payout_date: Optional[date] = None,
        kind: Optional[PayoutKind] = None
    ) -> List[YieldPayout]:
        """Payouts matching the given filters, oldest payout date first"""
        filters: Dict[str, Any] = {}
        if deposit_id is not None:
            filters["deposit_id"] = deposit_id
        if payout_date is not None:
            filters["payout_date"] = payout_date
        if kind is not None:
            filters["kind"] = kind
        payouts = [YieldPayout.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        payouts.sort(key=lambda p: (p.payout_date, p.created_at, p.id))
        return payouts

    def covered_by_annual(self, deposit_id: str, as_of: date) -> bool:
        """Whether an annual payout already covers as_of for this deposit"""
        for payout in self.list_payouts(deposit_id=deposit_id, kind=PayoutKind.ANNUAL):
            if anniversary_window_start(payout.payout_date) < as_of <= payout.payout_date:
                return True
        return False

    def daily_paid_in_window(self, deposit_id: str, anniversary: date) -> Decimal:
        """Sum of daily payouts inside (anniversary - 1 year, anniversary]"""
        window_start = anniversary_window_start(anniversary)
        return sum(
            (p.amount for p in self.list_payouts(deposit_id=deposit_id, kind=PayoutKind.DAILY)
             if window_start < p.payout_date <= anniversary),
            ZERO
        )

    def daily_amount(self, deposit: YieldDeposit) -> Decimal:
        return daily_yield_amount(
            deposit.principal_amount, deposit.annual_yield_rate, self.days_in_year, self.currency
        )

    def annual_amount(self, deposit: YieldDeposit, anniversary: date) -> Decimal:
        """Year's yield minus what daily payouts already paid for that year, floored at 0"""
        owed = annual_payout(deposit, self.currency) - self.daily_paid_in_window(deposit.id, anniversary)
        return max(ZERO, owed)

    # Application

    def _apply(
        self,
        deposit_id: str,
        payout_date: date,
        kind: PayoutKind,
        amount: Decimal,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> YieldPayout:
        """Write one payout; totals are added to the deposit as stored inside the atomic unit"""
        record_id = payout_id(deposit_id, payout_date, kind)

        with self.storage.atomic():
            if self.storage.exists(self.table_name, record_id):
                raise AlreadyProcessed(deposit_id, payout_date, kind.value)

            deposit = self.deposits.require_deposit(deposit_id)
            if not deposit.is_eligible(payout_date):
                raise InvalidTransaction(
                    f"Deposit {deposit_id} is not eligible for a payout on {payout_date.isoformat()}"
                )

            account = self.ledger.get_account_for_user(deposit.user_id)
            transaction = self.ledger.record_transaction(
                account.id,
                TransactionType.YIELD_PAYMENT,
                amount,
                payout_date,
                description=f"{kind.value.capitalize()} yield payment for deposit {deposit.id}",
                reference_id=record_id,
                user_id=processed_by
            )

            now = datetime.now(timezone.utc)
            payout = YieldPayout(
                id=record_id,
                created_at=now,
                updated_at=now,
                deposit_id=deposit.id,
                user_id=deposit.user_id,
                amount=amount,
                payout_date=payout_date,
                kind=kind,
                transaction_id=transaction.id,
                processed_by=processed_by,
                notes=notes
            )
            self.storage.save(self.table_name, payout.id, payout.to_dict())

            deposit.total_paid_out += amount
            if deposit.last_payout_date is None or payout_date > deposit.last_payout_date:
                deposit.last_payout_date = payout_date
            deposit.updated_at = now
            self.deposits.save_deposit(deposit)

            self.audit_trail.log_event(
                event_type=AuditEventType.YIELD_PAYOUT_APPLIED,
                entity_type="yield_deposit",
                entity_id=deposit.id,
                user_id=processed_by,
                metadata={
                    "payout_id": payout.id,
                    "kind": kind,
                    "amount": amount,
                    "payout_date": payout_date,
                    "transaction_id": transaction.id,
                    "total_paid_out": deposit.total_paid_out
                }
            )

        return payout

    def apply_payout(
        self,
        deposit_id: str,
        payout_date: date,
        kind: Any = PayoutKind.DAILY,
        processed_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> YieldPayout:
        """
        Pay a single deposit for one date

        An annual payout must be dated on one of the deposit's anniversaries.

        Raises:
            NotFound: Unknown or deleted deposit
            InvalidTransaction: Deposit not eligible on payout_date, or nothing to pay
            AlreadyProcessed: The payout already exists (or a daily date is covered by an annual payout)
        """
        payout_kind = parse_payout_kind(kind)

        with self.storage.atomic():
            deposit = self.deposits.require_deposit(deposit_id)
            if not deposit.is_eligible(payout_date):
                raise InvalidTransaction(
                    f"Deposit {deposit_id} is not eligible for a payout on {payout_date.isoformat()}"
                )

            if payout_kind == PayoutKind.DAILY:
                if self.covered_by_annual(deposit.id, payout_date):
                    raise AlreadyProcessed(deposit.id, payout_date, payout_kind.value)
                amount = self.daily_amount(deposit)
            else:
                if deposit.latest_anniversary(payout_date) != payout_date:
                    raise InvalidTransaction(
                        f"{payout_date.isoformat()} is not an anniversary of deposit {deposit_id}"
                    )
                amount = self.annual_amount(deposit, payout_date)

            if amount <= ZERO:
                raise InvalidTransaction(f"Nothing to pay for deposit {deposit_id} on {payout_date.isoformat()}")

            return self._apply(deposit.id, payout_date, payout_kind, amount, processed_by, notes)

    # Batches

    def _run(self, as_of: date, kind: PayoutKind, processed_by: Optional[str], dry_run: bool) -> DailyBatchResult:
        result = DailyBatchResult(as_of=as_of, kind=kind, dry_run=dry_run)

        for candidate in self.deposits.eligible_deposits(as_of):
            try:
                with self.storage.atomic():
                    deposit = self.deposits.get_deposit(candidate.id)
                    if deposit is None or not deposit.is_eligible(as_of):
                        result.skipped_count += 1
                        continue

                    if kind == PayoutKind.DAILY:
                        payout_date = as_of
                        if (self.has_payout(deposit.id, as_of, kind)
                                or self.covered_by_annual(deposit.id, as_of)):
                            result.already_processed_count += 1
                            continue
                        amount = self.daily_amount(deposit)
                    else:
                        payout_date = deposit.latest_anniversary(as_of)
                        if payout_date is None:
                            result.skipped_count += 1
                            continue
                        if self.has_payout(deposit.id, payout_date, kind):
                            result.already_processed_count += 1
                            continue
                        amount = self.annual_amount(deposit, payout_date)

                    if amount <= ZERO:
                        result.skipped_count += 1
                        continue

                    if not dry_run:
                        self._apply(deposit.id, payout_date, kind, amount, processed_by)

                result.payments_applied += 1
                result.total_amount += amount
                result.payouts.append(PayoutLine(deposit.id, deposit.user_id, amount, payout_date))

            except AlreadyProcessed:
                result.already_processed_count += 1
            except Exception as e:
                code = getattr(e, "code", type(e).__name__)
                self.logger.error(
                    "Payout failed for deposit %s on %s: %s", candidate.id, as_of, e, exc_info=True
                )
                result.failures.append(PayoutFailure(candidate.id, code, str(e)))
                if not dry_run:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.YIELD_PAYOUT_FAILED,
                        entity_type="yield_deposit",
                        entity_id=candidate.id,
                        user_id=processed_by,
                        metadata={"kind": kind, "as_of": as_of, "code": code, "error": str(e)}
                    )

        if not dry_run:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYOUT_BATCH_COMPLETED,
                entity_type="payout_batch",
                entity_id=f"{kind.value}:{as_of.isoformat()}",
                user_id=processed_by,
                metadata={
                    "payments_applied": result.payments_applied,
                    "total_amount": result.total_amount,
                    "already_processed": result.already_processed_count,
                    "skipped": result.skipped_count,
                    "failures": len(result.failures)
                }
            )

        log_action(
            self.logger, "info",
            f"{kind.value.capitalize()} payout batch for {as_of.isoformat()}"
            f"{' (dry run)' if dry_run else ''}: {result.payments_applied} applied",
            user_id=processed_by, action=f"run_{kind.value}_batch",
            extra={
                "total_amount": str(result.total_amount),
                "already_processed": result.already_processed_count,
                "skipped": result.skipped_count,
                "failures": len(result.failures)
            }
        )
        return result

    def run_daily_batch(
        self,
        as_of: date,
        processed_by: Optional[str] = None,
        dry_run: bool = False
    ) -> DailyBatchResult:
        """
        Pay one day of yield to every eligible deposit

        Eligible deposits are active, not deleted, and started on or before
        as_of. Re-running for the same date applies nothing new; deposits
        already paid (daily, or by an annual payout covering the date) are
        counted in already_processed_count. A failing deposit is recorded in
        failures and does not stop the batch.
        """
        return self._run(as_of, PayoutKind.DAILY, processed_by, dry_run)

    def run_annual_payouts(
        self,
        as_of: date,
        processed_by: Optional[str] = None,
        dry_run: bool = False
    ) -> DailyBatchResult:
        """
        Pay the annual true-up for each eligible deposit's latest anniversary on or before as_of

        Deposits still in their first year are skipped.
        """
        return self._run(as_of, PayoutKind.ANNUAL, processed_by, dry_run)

    def get_batch_status(self, as_of: date, kind: Any = PayoutKind.DAILY) -> BatchStatus:
        """Progress of the batch for a date, from payout rows and the eligible deposit set"""
        payout_kind = parse_payout_kind(kind)
        processed = self.list_payouts(payout_date=as_of, kind=payout_kind)
        processed_ids = {p.deposit_id for p in processed}

        eligible = self.deposits.eligible_deposits(as_of)
        pending = 0
        for deposit in eligible:
            if deposit.id in processed_ids:
                continue
            if payout_kind == PayoutKind.DAILY:
                if self.covered_by_annual(deposit.id, as_of) or self.daily_amount(deposit) <= ZERO:
                    continue
                pending += 1
            elif deposit.latest_anniversary(as_of) == as_of:
                pending += 1

        return BatchStatus(
            as_of=as_of,
            kind=payout_kind,
            processed_count=len(processed),
            processed_amount=sum((p.amount for p in processed), ZERO),
            unique_users=len({p.user_id for p in processed}),
            eligible_count=len(eligible),
            pending_count=pending
        )
