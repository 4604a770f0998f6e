"""
Yield Deposits Module

Interest-bearing deposits held against a user's loan account. Creating a
deposit credits the loan account; payouts (see payouts.py) credit it again
over time; withdrawals consume deposit principal last-in-first-out (see
allocation.py).
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .money import Currency, ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidTransaction, NotFound
from .ledger import LoanLedger, TransactionType
from .replay import add_months
from .logging_config import get_logger, log_action


class DepositStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    COMPLETED = "completed"


# Administrative transitions; completed is terminal
ALLOWED_TRANSITIONS = {
    DepositStatus.ACTIVE: {DepositStatus.INACTIVE, DepositStatus.COMPLETED},
    DepositStatus.INACTIVE: {DepositStatus.ACTIVE},
    DepositStatus.COMPLETED: set(),
}


def deposit_reference(deposit_id: str) -> str:
    return f"yield_deposit:{deposit_id}"


@dataclass
class YieldDeposit(StorageRecord):
    """An interest-bearing deposit; principal_amount is what remains after withdrawals"""
    user_id: str
    principal_amount: Decimal
    annual_yield_rate: Decimal
    start_date: date
    status: DepositStatus = DepositStatus.ACTIVE
    last_payout_date: Optional[date] = None
    total_paid_out: Decimal = ZERO
    notes: Optional[str] = None
    created_by: Optional[str] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    def is_eligible(self, as_of: date) -> bool:
        """Whether the deposit accrues yield on as_of"""
        return (
            self.status == DepositStatus.ACTIVE
            and not self.deleted
            and self.start_date <= as_of
        )

    def anniversary(self, years: int) -> date:
        return add_months(self.start_date, 12 * years)

    def latest_anniversary(self, as_of: date) -> Optional[date]:
        """Most recent anniversary on or before as_of (None in the first year)"""
        years = 1
        latest = None
        while self.anniversary(years) <= as_of:
            latest = self.anniversary(years)
            years += 1
        return latest

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'YieldDeposit':
        last_payout = data.get('last_payout_date')
        deleted_at = data.get('deleted_at')
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            user_id=data['user_id'],
            principal_amount=Decimal(data['principal_amount']),
            annual_yield_rate=Decimal(data['annual_yield_rate']),
            start_date=date.fromisoformat(data['start_date']),
            status=DepositStatus(data['status']),
            last_payout_date=date.fromisoformat(last_payout) if last_payout else None,
            total_paid_out=Decimal(data.get('total_paid_out', '0')),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            deleted=data.get('deleted', False),
            deleted_at=datetime.fromisoformat(deleted_at) if deleted_at else None
        )


def annual_payout(deposit: YieldDeposit, currency: Currency = Currency.USD) -> Decimal:
    """A full year's yield on the remaining principal"""
    return round_money(deposit.principal_amount * deposit.annual_yield_rate, currency)


def next_payout_date(deposit: YieldDeposit) -> date:
    """
    Next annual payout date of a deposit: the first anniversary of its
    start_date strictly after the last payout. The date may already be past
    when a payout is overdue.
    """
    years = 1
    candidate = deposit.anniversary(years)
    if deposit.last_payout_date is not None:
        while candidate <= deposit.last_payout_date:
            years += 1
            candidate = deposit.anniversary(years)
    return candidate


def _parse_status(value: Any) -> DepositStatus:
    if isinstance(value, DepositStatus):
        return value
    try:
        return DepositStatus(value)
    except ValueError:
        raise InvalidTransaction(f"Unknown deposit status: {value!r}")


class YieldDepositManager:
    """
    Creates and administers yield deposits

    Every principal change is written in the same atomic block as the ledger
    transaction or audit event that justifies it.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LoanLedger,
        audit_trail: AuditTrail,
        default_annual_yield_rate: Decimal = Decimal('0.12'),
        max_annual_yield_rate: Decimal = Decimal('1'),
        currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.default_annual_yield_rate = default_annual_yield_rate
        self.max_annual_yield_rate = max_annual_yield_rate
        self.currency = currency
        self.table_name = "yield_deposits"
        self.logger = get_logger("loan_engine.yield_deposits")

    def _validate_principal(self, principal_amount: Any) -> Decimal:
        try:
            principal = round_money(to_decimal(principal_amount), self.currency)
        except ValueError:
            raise InvalidTransaction(f"Invalid principal amount: {principal_amount!r}")
        if principal <= ZERO:
            raise InvalidTransaction("Principal amount must be positive")
        return principal

    def _validate_rate(self, annual_yield_rate: Any) -> Decimal:
        try:
            rate = to_decimal(annual_yield_rate)
        except ValueError:
            raise InvalidTransaction(f"Invalid annual yield rate: {annual_yield_rate!r}")
        if rate <= ZERO or rate > self.max_annual_yield_rate:
            raise InvalidTransaction(
                f"Annual yield rate must be greater than 0 and at most {self.max_annual_yield_rate}"
            )
        return rate

    def create_deposit(
        self,
        user_id: str,
        principal_amount: Any,
        start_date: date,
        annual_yield_rate: Optional[Any] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> YieldDeposit:
        """
        Create a deposit and credit its principal to the user's loan account

        Future start dates are accepted; such a deposit starts accruing once
        a batch runs on or after its start_date.

        Raises:
            InvalidTransaction: Bad principal, rate, or a start date before the account origin
            NotFound: The user has no loan account
        """
        principal = self._validate_principal(principal_amount)
        rate = self._validate_rate(
            annual_yield_rate if annual_yield_rate is not None else self.default_annual_yield_rate
        )
        account = self.ledger.get_account_for_user(user_id)

        now = datetime.now(timezone.utc)
        deposit = YieldDeposit(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            principal_amount=principal,
            annual_yield_rate=rate,
            start_date=start_date,
            notes=notes,
            created_by=created_by
        )

        with self.storage.atomic():
            transaction = self.ledger.record_transaction(
                account.id,
                TransactionType.DEPOSIT,
                principal,
                start_date,
                description=f"Yield deposit {deposit.id}",
                reference_id=deposit_reference(deposit.id),
                user_id=created_by
            )
            self.save_deposit(deposit)
            self.audit_trail.log_event(
                event_type=AuditEventType.YIELD_DEPOSIT_CREATED,
                entity_type="yield_deposit",
                entity_id=deposit.id,
                user_id=created_by,
                metadata={
                    "user_id": user_id,
                    "loan_account_id": account.id,
                    "transaction_id": transaction.id,
                    "principal_amount": principal,
                    "annual_yield_rate": rate,
                    "start_date": start_date
                }
            )

        log_action(self.logger, "info", "Yield deposit created",
                   user_id=created_by, action="create_deposit", resource=deposit.id,
                   extra={"principal_amount": str(principal), "start_date": start_date.isoformat()})
        return deposit

    def update_deposit(
        self,
        deposit_id: str,
        principal_amount: Optional[Any] = None,
        annual_yield_rate: Optional[Any] = None,
        status: Optional[Any] = None,
        notes: Optional[str] = None,
        updated_by: Optional[str] = None
    ) -> YieldDeposit:
        """
        Administrative override of a deposit's terms

        A principal edit is logged as its own audit event so it can be told
        apart from reductions made by withdrawal allocation.

        Raises:
            NotFound: Unknown or deleted deposit
            InvalidTransaction: Bad values or a disallowed status transition
        """
        with self.storage.atomic():
            deposit = self.require_deposit(deposit_id)
            changes: Dict[str, Any] = {}

            if status is not None:
                new_status = _parse_status(status)
                if new_status != deposit.status:
                    if new_status not in ALLOWED_TRANSITIONS[deposit.status]:
                        raise InvalidTransaction(
                            f"Cannot change deposit status from {deposit.status.value} "
                            f"to {new_status.value}"
                        )
                    changes["status"] = {"old": deposit.status, "new": new_status}
                    deposit.status = new_status

            if annual_yield_rate is not None:
                rate = self._validate_rate(annual_yield_rate)
                if rate != deposit.annual_yield_rate:
                    changes["annual_yield_rate"] = {"old": deposit.annual_yield_rate, "new": rate}
                    deposit.annual_yield_rate = rate

            if notes is not None and notes != deposit.notes:
                changes["notes"] = {"old": deposit.notes, "new": notes}
                deposit.notes = notes

            old_principal = deposit.principal_amount
            principal_changed = False
            if principal_amount is not None:
                principal = self._validate_principal(principal_amount)
                if principal != old_principal:
                    deposit.principal_amount = principal
                    principal_changed = True

            if not changes and not principal_changed:
                return deposit

            deposit.updated_at = datetime.now(timezone.utc)
            self.save_deposit(deposit)

            if principal_changed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.YIELD_DEPOSIT_PRINCIPAL_OVERRIDDEN,
                    entity_type="yield_deposit",
                    entity_id=deposit.id,
                    user_id=updated_by,
                    metadata={"old_principal": old_principal, "new_principal": deposit.principal_amount}
                )
            if changes:
                self.audit_trail.log_event(
                    event_type=AuditEventType.YIELD_DEPOSIT_UPDATED,
                    entity_type="yield_deposit",
                    entity_id=deposit.id,
                    user_id=updated_by,
                    metadata=changes
                )

        log_action(self.logger, "info", "Yield deposit updated",
                   user_id=updated_by, action="update_deposit", resource=deposit.id,
                   extra={"fields": sorted(changes) + (["principal_amount"] if principal_changed else [])})
        return deposit

    def delete_deposit(self, deposit_id: str, deleted_by: Optional[str] = None) -> YieldDeposit:
        """
        Soft-delete a deposit and debit its remaining principal from the loan account

        Payout history is kept.

        Raises:
            NotFound: Unknown or already deleted deposit
            InsufficientFunds: The loan account balance cannot cover the remaining principal
        """
        with self.storage.atomic():
            deposit = self.require_deposit(deposit_id)
            now = datetime.now(timezone.utc)
            transaction_id = None

            if deposit.principal_amount > ZERO:
                account = self.ledger.get_account_for_user(deposit.user_id)
                transaction = self.ledger.record_transaction(
                    account.id,
                    TransactionType.ADJUSTMENT,
                    -deposit.principal_amount,
                    max(now.date(), deposit.start_date),
                    description=f"Removal of yield deposit {deposit.id}",
                    reference_id=deposit_reference(deposit.id),
                    user_id=deleted_by
                )
                transaction_id = transaction.id

            deposit.deleted = True
            deposit.deleted_at = now
            deposit.updated_at = now
            self.save_deposit(deposit)

            self.audit_trail.log_event(
                event_type=AuditEventType.YIELD_DEPOSIT_DELETED,
                entity_type="yield_deposit",
                entity_id=deposit.id,
                user_id=deleted_by,
                metadata={
                    "remaining_principal": deposit.principal_amount,
                    "transaction_id": transaction_id,
                    "total_paid_out": deposit.total_paid_out
                }
            )

        log_action(self.logger, "info", "Yield deposit deleted",
                   user_id=deleted_by, action="delete_deposit", resource=deposit.id)
        return deposit

    def get_deposit(self, deposit_id: str) -> Optional[YieldDeposit]:
        """Get deposit by ID (deleted deposits included)"""
        data = self.storage.load(self.table_name, deposit_id)
        if data:
            return YieldDeposit.from_dict(data)
        return None

    def require_deposit(self, deposit_id: str) -> YieldDeposit:
        """Get a live deposit or raise NotFound"""
        deposit = self.get_deposit(deposit_id)
        if deposit is None or deposit.deleted:
            raise NotFound("yield_deposit", deposit_id)
        return deposit

    def list_deposits(
        self,
        status: Optional[Any] = None,
        user_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        include_deleted: bool = False
    ) -> List[YieldDeposit]:
        """
        List deposits, newest first

        start_date/end_date bound the deposits' own start_date (inclusive).
        """
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = _parse_status(status)
        if user_id is not None:
            filters["user_id"] = user_id

        deposits = [YieldDeposit.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if not include_deleted:
            deposits = [d for d in deposits if not d.deleted]
        if start_date is not None:
            deposits = [d for d in deposits if d.start_date >= start_date]
        if end_date is not None:
            deposits = [d for d in deposits if d.start_date <= end_date]

        deposits.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return deposits

    def eligible_deposits(self, as_of: date) -> List[YieldDeposit]:
        """Deposits accruing yield on as_of, oldest start first"""
        deposits = [d for d in self.list_deposits(status=DepositStatus.ACTIVE) if d.is_eligible(as_of)]
        deposits.sort(key=lambda d: (d.start_date, d.created_at, d.id))
        return deposits

    def save_deposit(self, deposit: YieldDeposit) -> None:
        self.storage.save(self.table_name, deposit.id, deposit.to_dict())
