"""
Withdrawal Allocation Module

Withdrawals consume yield deposit principal newest deposit first (LIFO).
``plan_lifo_allocation`` computes the reductions without touching storage;
``WithdrawalAllocator`` applies them atomically and ties them to the
withdrawal's ledger transaction.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from .money import Currency, ZERO, format_money, round_money, to_decimal
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidTransaction, InsufficientFunds
from .ledger import LoanLedger, Transaction, TransactionType
from .yield_deposits import YieldDeposit, YieldDepositManager, DepositStatus
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class DepositReduction:
    deposit_id: str
    previous_principal: Decimal
    reduced_by: Decimal
    new_principal: Decimal

    @property
    def completed(self) -> bool:
        return self.new_principal == ZERO


@dataclass
class AllocationResult:
    reductions: List[DepositReduction] = field(default_factory=list)
    remainder_unallocated: Decimal = ZERO

    @property
    def allocated_total(self) -> Decimal:
        return sum((r.reduced_by for r in self.reductions), ZERO)


@dataclass
class WithdrawalResult:
    transaction: Transaction
    allocation: AllocationResult


def lifo_order(deposits: Iterable[YieldDeposit]) -> List[YieldDeposit]:
    """Allocatable deposits, most recent first"""
    candidates = [
        d for d in deposits
        if d.status == DepositStatus.ACTIVE and not d.deleted and d.principal_amount > ZERO
    ]
    candidates.sort(key=lambda d: (d.start_date, d.id), reverse=True)
    return candidates


def plan_lifo_allocation(deposits: Iterable[YieldDeposit], amount: Decimal) -> AllocationResult:
    """
    Split a withdrawal across deposits, newest first

    Each deposit gives up at most its remaining principal; whatever the
    deposits cannot cover is reported as remainder_unallocated. Deposits are
    not modified.
    """
    if amount <= ZERO:
        raise InvalidTransaction("Withdrawal amount must be positive")

    result = AllocationResult()
    remaining = amount
    for deposit in lifo_order(deposits):
        if remaining <= ZERO:
            break
        take = min(remaining, deposit.principal_amount)
        result.reductions.append(DepositReduction(
            deposit_id=deposit.id,
            previous_principal=deposit.principal_amount,
            reduced_by=take,
            new_principal=deposit.principal_amount - take
        ))
        remaining -= take

    result.remainder_unallocated = remaining
    return result


class WithdrawalAllocator:
    """Applies LIFO allocations and completes withdrawals against the ledger"""

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LoanLedger,
        deposits: YieldDepositManager,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.ledger = ledger
        self.deposits = deposits
        self.audit_trail = audit_trail
        self.currency = currency
        self.logger = get_logger("loan_engine.allocation")

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            value = round_money(to_decimal(amount), self.currency)
        except ValueError:
            raise InvalidTransaction(f"Invalid withdrawal amount: {amount!r}")
        if value <= ZERO:
            raise InvalidTransaction("Withdrawal amount must be positive")
        return value

    def allocate_withdrawal(
        self,
        user_id: str,
        amount: Any,
        require_full: bool = False,
        withdrawal_transaction_id: Optional[str] = None,
        allocated_by: Optional[str] = None
    ) -> AllocationResult:
        """
        Reduce a user's deposits by a withdrawal amount, newest deposit first

        A deposit reduced to exactly zero becomes completed. All reductions
        are applied in one atomic unit.

        Args:
            user_id: Owner of the deposits
            amount: Withdrawal amount (> 0)
            require_full: Raise instead of leaving part of the amount unallocated
            withdrawal_transaction_id: Ledger row the reductions belong to

        Raises:
            InvalidTransaction: Non-positive amount
            InsufficientFunds: require_full is set and the deposits cannot cover amount
        """
        value = self._validate_amount(amount)

        with self.storage.atomic():
            candidates = self.deposits.list_deposits(user_id=user_id, status=DepositStatus.ACTIVE)
            plan = plan_lifo_allocation(candidates, value)

            if require_full and plan.remainder_unallocated > ZERO:
                raise InsufficientFunds(
                    value, plan.allocated_total,
                    message=f"Yield deposits of user {user_id} cover only {plan.allocated_total} of {value}"
                )

            by_id = {d.id: d for d in candidates}
            now = datetime.now(timezone.utc)
            for reduction in plan.reductions:
                deposit = by_id[reduction.deposit_id]
                deposit.principal_amount = reduction.new_principal
                if reduction.completed:
                    deposit.status = DepositStatus.COMPLETED
                deposit.updated_at = now
                self.deposits.save_deposit(deposit)

                self.audit_trail.log_event(
                    event_type=AuditEventType.WITHDRAWAL_ALLOCATED,
                    entity_type="yield_deposit",
                    entity_id=deposit.id,
                    user_id=allocated_by,
                    metadata={
                        "withdrawal_amount": value,
                        "previous_principal": reduction.previous_principal,
                        "reduced_by": reduction.reduced_by,
                        "new_principal": reduction.new_principal,
                        "completed": reduction.completed,
                        "withdrawal_transaction_id": withdrawal_transaction_id
                    }
                )

        if plan.remainder_unallocated > ZERO:
            self.logger.warning(
                "Withdrawal of %s for user %s left %s unallocated",
                format_money(value, self.currency), user_id,
                format_money(plan.remainder_unallocated, self.currency)
            )
        log_action(self.logger, "info", "Withdrawal allocated",
                   user_id=allocated_by, action="allocate_withdrawal", resource=user_id,
                   extra={"amount": str(value), "deposits_reduced": len(plan.reductions)})
        return plan

    def complete_withdrawal(
        self,
        account_id: str,
        amount: Any,
        description: Optional[str] = None,
        transaction_date: Optional[date] = None,
        completed_by: Optional[str] = None
    ) -> WithdrawalResult:
        """
        Pay out a withdrawal from a loan account

        Records the withdrawal transaction and allocates it across the owner's
        yield deposits in one atomic unit.

        Raises:
            NotFound: Unknown account
            InsufficientFunds: Amount exceeds the account's current balance
        """
        value = self._validate_amount(amount)

        with self.storage.atomic():
            account = self.ledger.require_account(account_id)
            if value > account.current_balance:
                raise InsufficientFunds(value, account.current_balance)

            transaction = self.ledger.record_transaction(
                account.id,
                TransactionType.WITHDRAWAL,
                value,
                transaction_date or date.today(),
                description=description or "Withdrawal",
                user_id=completed_by
            )
            allocation = self.allocate_withdrawal(
                account.user_id,
                value,
                withdrawal_transaction_id=transaction.id,
                allocated_by=completed_by
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_COMPLETED,
                entity_type="loan_account",
                entity_id=account.id,
                user_id=completed_by,
                metadata={
                    "transaction_id": transaction.id,
                    "amount": value,
                    "allocated_from_deposits": allocation.allocated_total,
                    "remainder_unallocated": allocation.remainder_unallocated
                }
            )

        return WithdrawalResult(transaction=transaction, allocation=allocation)
