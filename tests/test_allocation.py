"""
Test suite for LIFO withdrawal allocation
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date

from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.exceptions import InvalidTransaction, InsufficientFunds, NotFound
from loan_engine.ledger import LoanLedger, TransactionType
from loan_engine.yield_deposits import YieldDeposit, YieldDepositManager, DepositStatus
from loan_engine.allocation import WithdrawalAllocator, lifo_order, plan_lifo_allocation


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def ledger(storage, audit_trail):
    return LoanLedger(storage, audit_trail)


@pytest.fixture
def manager(storage, ledger, audit_trail):
    return YieldDepositManager(storage, ledger, audit_trail)


@pytest.fixture
def allocator(storage, ledger, manager, audit_trail):
    return WithdrawalAllocator(storage, ledger, manager, audit_trail)


@pytest.fixture
def account(ledger):
    return ledger.open_account("user-1", "100", "0.01", origin_date=date(2022, 12, 1))


@pytest.fixture
def deposits(manager, account):
    d1 = manager.create_deposit("user-1", "1000", date(2023, 1, 1))
    d2 = manager.create_deposit("user-1", "500", date(2023, 6, 1))
    return d1, d2


def make_deposit(deposit_id, principal, start, created_offset=0, status=DepositStatus.ACTIVE, deleted=False):
    created = datetime(2023, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=created_offset)
    return YieldDeposit(
        id=deposit_id,
        created_at=created,
        updated_at=created,
        user_id="user-1",
        principal_amount=Decimal(principal),
        annual_yield_rate=Decimal('0.12'),
        start_date=start,
        status=status,
        deleted=deleted
    )


class TestPlanLifoAllocation:
    """Test the pure allocation plan"""

    def test_newest_first(self):
        d1 = make_deposit("D1", "1000", date(2023, 1, 1))
        d2 = make_deposit("D2", "500", date(2023, 6, 1))

        plan = plan_lifo_allocation([d1, d2], Decimal('700'))

        assert [(r.deposit_id, r.reduced_by, r.new_principal) for r in plan.reductions] == [
            ("D2", Decimal('500'), Decimal('0')),
            ("D1", Decimal('200'), Decimal('800')),
        ]
        assert plan.reductions[0].completed
        assert not plan.reductions[1].completed
        assert plan.remainder_unallocated == Decimal('0')
        # Inputs are untouched
        assert d2.principal_amount == Decimal('500')

    def test_shortfall_reported(self):
        plan = plan_lifo_allocation([make_deposit("D1", "800", date(2023, 1, 1))], Decimal('900'))
        assert plan.allocated_total == Decimal('800')
        assert plan.remainder_unallocated == Decimal('100')

    def test_tie_break_on_id(self):
        same_day = date(2023, 3, 1)
        older = make_deposit("Z", "10", same_day, created_offset=0)
        newer = make_deposit("A", "10", same_day, created_offset=5)
        middle = make_deposit("M", "10", same_day, created_offset=3)
        assert [d.id for d in lifo_order([newer, older, middle])] == ["Z", "M", "A"]

    def test_ineligible_deposits_skipped(self):
        deposits = [
            make_deposit("ACTIVE", "100", date(2023, 1, 1)),
            make_deposit("INACTIVE", "100", date(2023, 2, 1), status=DepositStatus.INACTIVE),
            make_deposit("DONE", "0", date(2023, 3, 1), status=DepositStatus.COMPLETED),
            make_deposit("DELETED", "100", date(2023, 4, 1), deleted=True),
        ]
        plan = plan_lifo_allocation(deposits, Decimal('150'))
        assert [r.deposit_id for r in plan.reductions] == ["ACTIVE"]
        assert plan.remainder_unallocated == Decimal('50')

    def test_non_positive_amount(self):
        with pytest.raises(InvalidTransaction):
            plan_lifo_allocation([], Decimal('0'))


class TestAllocateWithdrawal:
    """Test applying allocations"""

    def test_lifo_scenario(self, allocator, manager, deposits):
        d1, d2 = deposits

        first = allocator.allocate_withdrawal("user-1", "700")
        assert first.remainder_unallocated == Decimal('0')
        assert manager.get_deposit(d2.id).principal_amount == Decimal('0.00')
        assert manager.get_deposit(d2.id).status == DepositStatus.COMPLETED
        assert manager.get_deposit(d1.id).principal_amount == Decimal('800.00')
        assert manager.get_deposit(d1.id).status == DepositStatus.ACTIVE

        second = allocator.allocate_withdrawal("user-1", "900")
        assert manager.get_deposit(d1.id).principal_amount == Decimal('0.00')
        assert manager.get_deposit(d1.id).status == DepositStatus.COMPLETED
        assert second.remainder_unallocated == Decimal('100.00')

    def test_principal_never_negative(self, allocator, manager, deposits):
        allocator.allocate_withdrawal("user-1", "5000")
        assert all(d.principal_amount >= 0 for d in manager.list_deposits(user_id="user-1"))

    def test_require_full_applies_nothing(self, allocator, manager, deposits, audit_trail):
        with pytest.raises(InsufficientFunds) as exc_info:
            allocator.allocate_withdrawal("user-1", "1600", require_full=True)

        assert exc_info.value.available == Decimal('1500.00')
        assert [d.principal_amount for d in manager.list_deposits(user_id="user-1")] == [
            Decimal('500.00'), Decimal('1000.00')
        ]
        assert audit_trail.get_events_by_type(AuditEventType.WITHDRAWAL_ALLOCATED) == []

    def test_each_reduction_audited(self, allocator, deposits, audit_trail):
        allocator.allocate_withdrawal("user-1", "700", withdrawal_transaction_id="TXN1")
        events = audit_trail.get_events_by_type(AuditEventType.WITHDRAWAL_ALLOCATED)
        assert len(events) == 2
        assert {e.metadata["withdrawal_transaction_id"] for e in events} == {"TXN1"}

    def test_user_without_deposits(self, allocator, account):
        result = allocator.allocate_withdrawal("user-1", "50")
        assert result.reductions == []
        assert result.remainder_unallocated == Decimal('50.00')

    def test_invalid_amount(self, allocator, deposits):
        with pytest.raises(InvalidTransaction):
            allocator.allocate_withdrawal("user-1", "-5")


class TestCompleteWithdrawal:
    """Test the withdrawal workflow"""

    def test_records_transaction_and_allocates(self, allocator, ledger, manager, account, deposits):
        d1, d2 = deposits
        result = allocator.complete_withdrawal(account.id, "700", transaction_date=date(2023, 7, 1))

        assert result.transaction.transaction_type == TransactionType.WITHDRAWAL
        assert result.transaction.amount == Decimal('700.00')
        assert ledger.get_account(account.id).current_balance == Decimal('900.00')
        assert ledger.get_account(account.id).total_withdrawals == Decimal('700.00')
        assert manager.get_deposit(d2.id).status == DepositStatus.COMPLETED
        assert result.allocation.allocated_total == Decimal('700.00')

    def test_exceeding_balance_changes_nothing(self, allocator, ledger, manager, account, deposits):
        with pytest.raises(InsufficientFunds):
            allocator.complete_withdrawal(account.id, "1600.01", transaction_date=date(2023, 7, 1))

        assert ledger.get_account(account.id).current_balance == Decimal('1600.00')
        assert ledger.list_transactions(account.id, [TransactionType.WITHDRAWAL]) == []
        assert manager.get_deposit(deposits[1].id).principal_amount == Decimal('500.00')

    def test_withdrawal_beyond_deposits_keeps_remainder(self, allocator, account, deposits):
        result = allocator.complete_withdrawal(account.id, "1550", transaction_date=date(2023, 7, 1))
        assert result.allocation.remainder_unallocated == Decimal('50.00')

    def test_unknown_account(self, allocator):
        with pytest.raises(NotFound):
            allocator.complete_withdrawal("missing", "10")
