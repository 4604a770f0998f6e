"""
Test suite for the transaction ledger

Accounts, transaction validation, running aggregates and the invariant that
a balance never moves without its ledger row.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.exceptions import InvalidTransaction, NotFound, InsufficientFunds
from loan_engine.ledger import (
    LoanLedger, Transaction, TransactionType, normalize_amount, opening_reference,
    parse_transaction_type
)


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
def account(ledger):
    return ledger.open_account("user-1", "30000", "0.01", origin_date=date(2024, 1, 15))


class TestNormalizeAmount:
    """Test amount validation per transaction type"""

    def test_zero_rejected(self):
        with pytest.raises(InvalidTransaction):
            normalize_amount(TransactionType.DEPOSIT, "0")

    def test_negative_withdrawal_is_normalised(self):
        assert normalize_amount(TransactionType.WITHDRAWAL, "-250") == Decimal('250')

    def test_adjustment_keeps_sign(self):
        assert normalize_amount(TransactionType.ADJUSTMENT, "-12.5") == Decimal('-12.5')

    def test_negative_credit_rejected(self):
        with pytest.raises(InvalidTransaction):
            normalize_amount(TransactionType.BONUS, "-5")

    def test_garbage_rejected(self):
        with pytest.raises(InvalidTransaction):
            normalize_amount(TransactionType.DEPOSIT, "ten")

    def test_unknown_type(self):
        with pytest.raises(InvalidTransaction):
            parse_transaction_type("interest")
        assert parse_transaction_type("yield_payment") == TransactionType.YIELD_PAYMENT


class TestSignedAmount:

    def _txn(self, txn_type, amount):
        now = datetime.now(timezone.utc)
        return Transaction(
            id="T1", created_at=now, updated_at=now, loan_account_id="A1",
            transaction_type=txn_type, amount=Decimal(amount), transaction_date=date(2024, 1, 1)
        )

    def test_signs(self):
        assert self._txn(TransactionType.WITHDRAWAL, "10").signed_amount == Decimal('-10')
        assert self._txn(TransactionType.ADJUSTMENT, "-3").signed_amount == Decimal('-3')
        assert self._txn(TransactionType.BONUS, "4").signed_amount == Decimal('4')
        assert self._txn(TransactionType.YIELD_PAYMENT, "0.33").signed_amount == Decimal('0.33')


class TestOpenAccount:
    """Test account opening"""

    def test_open_account(self, ledger, account):
        assert account.principal_amount == Decimal('30000.00')
        assert account.current_balance == Decimal('30000.00')
        assert account.monthly_rate == Decimal('0.01')
        assert account.origin_date == date(2024, 1, 15)
        assert ledger.get_account(account.id) == account

    def test_opening_transaction_recorded(self, ledger, account):
        transactions = ledger.list_transactions(account.id)
        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.LOAN
        assert transactions[0].reference_id == opening_reference(account.id)
        assert transactions[0].transaction_date == account.origin_date

    def test_invalid_rate(self, ledger):
        with pytest.raises(InvalidTransaction):
            ledger.open_account("user-1", "1000", "1.5")
        with pytest.raises(InvalidTransaction):
            ledger.open_account("user-1", "1000", "-0.01")

    def test_invalid_principal(self, ledger):
        with pytest.raises(InvalidTransaction):
            ledger.open_account("user-1", "0", "0.01")

    def test_audited(self, ledger, account, audit_trail):
        events = audit_trail.get_events_for_entity("loan_account", account.id)
        assert events[0].event_type == AuditEventType.LOAN_ACCOUNT_OPENED


class TestRecordTransaction:
    """Test appending transactions"""

    def test_credit_updates_balance(self, ledger, account):
        ledger.record_transaction(account.id, "deposit", "500", date(2024, 2, 1))
        assert ledger.get_account(account.id).current_balance == Decimal('30500.00')

    def test_bonus_and_withdrawal_totals(self, ledger, account):
        ledger.record_transaction(account.id, TransactionType.BONUS, "100", date(2024, 2, 1),
                                  bonus_percentage="0.05")
        ledger.record_transaction(account.id, TransactionType.WITHDRAWAL, "-250", date(2024, 2, 2))

        updated = ledger.get_account(account.id)
        assert updated.total_bonuses == Decimal('100.00')
        assert updated.total_withdrawals == Decimal('250.00')
        assert updated.current_balance == Decimal('29850.00')

    def test_amount_rounded_to_minor_unit(self, ledger, account):
        transaction = ledger.record_transaction(account.id, "deposit", "10.005", date(2024, 2, 1))
        assert transaction.amount == Decimal('10.00')

    def test_bonus_percentage_only_for_bonus(self, ledger, account):
        with pytest.raises(InvalidTransaction):
            ledger.record_transaction(account.id, "deposit", "10", date(2024, 2, 1),
                                      bonus_percentage="0.1")
        with pytest.raises(InvalidTransaction):
            ledger.record_transaction(account.id, "bonus", "10", date(2024, 2, 1),
                                      bonus_percentage="1.5")

    def test_date_before_origin_rejected(self, ledger, account):
        with pytest.raises(InvalidTransaction):
            ledger.record_transaction(account.id, "deposit", "10", date(2024, 1, 14))

    def test_overdraft_rejected_without_side_effects(self, ledger, account, storage):
        transactions_before = storage.count("loan_transactions")
        with pytest.raises(InsufficientFunds) as exc_info:
            ledger.record_transaction(account.id, "withdrawal", "30000.01", date(2024, 2, 1))

        assert exc_info.value.available == Decimal('30000.00')
        assert storage.count("loan_transactions") == transactions_before
        assert ledger.get_account(account.id).current_balance == Decimal('30000.00')

    def test_unknown_account(self, ledger):
        with pytest.raises(NotFound):
            ledger.record_transaction("missing", "deposit", "10", date(2024, 2, 1))

    def test_replay_order(self, ledger, account):
        later = ledger.record_transaction(account.id, "deposit", "1", date(2024, 3, 1))
        earlier = ledger.record_transaction(account.id, "deposit", "2", date(2024, 2, 1))
        same_day = ledger.record_transaction(account.id, "deposit", "3", date(2024, 3, 1))

        ids = [t.id for t in ledger.list_transactions(account.id)][1:]
        assert ids == [earlier.id, later.id, same_day.id]

    def test_filter_by_type(self, ledger, account):
        ledger.record_transaction(account.id, "bonus", "10", date(2024, 2, 1))
        bonuses = ledger.list_transactions(account.id, [TransactionType.BONUS])
        assert [t.amount for t in bonuses] == [Decimal('10.00')]


class TestLookups:

    def test_account_for_user_is_oldest(self, ledger):
        first = ledger.open_account("user-2", "100", "0.01", origin_date=date(2024, 1, 1))
        ledger.open_account("user-2", "200", "0.01", origin_date=date(2024, 1, 1))
        assert ledger.get_account_for_user("user-2").id == first.id
        assert len(ledger.list_accounts("user-2")) == 2

    def test_account_for_unknown_user(self, ledger):
        with pytest.raises(NotFound):
            ledger.get_account_for_user("nobody")

    def test_require_account(self, ledger):
        with pytest.raises(NotFound) as exc_info:
            ledger.require_account("missing")
        assert exc_info.value.code == "NOT_FOUND"
        assert exc_info.value.entity_id == "missing"
