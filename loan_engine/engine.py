"""
Loan Engine Facade

Wires storage, audit trail and the engine components together and exposes
the operations used by the HTTP adapter, the CLI and batch callers.
"""

from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from .config import LoanEngineConfig, get_config
from .money import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .ledger import LoanLedger, LoanAccount, Transaction
from .replay import BalanceReplayService, MonthlyBalance, ReplaySummary
from .analytics import AnalyticsService, AnalyticsView
from .yield_deposits import YieldDeposit, YieldDepositManager
from .allocation import AllocationResult, WithdrawalAllocator, WithdrawalResult
from .payouts import BatchStatus, DailyBatchResult, PayoutBatch, PayoutKind, YieldPayout


class LoanEngine:
    """Loan engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LoanEngineConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)
        self.currency = Currency[self.config.currency.upper()]

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = LoanLedger(self.storage, self.audit_trail, self.currency)
        self.replay_service = BalanceReplayService(
            self.storage, self.ledger, self.audit_trail, self.currency
        )
        self.analytics_service = AnalyticsService(
            self.ledger, self.replay_service,
            default_period=self.config.default_analytics_period,
            currency=self.currency
        )
        self.deposit_manager = YieldDepositManager(
            self.storage, self.ledger, self.audit_trail,
            default_annual_yield_rate=Decimal(self.config.default_annual_yield_rate),
            max_annual_yield_rate=Decimal(self.config.max_annual_yield_rate),
            currency=self.currency
        )
        self.allocator = WithdrawalAllocator(
            self.storage, self.ledger, self.deposit_manager, self.audit_trail, self.currency
        )
        self.payout_batch = PayoutBatch(
            self.storage, self.ledger, self.deposit_manager, self.audit_trail,
            days_in_year=self.config.days_in_year,
            currency=self.currency
        )

    # Ledger

    def open_account(self, user_id: str, principal_amount: Any, monthly_rate: Any,
                     origin_date: Optional[date] = None) -> LoanAccount:
        return self.ledger.open_account(user_id, principal_amount, monthly_rate, origin_date)

    def record_transaction(self, account_id: str, transaction_type: Any, amount: Any,
                           transaction_date: date, description: Optional[str] = None,
                           bonus_percentage: Optional[Any] = None,
                           reference_id: Optional[str] = None,
                           user_id: Optional[str] = None) -> Transaction:
        return self.ledger.record_transaction(
            account_id, transaction_type, amount, transaction_date,
            description=description, bonus_percentage=bonus_percentage,
            reference_id=reference_id, user_id=user_id
        )

    def get_account(self, account_id: str) -> LoanAccount:
        return self.ledger.require_account(account_id)

    def list_transactions(self, account_id: str) -> List[Transaction]:
        self.ledger.require_account(account_id)
        return self.ledger.list_transactions(account_id)

    # Replay and analytics

    def replay_and_persist(self, account_id: str, as_of: Optional[date] = None,
                           user_id: Optional[str] = None) -> ReplaySummary:
        return self.replay_service.replay_and_persist(account_id, as_of, user_id)

    def get_monthly_balances(self, account_id: str) -> List[MonthlyBalance]:
        self.ledger.require_account(account_id)
        return self.replay_service.get_monthly_balances(account_id)

    def get_analytics(self, account_id: str, period: Any = None, owner_id: Optional[str] = None,
                      as_of: Optional[date] = None) -> AnalyticsView:
        return self.analytics_service.get_analytics(account_id, period, owner_id, as_of)

    # Yield deposits

    def create_deposit(self, user_id: str, principal_amount: Any, start_date: date,
                       annual_yield_rate: Optional[Any] = None, notes: Optional[str] = None,
                       created_by: Optional[str] = None) -> YieldDeposit:
        return self.deposit_manager.create_deposit(
            user_id, principal_amount, start_date, annual_yield_rate, notes, created_by
        )

    def update_deposit(self, deposit_id: str, principal_amount: Optional[Any] = None,
                       annual_yield_rate: Optional[Any] = None, status: Optional[Any] = None,
                       notes: Optional[str] = None, updated_by: Optional[str] = None) -> YieldDeposit:
        return self.deposit_manager.update_deposit(
            deposit_id, principal_amount, annual_yield_rate, status, notes, updated_by
        )

    def delete_deposit(self, deposit_id: str, deleted_by: Optional[str] = None) -> YieldDeposit:
        return self.deposit_manager.delete_deposit(deposit_id, deleted_by)

    def get_deposit(self, deposit_id: str) -> YieldDeposit:
        return self.deposit_manager.require_deposit(deposit_id)

    def list_deposits(self, status: Optional[Any] = None, user_id: Optional[str] = None,
                      start_date: Optional[date] = None,
                      end_date: Optional[date] = None) -> List[YieldDeposit]:
        return self.deposit_manager.list_deposits(status, user_id, start_date, end_date)

    # Withdrawals

    def allocate_withdrawal(self, user_id: str, amount: Any, require_full: bool = False) -> AllocationResult:
        return self.allocator.allocate_withdrawal(user_id, amount, require_full=require_full)

    def complete_withdrawal(self, account_id: str, amount: Any, description: Optional[str] = None,
                            transaction_date: Optional[date] = None,
                            completed_by: Optional[str] = None) -> WithdrawalResult:
        return self.allocator.complete_withdrawal(
            account_id, amount, description, transaction_date, completed_by
        )

    # Payouts

    def run_daily_batch(self, as_of: date, processed_by: Optional[str] = None,
                        dry_run: bool = False) -> DailyBatchResult:
        return self.payout_batch.run_daily_batch(as_of, processed_by, dry_run)

    def run_annual_payouts(self, as_of: date, processed_by: Optional[str] = None,
                           dry_run: bool = False) -> DailyBatchResult:
        return self.payout_batch.run_annual_payouts(as_of, processed_by, dry_run)

    def get_batch_status(self, as_of: date, kind: Any = PayoutKind.DAILY) -> BatchStatus:
        return self.payout_batch.get_batch_status(as_of, kind)

    def apply_payout(self, deposit_id: str, payout_date: date, kind: Any = PayoutKind.DAILY,
                     processed_by: Optional[str] = None) -> YieldPayout:
        return self.payout_batch.apply_payout(deposit_id, payout_date, kind, processed_by)

    def list_payouts(self, deposit_id: str) -> List[YieldPayout]:
        self.deposit_manager.require_deposit(deposit_id)
        return self.payout_batch.list_payouts(deposit_id=deposit_id)

    def verify_audit_integrity(self):
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()
