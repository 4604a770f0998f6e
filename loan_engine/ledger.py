"""
Transaction Ledger Module

Append-only store of dated monetary events per loan account. The ledger is
the source of truth for balance replay; every change to an account's
running balance is written together with the Transaction row that causes it.
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
from .exceptions import InvalidTransaction, NotFound, InsufficientFunds
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of ledger events"""
    LOAN = "loan"                        # Opening principal or principal top-up
    DEPOSIT = "deposit"                  # Funds added (yield deposit principal, etc.)
    WITHDRAWAL = "withdrawal"            # Funds paid out to the user
    BONUS = "bonus"                      # Bonus credit
    MONTHLY_PAYMENT = "monthly_payment"  # Interest credited for a month
    ADJUSTMENT = "adjustment"            # Signed manual correction
    YIELD_PAYMENT = "yield_payment"      # Yield deposit payout credit


CREDIT_TYPES = {
    TransactionType.LOAN,
    TransactionType.DEPOSIT,
    TransactionType.BONUS,
    TransactionType.MONTHLY_PAYMENT,
    TransactionType.YIELD_PAYMENT,
}


def opening_reference(account_id: str) -> str:
    """reference_id of the transaction recording an account's opening principal"""
    return f"opening:{account_id}"


@dataclass
class LoanAccount(StorageRecord):
    """Loan account with engine-maintained running aggregates"""
    user_id: str
    principal_amount: Decimal       # Opening principal, immutable
    current_balance: Decimal
    monthly_rate: Decimal           # e.g. 0.01 for 1% per month
    origin_date: date               # First day of balance replay
    total_bonuses: Decimal = ZERO
    total_withdrawals: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanAccount':
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            user_id=data['user_id'],
            principal_amount=Decimal(data['principal_amount']),
            current_balance=Decimal(data['current_balance']),
            monthly_rate=Decimal(data['monthly_rate']),
            origin_date=date.fromisoformat(data['origin_date']),
            total_bonuses=Decimal(data.get('total_bonuses', '0')),
            total_withdrawals=Decimal(data.get('total_withdrawals', '0'))
        )


@dataclass
class Transaction(StorageRecord):
    """A dated monetary event on a loan account"""
    loan_account_id: str
    transaction_type: TransactionType
    amount: Decimal
    transaction_date: date          # Event date; created_at is the record time
    description: str = ""
    bonus_percentage: Optional[Decimal] = None
    reference_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this transaction on the account balance"""
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return -abs(self.amount)
        if self.transaction_type == TransactionType.ADJUSTMENT:
            return self.amount
        return abs(self.amount)

    @property
    def replay_key(self):
        """Stable replay order: event date, then record time, then id"""
        return (self.transaction_date, self.created_at, self.id)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        bonus_percentage = data.get('bonus_percentage')
        return cls(
            id=data['id'],
            **cls.parse_timestamps(data),
            loan_account_id=data['loan_account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            description=data.get('description', ''),
            bonus_percentage=Decimal(bonus_percentage) if bonus_percentage is not None else None,
            reference_id=data.get('reference_id')
        )


def normalize_amount(transaction_type: TransactionType, amount: Any) -> Decimal:
    """
    Validate an amount for a transaction type and return it in stored form

    Withdrawals may be given negative (as exported by some bank files) and are
    stored as their absolute value. Adjustments are signed. Every other type
    must be positive.

    Raises:
        InvalidTransaction: If the amount is zero, not a number, or has the wrong sign
    """
    try:
        value = to_decimal(amount)
    except ValueError:
        raise InvalidTransaction(f"Invalid amount: {amount!r}")

    if value == ZERO:
        raise InvalidTransaction("Transaction amount must be non-zero")

    if transaction_type == TransactionType.WITHDRAWAL:
        return abs(value)
    if transaction_type == TransactionType.ADJUSTMENT:
        return value
    if value < ZERO:
        raise InvalidTransaction(f"{transaction_type.value} amount must be positive")
    return value


def parse_transaction_type(value: Any) -> TransactionType:
    """Coerce a string or enum into a TransactionType"""
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidTransaction(f"Unknown transaction type: {value!r}")


class LoanLedger:
    """
    Owns LoanAccount aggregates and their Transaction history
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.currency = currency
        self.accounts_table = "loan_accounts"
        self.transactions_table = "loan_transactions"
        self.logger = get_logger("loan_engine.ledger")

    def open_account(
        self,
        user_id: str,
        principal_amount: Any,
        monthly_rate: Any,
        origin_date: Optional[date] = None
    ) -> LoanAccount:
        """
        Open a loan account and record its opening principal

        Args:
            user_id: Owning user
            principal_amount: Opening principal (> 0)
            monthly_rate: Monthly rate as a fraction, 0 <= rate <= 1
            origin_date: Date the account's balance history starts (defaults to today)

        Returns:
            Created LoanAccount
        """
        principal = normalize_amount(TransactionType.LOAN, principal_amount)
        try:
            rate = to_decimal(monthly_rate)
        except ValueError:
            raise InvalidTransaction(f"Invalid monthly rate: {monthly_rate!r}")
        if rate < ZERO or rate > Decimal('1'):
            raise InvalidTransaction("Monthly rate must be between 0 and 1")

        now = datetime.now(timezone.utc)
        account = LoanAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            principal_amount=round_money(principal, self.currency),
            current_balance=round_money(principal, self.currency),
            monthly_rate=rate,
            origin_date=origin_date or now.date()
        )

        with self.storage.atomic():
            self._save_account(account)
            opening = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_account_id=account.id,
                transaction_type=TransactionType.LOAN,
                amount=account.principal_amount,
                transaction_date=account.origin_date,
                description="Opening principal",
                reference_id=opening_reference(account.id)
            )
            self.storage.save(self.transactions_table, opening.id, opening.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ACCOUNT_OPENED,
                entity_type="loan_account",
                entity_id=account.id,
                user_id=user_id,
                metadata={
                    "principal_amount": account.principal_amount,
                    "monthly_rate": account.monthly_rate,
                    "origin_date": account.origin_date
                }
            )

        log_action(self.logger, "info", "Loan account opened",
                   user_id=user_id, action="open_account", resource=account.id)
        return account

    def record_transaction(
        self,
        account_id: str,
        transaction_type: Any,
        amount: Any,
        transaction_date: date,
        description: Optional[str] = None,
        bonus_percentage: Optional[Any] = None,
        reference_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Transaction:
        """
        Append a transaction and apply it to the account's running aggregates

        Both writes happen in one atomic unit, so the balance never moves
        without its ledger row.

        Raises:
            NotFound: Unknown account
            InvalidTransaction: Bad amount, type, bonus percentage, or a date before the origin
            InsufficientFunds: A debit larger than the current balance
        """
        txn_type = parse_transaction_type(transaction_type)
        value = round_money(normalize_amount(txn_type, amount), self.currency)
        if value == ZERO:
            raise InvalidTransaction("Transaction amount rounds to zero")

        percentage = None
        if bonus_percentage is not None:
            if txn_type != TransactionType.BONUS:
                raise InvalidTransaction("bonus_percentage is only valid for bonus transactions")
            try:
                percentage = to_decimal(bonus_percentage)
            except ValueError:
                raise InvalidTransaction(f"Invalid bonus percentage: {bonus_percentage!r}")
            if percentage < ZERO or percentage > Decimal('1'):
                raise InvalidTransaction("Bonus percentage must be between 0 and 1")

        with self.storage.atomic():
            account = self.require_account(account_id)
            if transaction_date < account.origin_date:
                raise InvalidTransaction(
                    f"Transaction date {transaction_date.isoformat()} precedes account origin "
                    f"{account.origin_date.isoformat()}"
                )

            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_account_id=account.id,
                transaction_type=txn_type,
                amount=value,
                transaction_date=transaction_date,
                description=description or f"{txn_type.value} transaction",
                bonus_percentage=percentage,
                reference_id=reference_id
            )

            new_balance = account.current_balance + transaction.signed_amount
            if transaction.signed_amount < ZERO and new_balance < ZERO:
                raise InsufficientFunds(abs(transaction.signed_amount), account.current_balance)

            account.current_balance = new_balance
            if txn_type == TransactionType.BONUS:
                account.total_bonuses += value
            elif txn_type == TransactionType.WITHDRAWAL:
                account.total_withdrawals += value
            account.updated_at = now

            self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_RECORDED,
                entity_type="loan_account",
                entity_id=account.id,
                user_id=user_id,
                metadata={
                    "transaction_id": transaction.id,
                    "transaction_type": txn_type,
                    "amount": value,
                    "transaction_date": transaction_date,
                    "new_balance": account.current_balance
                }
            )

        self.logger.debug(
            "Recorded %s of %s on account %s", txn_type.value, value, account.id
        )
        return transaction

    def reconcile_account(
        self,
        account: LoanAccount,
        current_balance: Decimal,
        total_bonuses: Decimal,
        total_withdrawals: Decimal
    ) -> LoanAccount:
        """
        Overwrite the running aggregates with replayed values

        Must be called inside the atomic block that also writes the replayed
        MonthlyBalance rows.
        """
        account.current_balance = current_balance
        account.total_bonuses = total_bonuses
        account.total_withdrawals = total_withdrawals
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def get_account(self, account_id: str) -> Optional[LoanAccount]:
        """Get loan account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return LoanAccount.from_dict(data)
        return None

    def require_account(self, account_id: str) -> LoanAccount:
        """Get loan account by ID or raise NotFound"""
        account = self.get_account(account_id)
        if not account:
            raise NotFound("loan_account", account_id)
        return account

    def list_accounts(self, user_id: Optional[str] = None) -> List[LoanAccount]:
        """List accounts, oldest first"""
        filters = {"user_id": user_id} if user_id is not None else {}
        accounts = [LoanAccount.from_dict(d) for d in self.storage.find(self.accounts_table, filters)]
        accounts.sort(key=lambda a: (a.created_at, a.id))
        return accounts

    def get_account_for_user(self, user_id: str) -> LoanAccount:
        """
        The loan account that receives a user's deposits and payouts
        (the oldest one when a user has several)

        Raises:
            NotFound: The user has no loan account
        """
        accounts = self.list_accounts(user_id)
        if not accounts:
            raise NotFound("loan_account_for_user", user_id)
        return accounts[0]

    def list_transactions(
        self,
        account_id: str,
        transaction_types: Optional[List[TransactionType]] = None
    ) -> List[Transaction]:
        """Transactions of an account in replay order"""
        transactions = [
            Transaction.from_dict(d)
            for d in self.storage.find(self.transactions_table, {"loan_account_id": account_id})
        ]
        if transaction_types:
            transactions = [t for t in transactions if t.transaction_type in transaction_types]
        transactions.sort(key=lambda t: t.replay_key)
        return transactions

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def _save_account(self, account: LoanAccount) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())
