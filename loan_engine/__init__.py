"""
Loan Engine

Ledger and yield-accrual engine for loan servicing: deterministic balance
replay, analytics projection, and yield deposits with LIFO withdrawal
allocation and idempotent payout batches. All money uses Decimal.
"""

__version__ = "1.0.0"
