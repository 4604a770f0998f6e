"""
Pydantic schemas for API requests, plus response serialization
"""

from dataclasses import asdict, is_dataclass
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..storage import _to_storable


def serialize(record: Any) -> Dict[str, Any]:
    """Dataclass to a JSON-ready dict; Decimals become strings"""
    if is_dataclass(record):
        record = asdict(record)
    return _to_storable(record)


# Loan account schemas
class OpenAccountRequest(BaseModel):
    user_id: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    monthly_rate: str = Field(..., description="Monthly rate as a fraction, e.g. 0.01")
    origin_date: Optional[date] = None


class RecordTransactionRequest(BaseModel):
    transaction_type: str = Field(
        ..., description="loan, deposit, withdrawal, bonus, monthly_payment, adjustment, yield_payment"
    )
    amount: str = Field(..., description="Decimal amount as string; adjustments are signed")
    transaction_date: date
    description: Optional[str] = None
    bonus_percentage: Optional[str] = None
    reference_id: Optional[str] = None


class ReplayRequest(BaseModel):
    as_of: Optional[date] = None


# Yield deposit schemas
class CreateDepositRequest(BaseModel):
    user_id: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    start_date: date
    annual_yield_rate: Optional[str] = Field(None, description="Defaults to the configured rate")
    notes: Optional[str] = None
    created_by: Optional[str] = None


class UpdateDepositRequest(BaseModel):
    principal_amount: Optional[str] = None
    annual_yield_rate: Optional[str] = None
    status: Optional[str] = Field(None, description="active, inactive or completed")
    notes: Optional[str] = None
    updated_by: Optional[str] = None


# Withdrawal schemas
class AllocateWithdrawalRequest(BaseModel):
    user_id: str
    amount: str
    require_full: bool = False


class CompleteWithdrawalRequest(BaseModel):
    account_id: str
    amount: str
    description: Optional[str] = None
    transaction_date: Optional[date] = None
    completed_by: Optional[str] = None


# Payout schemas
class RunPayoutsRequest(BaseModel):
    as_of: Optional[date] = None
    dry_run: bool = False
    annual: bool = False
    processed_by: Optional[str] = None


class ApplyPayoutRequest(BaseModel):
    deposit_id: str
    payout_date: date
    kind: str = Field("daily", description="daily or annual")
    processed_by: Optional[str] = None
