"""
Loan account endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_engine, http_error
from .schemas import OpenAccountRequest, RecordTransactionRequest, ReplayRequest, serialize
from ..engine import LoanEngine
from ..exceptions import LoanEngineError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Open a loan account with its opening principal"""
    try:
        account = engine.open_account(
            user_id=request.user_id,
            principal_amount=request.principal_amount,
            monthly_rate=request.monthly_rate,
            origin_date=request.origin_date
        )
    except LoanEngineError as e:
        raise http_error(e)

    return serialize(account)


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    """Get loan account details"""
    try:
        return serialize(engine.get_account(account_id))
    except LoanEngineError as e:
        raise http_error(e)


@router.post("/{account_id}/transactions", status_code=status.HTTP_201_CREATED)
async def record_transaction(
    account_id: str,
    request: RecordTransactionRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Append a transaction to the account's ledger"""
    try:
        transaction = engine.record_transaction(
            account_id=account_id,
            transaction_type=request.transaction_type,
            amount=request.amount,
            transaction_date=request.transaction_date,
            description=request.description,
            bonus_percentage=request.bonus_percentage,
            reference_id=request.reference_id
        )
    except LoanEngineError as e:
        raise http_error(e)

    return serialize(transaction)


@router.get("/{account_id}/transactions")
async def list_transactions(
    account_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    """Transactions in replay order"""
    try:
        transactions = engine.list_transactions(account_id)
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "account_id": account_id,
        "transactions": [serialize(t) for t in transactions]
    }


@router.post("/{account_id}/replay")
async def replay_account(
    account_id: str,
    request: Optional[ReplayRequest] = None,
    engine: LoanEngine = Depends(get_engine)
):
    """Recompute the account's monthly balances and aggregates"""
    try:
        summary = engine.replay_and_persist(account_id, request.as_of if request else None)
    except LoanEngineError as e:
        raise http_error(e)

    return serialize(summary)


@router.get("/{account_id}/monthly-balances")
async def get_monthly_balances(
    account_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    try:
        rows = engine.get_monthly_balances(account_id)
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "account_id": account_id,
        "monthly_balances": [serialize(r) for r in rows]
    }


@router.get("/{account_id}/analytics")
async def get_analytics(
    account_id: str,
    period: Optional[str] = None,
    owner_id: Optional[str] = None,
    as_of: Optional[date] = None,
    engine: LoanEngine = Depends(get_engine)
):
    """Fixed-length monthly series; unsupported periods fall back to 24 months"""
    try:
        view = engine.get_analytics(account_id, period, owner_id=owner_id, as_of=as_of)
    except LoanEngineError as e:
        raise http_error(e)

    return serialize(view)
