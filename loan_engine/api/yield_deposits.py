"""
Yield deposit endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_engine, http_error
from .schemas import CreateDepositRequest, UpdateDepositRequest, serialize
from ..engine import LoanEngine
from ..exceptions import LoanEngineError
from ..yield_deposits import YieldDeposit, annual_payout, next_payout_date


router = APIRouter()


def _deposit_view(deposit: YieldDeposit, engine: LoanEngine) -> dict:
    data = serialize(deposit)
    data["annual_payout"] = str(annual_payout(deposit, engine.currency))
    data["next_payout_date"] = next_payout_date(deposit).isoformat()
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deposit(
    request: CreateDepositRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Create a deposit and credit it to the user's loan account"""
    try:
        deposit = engine.create_deposit(
            user_id=request.user_id,
            principal_amount=request.principal_amount,
            start_date=request.start_date,
            annual_yield_rate=request.annual_yield_rate,
            notes=request.notes,
            created_by=request.created_by
        )
    except LoanEngineError as e:
        raise http_error(e)

    return _deposit_view(deposit, engine)


@router.get("")
async def list_deposits(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    engine: LoanEngine = Depends(get_engine)
):
    """List deposits, newest first"""
    try:
        deposits = engine.list_deposits(status, user_id, start_date, end_date)
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "deposits": [_deposit_view(d, engine) for d in deposits],
        "count": len(deposits)
    }


@router.get("/{deposit_id}")
async def get_deposit(
    deposit_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    try:
        return _deposit_view(engine.get_deposit(deposit_id), engine)
    except LoanEngineError as e:
        raise http_error(e)


@router.patch("/{deposit_id}")
async def update_deposit(
    deposit_id: str,
    request: UpdateDepositRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Administrative override of principal, rate, status or notes"""
    try:
        deposit = engine.update_deposit(
            deposit_id,
            principal_amount=request.principal_amount,
            annual_yield_rate=request.annual_yield_rate,
            status=request.status,
            notes=request.notes,
            updated_by=request.updated_by
        )
    except LoanEngineError as e:
        raise http_error(e)

    return _deposit_view(deposit, engine)


@router.delete("/{deposit_id}")
async def delete_deposit(
    deposit_id: str,
    deleted_by: Optional[str] = None,
    engine: LoanEngine = Depends(get_engine)
):
    """Soft-delete a deposit and debit its remaining principal"""
    try:
        deposit = engine.delete_deposit(deposit_id, deleted_by)
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "deposit_id": deposit.id,
        "deleted": deposit.deleted,
        "message": "Yield deposit deleted successfully"
    }


@router.get("/{deposit_id}/payouts")
async def list_payouts(
    deposit_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    try:
        payouts = engine.list_payouts(deposit_id)
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "deposit_id": deposit_id,
        "payouts": [serialize(p) for p in payouts]
    }
