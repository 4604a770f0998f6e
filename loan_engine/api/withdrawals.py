"""
Withdrawal endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_engine, http_error
from .schemas import AllocateWithdrawalRequest, CompleteWithdrawalRequest, serialize
from ..allocation import AllocationResult
from ..engine import LoanEngine
from ..exceptions import LoanEngineError


router = APIRouter()


def _allocation_view(allocation: AllocationResult) -> dict:
    return {
        "reductions": [
            dict(serialize(r), completed=r.completed) for r in allocation.reductions
        ],
        "allocated_total": str(allocation.allocated_total),
        "remainder_unallocated": str(allocation.remainder_unallocated)
    }


@router.post("/allocate")
async def allocate_withdrawal(
    request: AllocateWithdrawalRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Reduce a user's yield deposits, newest first"""
    try:
        allocation = engine.allocate_withdrawal(
            request.user_id, request.amount, require_full=request.require_full
        )
    except LoanEngineError as e:
        raise http_error(e)

    return _allocation_view(allocation)


@router.post("/complete")
async def complete_withdrawal(
    request: CompleteWithdrawalRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Record a withdrawal on the loan account and allocate it across deposits"""
    try:
        result = engine.complete_withdrawal(
            request.account_id,
            request.amount,
            description=request.description,
            transaction_date=request.transaction_date,
            completed_by=request.completed_by
        )
    except LoanEngineError as e:
        raise http_error(e)

    return {
        "transaction": serialize(result.transaction),
        "allocation": _allocation_view(result.allocation),
        "message": "Withdrawal completed successfully"
    }
