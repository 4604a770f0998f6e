"""
Payout batch endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_engine, http_error
from .schemas import ApplyPayoutRequest, RunPayoutsRequest, serialize
from ..engine import LoanEngine
from ..exceptions import LoanEngineError


router = APIRouter()


@router.post("/run")
async def run_payouts(
    request: RunPayoutsRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Run the daily batch (or the annual payouts) for a date"""
    as_of = request.as_of or date.today()
    if request.annual:
        result = engine.run_annual_payouts(as_of, request.processed_by, dry_run=request.dry_run)
    else:
        result = engine.run_daily_batch(as_of, request.processed_by, dry_run=request.dry_run)
    return serialize(result)


@router.get("/status")
async def get_batch_status(
    as_of: Optional[date] = None,
    kind: str = "daily",
    engine: LoanEngine = Depends(get_engine)
):
    try:
        batch_status = engine.get_batch_status(as_of or date.today(), kind)
    except LoanEngineError as e:
        raise http_error(e)

    data = serialize(batch_status)
    data["is_complete"] = batch_status.is_complete
    return data


@router.post("/apply")
async def apply_payout(
    request: ApplyPayoutRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Pay a single deposit for one date"""
    try:
        payout = engine.apply_payout(
            request.deposit_id, request.payout_date, request.kind, request.processed_by
        )
    except LoanEngineError as e:
        raise http_error(e)

    return serialize(payout)
