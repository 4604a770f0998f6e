"""
Engine dependency and error mapping for the HTTP adapter
"""

from typing import Optional

from fastapi import HTTPException

from ..engine import LoanEngine
from ..exceptions import LoanEngineError


STATUS_BY_CODE = {
    "INVALID_TRANSACTION": 400,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INSUFFICIENT_FUNDS": 400,
    "ALREADY_PROCESSED": 409,
}


_engine: Optional[LoanEngine] = None


def get_engine() -> LoanEngine:
    """Dependency returning the process-wide engine, created on first use"""
    global _engine
    if _engine is None:
        _engine = LoanEngine()
    return _engine


def set_engine(engine: Optional[LoanEngine]) -> None:
    """Replace the process-wide engine (None resets it)"""
    global _engine
    _engine = engine


def http_error(error: LoanEngineError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(error.code, 400),
        detail={"code": error.code, "message": str(error)}
    )
