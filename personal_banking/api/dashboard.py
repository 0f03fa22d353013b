"""
Dashboard endpoint
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_caller
from .schemas import to_json, transaction_response
from ..rbac import Caller


router = APIRouter()


@router.get("")
async def dashboard_summary(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Balance, account and loan totals for the caller"""
    summary = system.reporting.dashboard_summary(caller)
    summary["recent_transactions"] = [
        transaction_response(t) for t in summary["recent_transactions"]
    ]
    return to_json(summary)
