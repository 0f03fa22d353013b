"""
Administrative endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_caller
from ..rbac import ADMIN_ONLY, Caller, authorize


router = APIRouter()


@router.get("/reconciliation")
async def run_reconciliation(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Run the ledger consistency checks (staff only)"""
    return system.reconciliation.run_for(caller)


@router.post("/reconciliation/repair-loan-statuses")
async def repair_loan_statuses(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Rewrite cached loan statuses from the payment ledger (admin only)"""
    authorize(caller, required_roles=ADMIN_ONLY)
    repairs = system.reconciliation.repair_loan_statuses()
    return {"repaired": len(repairs), "repairs": repairs}
