"""
Account management endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import BankingSystem, get_banking_system, get_current_caller
from .schemas import CreateAccountRequest, StatusChangeRequest, account_response, to_json
from ..rbac import Caller


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open an account with its initial deposit"""
    account = system.account_manager.create_account(
        caller,
        customer_id=request.customer_id,
        account_type=request.account_type,
        initial_deposit=request.initial_deposit,
        tenure_months=request.tenure_months
    )
    return account_response(account)


@router.get("")
async def list_accounts(
    customer_id: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's accounts, or all accounts for staff"""
    accounts = system.account_manager.list_accounts(caller, customer_id=customer_id)
    return {"accounts": [account_response(a) for a in accounts]}


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get account details"""
    return account_response(system.account_manager.get_account(caller, account_id))


@router.get("/{account_id}/summary")
async def get_account_summary(
    account_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Deposit and withdrawal totals for an account"""
    return to_json(system.transaction_processor.account_summary(caller, account_id))


@router.patch("/{account_id}")
async def set_account_status(
    account_id: str,
    request: StatusChangeRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Suspend, reactivate or close an account (staff only)"""
    account = system.account_manager.set_account_status(
        caller, account_id, request.status, reason=request.reason
    )
    return account_response(account)
