"""
Transaction endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import BankingSystem, get_banking_system, get_current_caller
from .schemas import TransactionRequest, transaction_response
from ..rbac import Caller


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def apply_transaction(
    request: TransactionRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Deposit to or withdraw from an account"""
    transaction = system.transaction_processor.apply_transaction(
        caller,
        account_id=request.account_id,
        transaction_type=request.transaction_type,
        amount=request.amount,
        description=request.description
    )
    return transaction_response(transaction)


@router.get("")
async def list_transactions(
    account_id: Optional[str] = None,
    limit: Optional[int] = None,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction history, newest first"""
    transactions = system.transaction_processor.list_transactions(
        caller, account_id=account_id, limit=limit
    )
    return {"transactions": [transaction_response(t) for t in transactions]}


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get a single transaction"""
    return transaction_response(system.transaction_processor.get_transaction(caller, transaction_id))
