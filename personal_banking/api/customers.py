"""
Customer profile endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import BankingSystem, get_banking_system, get_current_caller
from .schemas import CustomerProfileRequest, customer_response
from ..rbac import Caller


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CustomerProfileRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Create the caller's customer profile"""
    profile = {k: v for k, v in request.model_dump().items() if v is not None}
    customer = system.customer_manager.create_customer(caller, **profile)
    return customer_response(customer)


@router.get("")
async def list_customers(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """List customers (staff only)"""
    customers = system.customer_manager.list_customers(caller)
    return {"customers": [customer_response(c) for c in customers]}


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get a customer profile"""
    return customer_response(system.customer_manager.get_customer(caller, customer_id))


@router.patch("/{customer_id}")
async def update_customer(
    customer_id: str,
    request: CustomerProfileRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Update profile fields; omitted fields are left unchanged"""
    customer = system.customer_manager.update_customer(
        caller, customer_id, **request.model_dump(exclude_unset=True)
    )
    return customer_response(customer)
