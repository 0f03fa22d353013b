"""
User registration and role management endpoints
"""

from fastapi import APIRouter, Depends

from .auth import BankingSystem, get_banking_system, get_current_caller, get_identity_id
from .schemas import RegisterUserRequest, SetRoleRequest, customer_response, user_response
from ..errors import InvalidArgumentError
from ..rbac import Caller, Role


router = APIRouter()


@router.post("/me")
async def register_me(
    request: RegisterUserRequest,
    identity_id: str = Depends(get_identity_id),
    system: BankingSystem = Depends(get_banking_system)
):
    """Register the authenticated identity (idempotent)"""
    user = system.user_manager.register_user(
        identity_id=identity_id,
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name
    )
    return user_response(user)


@router.get("/me")
async def get_me(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get the caller's user record and customer profile, if any"""
    user = system.user_manager.get_user(caller.caller_id)
    customer = system.customer_manager.get_customer_for_user(caller.caller_id)
    result = user_response(user)
    result["customer"] = customer_response(customer) if customer else None
    return result


@router.get("")
async def list_users(
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """List users (staff only)"""
    users = system.user_manager.list_users(caller)
    return {"users": [user_response(u) for u in users]}


@router.patch("/{user_id}/role")
async def set_role(
    user_id: str,
    request: SetRoleRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Change a user's role (admin only)"""
    try:
        role = Role(request.role)
    except ValueError:
        raise InvalidArgumentError(f"Invalid role: {request.role}")
    user = system.user_manager.set_role(caller, user_id, role)
    return user_response(user)
