"""
Loan management endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .auth import BankingSystem, get_banking_system, get_current_caller
from .schemas import (
    CreateLoanRequest, LoanPaymentRequest, StatusChangeRequest,
    loan_response, payment_response, schedule_response, to_json
)
from ..loans import calculate_monthly_payment
from ..rbac import Caller


router = APIRouter()


@router.get("/calculator")
async def loan_calculator(amount: str, interest_rate: str, term_months: int):
    """Quote the monthly installment for a prospective loan"""
    return schedule_response(calculate_monthly_payment(amount, interest_rate, term_months))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Apply for a loan, or originate one as staff"""
    loan = system.loan_manager.create_loan(
        caller,
        customer_id=request.customer_id,
        amount=request.amount,
        interest_rate=request.interest_rate,
        term_months=request.term_months
    )
    return loan_response(loan)


@router.get("")
async def list_loans(
    customer_id: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's loans, or all loans for staff"""
    loans = system.loan_manager.list_loans(caller, customer_id=customer_id)
    return {"loans": [loan_response(l) for l in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get loan details with its repayment position"""
    loan = system.loan_manager.get_loan(caller, loan_id)
    result = loan_response(loan)
    result["summary"] = to_json(system.loan_manager.get_loan_summary(caller, loan_id))
    return result


@router.patch("/{loan_id}")
async def set_loan_status(
    loan_id: str,
    request: StatusChangeRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Approve, reject or otherwise move a loan through its lifecycle (staff only)"""
    loan = system.loan_manager.set_loan_status(caller, loan_id, request.status, reason=request.reason)
    return loan_response(loan)


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def apply_loan_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Record a loan repayment"""
    payment = system.loan_manager.apply_loan_payment(caller, loan_id, request.amount)
    loan = system.loan_manager.load_loan(loan_id)
    result = payment_response(payment)
    result["loan_status"] = loan.status.value
    return result


@router.get("/{loan_id}/payments")
async def list_loan_payments(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Payment history of a loan, newest first"""
    payments = system.loan_manager.list_payments(caller, loan_id)
    return {"payments": [payment_response(p) for p in payments]}
