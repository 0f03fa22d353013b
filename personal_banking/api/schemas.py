"""
Pydantic schemas for API requests and response serializers
"""

from decimal import Decimal
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..accounts import Account
from ..customers import Customer
from ..ledger import Transaction
from ..loans import Loan, LoanPayment, PaymentSchedule
from ..rbac import User


# User schemas
class RegisterUserRequest(BaseModel):
    email: str
    first_name: str = ""
    last_name: str = ""


class SetRoleRequest(BaseModel):
    role: str = Field(..., description="CUSTOMER, EMPLOYEE or ADMIN")


# Customer schemas
class CustomerProfileRequest(BaseModel):
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    employment_status: Optional[str] = Field(
        None, description="EMPLOYED, SELF_EMPLOYED, UNEMPLOYED, STUDENT or RETIRED"
    )
    annual_income: Optional[str] = Field(None, description="Decimal amount as string")
    additional_info: Optional[str] = None


# Account schemas
class CreateAccountRequest(BaseModel):
    customer_id: str
    account_type: str = Field(..., description="SAVINGS, CURRENT or FIXED_DEPOSIT")
    initial_deposit: str = Field(..., description="Decimal amount as string")
    tenure_months: Optional[int] = Field(None, description="Required for fixed deposits")


class StatusChangeRequest(BaseModel):
    status: str
    reason: Optional[str] = None


# Transaction schemas
class TransactionRequest(BaseModel):
    account_id: str
    transaction_type: str = Field(..., description="DEPOSIT or WITHDRAWAL")
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    amount: str = Field(..., description="Principal as decimal string")
    interest_rate: str = Field(..., description="Annual rate in percent")
    term_months: int


class LoanPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")


def to_json(value: Any) -> Any:
    """Convert Decimals, dates and enums to their JSON wire form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json(v) for v in value]
    return value


def user_response(user: User) -> Dict[str, Any]:
    return to_json({
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role,
        "created_at": user.created_at,
    })


def customer_response(customer: Customer) -> Dict[str, Any]:
    result = to_json(customer.to_dict())
    result["is_complete"] = customer.is_complete
    return result


def account_response(account: Account) -> Dict[str, Any]:
    return to_json({
        "id": account.id,
        "customer_id": account.customer_id,
        # Full numbers never leave the service
        "account_number": account.masked_number,
        "account_type": account.account_type,
        "balance": account.balance,
        "status": account.status,
        "tenure_months": account.tenure_months,
        "interest_rate": account.interest_rate,
        "maturity_date": account.maturity_date,
        "maturity_value": account.maturity_value,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    })


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    return to_json({
        "id": transaction.id,
        "account_id": transaction.account_id,
        "transaction_type": transaction.transaction_type,
        "amount": transaction.amount,
        "signed_amount": transaction.signed_amount,
        "category": transaction.category,
        "reference": transaction.reference,
        "description": transaction.description,
        "balance_after": transaction.balance_after,
        "created_at": transaction.created_at,
    })


def loan_response(loan: Loan) -> Dict[str, Any]:
    return to_json({
        "id": loan.id,
        "customer_id": loan.customer_id,
        "loan_number": loan.loan_number,
        "amount": loan.amount,
        "interest_rate": loan.interest_rate,
        "term_months": loan.term_months,
        "status": loan.status,
        "created_at": loan.created_at,
        "updated_at": loan.updated_at,
    })


def payment_response(payment: LoanPayment) -> Dict[str, Any]:
    return to_json({
        "id": payment.id,
        "loan_id": payment.loan_id,
        "amount": payment.amount,
        "due_date": payment.due_date,
        "created_at": payment.created_at,
    })


def schedule_response(schedule: PaymentSchedule) -> Dict[str, Any]:
    return to_json({
        "monthly_payment": schedule.monthly_payment,
        "total_payment": schedule.total_payment,
        "total_interest": schedule.total_interest,
    })
