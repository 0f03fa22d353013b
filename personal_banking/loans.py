"""
Loan Management Module

Loan origination, amortization math, repayment and the loan status state
machine. Loan status is stored on the loan and flipped to PAID in the same
atomic unit as the payment that settles it; ``derive_status`` recomputes it
from the payment ledger for consistency checks.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import random
import time
import uuid

from .amounts import ZERO, quantize, to_interest_rate, to_months, to_positive_amount
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .customers import CustomerManager
from .errors import (
    BankingError, ConflictError, ExceedsBalanceError, InvalidArgumentError,
    InvalidStateError, NotFoundError
)
from .logging_config import get_logger, log_action
from .rbac import Caller, authorize
from .storage import DuplicateRecordError, StorageInterface, StorageRecord, insert_with_retry


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"      # Applied for, awaiting staff review
    ACTIVE = "ACTIVE"        # Disbursed and being repaid
    PAID = "PAID"            # Fully repaid
    OVERDUE = "OVERDUE"      # Repayment behind schedule
    REJECTED = "REJECTED"    # Declined by staff


LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.ACTIVE, LoanStatus.REJECTED},
    LoanStatus.ACTIVE: {LoanStatus.OVERDUE, LoanStatus.PAID},
    LoanStatus.OVERDUE: {LoanStatus.ACTIVE, LoanStatus.PAID},
    LoanStatus.PAID: set(),
    LoanStatus.REJECTED: set(),
}

PAYABLE_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE})


@dataclass
class PaymentSchedule:
    """Fixed-installment repayment quote"""
    monthly_payment: Decimal
    total_payment: Decimal
    total_interest: Decimal


def calculate_monthly_payment(principal: Any, annual_rate: Any, term_months: Any) -> PaymentSchedule:
    """
    Standard amortization: M = i*P / (1 - (1+i)^-n) with i = r/12/100.

    A zero rate is interest free and repays P/n per month. All amounts are
    rounded to two places; total_payment uses the unrounded installment.
    """
    principal = to_positive_amount(principal, "principal")
    annual_rate = to_interest_rate(annual_rate)
    term_months = to_months(term_months, "term_months")

    if annual_rate == 0:
        monthly = principal / term_months
    else:
        i = annual_rate / 12 / 100
        monthly = i * principal / (1 - (1 + i) ** -term_months)

    total_payment = quantize(monthly * term_months, "total_payment")
    return PaymentSchedule(
        monthly_payment=quantize(monthly, "monthly_payment"),
        total_payment=total_payment,
        total_interest=total_payment - principal
    )


def generate_loan_number() -> str:
    """Loan number: LOAN-<epoch ms>-<random>"""
    return f"LOAN-{int(time.time() * 1000)}-{random.randint(0, 999)}"


@dataclass
class Loan(StorageRecord):
    """Loan owned by a customer. ``amount`` is the principal."""
    customer_id: str
    loan_number: str
    amount: Decimal
    interest_rate: Decimal
    term_months: int
    status: LoanStatus = LoanStatus.PENDING

    @property
    def schedule(self) -> PaymentSchedule:
        return calculate_monthly_payment(self.amount, self.interest_rate, self.term_months)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        data['amount'] = Decimal(data['amount'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        return super().from_dict(data)


@dataclass
class LoanPayment(StorageRecord):
    """Immutable repayment record"""
    loan_id: str
    amount: Decimal
    due_date: date

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        if isinstance(data.get('due_date'), str):
            data['due_date'] = date.fromisoformat(data['due_date'])
        return super().from_dict(data)


class LoanManager:
    """
    Originates loans, applies repayments and enforces the loan lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        customer_manager: CustomerManager
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.customer_manager = customer_manager
        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.storage.declare_unique(self.loans_table, "loan_number")
        self.logger = get_logger("banking.loans")

    def create_loan(
        self,
        caller: Caller,
        customer_id: str,
        amount: Any,
        interest_rate: Any,
        term_months: Any
    ) -> Loan:
        """
        Originate a loan

        Customers applying for themselves get a PENDING loan awaiting review;
        loans originated by staff start ACTIVE.

        Raises:
            NotFoundError: unknown customer
            ForbiddenError: caller neither owns the customer nor is staff
            InvalidArgumentError: non-positive amount, rate or term
            ConflictError: no unique loan number could be allocated
        """
        customer = self.customer_manager.load_customer(customer_id)
        authorize(caller, owner_id=customer.user_id)

        amount = to_positive_amount(amount)
        interest_rate = to_interest_rate(interest_rate)
        if interest_rate == 0:
            raise InvalidArgumentError("interest_rate must be positive")
        term_months = to_months(term_months, "term_months")
        status = LoanStatus.ACTIVE if caller.is_staff else LoanStatus.PENDING

        def build() -> Loan:
            now = datetime.now(timezone.utc)
            return Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer.id,
                loan_number=generate_loan_number(),
                amount=amount,
                interest_rate=interest_rate,
                term_months=term_months,
                status=status
            )

        with self.storage.atomic():
            try:
                loan = insert_with_retry(
                    self.storage, self.loans_table, build, get_config().identifier_retry_attempts
                )
            except DuplicateRecordError:
                raise ConflictError("Could not allocate a unique loan number")

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ORIGINATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "customer_id": customer.id,
                    "amount": amount,
                    "interest_rate": interest_rate,
                    "term_months": term_months,
                    "status": status.value
                },
                user_id=caller.caller_id
            )

        log_action(
            self.logger, "info", f"Loan originated: {loan.loan_number}",
            user_id=caller.caller_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"amount": str(amount), "status": status.value}
        )
        return loan

    def load_loan(self, loan_id: str) -> Loan:
        """Load a loan without authorization (internal use)"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("Loan not found", loan_id=loan_id)
        return Loan.from_dict(data)

    def _owner_of(self, loan: Loan) -> str:
        return self.customer_manager.load_customer(loan.customer_id).user_id

    def get_loan(self, caller: Caller, loan_id: str) -> Loan:
        """Get a loan (owner or staff)"""
        loan = self.load_loan(loan_id)
        authorize(caller, owner_id=self._owner_of(loan))
        return loan

    def list_loans(self, caller: Caller, customer_id: Optional[str] = None) -> List[Loan]:
        """List loans, newest first. Customers see only their own."""
        if customer_id is not None:
            customer = self.customer_manager.load_customer(customer_id)
            authorize(caller, owner_id=customer.user_id)
            found = self.storage.find(self.loans_table, {"customer_id": customer.id})
        elif caller.is_staff:
            found = self.storage.load_all(self.loans_table)
        else:
            customer = self.customer_manager.get_customer_for_user(caller.caller_id)
            found = self.storage.find(self.loans_table, {"customer_id": customer.id}) if customer else []

        loans = [Loan.from_dict(d) for d in found]
        return sorted(loans, key=lambda l: l.created_at, reverse=True)

    def _payments_for(self, loan_id: str) -> List[LoanPayment]:
        found = self.storage.find(self.payments_table, {"loan_id": loan_id})
        return sorted((LoanPayment.from_dict(d) for d in found), key=lambda p: p.created_at)

    def total_paid(self, loan_id: str) -> Decimal:
        """Sum of the payment ledger for a loan"""
        return sum((p.amount for p in self._payments_for(loan_id)), ZERO)

    def list_payments(self, caller: Caller, loan_id: str) -> List[LoanPayment]:
        """Payment history of a loan, newest first (owner or staff)"""
        self.get_loan(caller, loan_id)
        return list(reversed(self._payments_for(loan_id)))

    def derive_status(self, loan: Loan) -> LoanStatus:
        """Status implied by the payment ledger: PAID once the principal is covered"""
        if self.total_paid(loan.id) >= loan.amount:
            return LoanStatus.PAID
        if loan.status == LoanStatus.PAID:
            # Stored PAID without a covering ledger; fall back to repayment
            return LoanStatus.ACTIVE
        return loan.status

    def apply_loan_payment(self, caller: Caller, loan_id: str, amount: Any) -> LoanPayment:
        """
        Record a repayment

        Runs in one atomic unit holding the loan row lock; the payment that
        covers the principal flips the loan to PAID in the same unit.

        Raises:
            InvalidArgumentError: non-positive amount
            NotFoundError: unknown loan
            ForbiddenError: caller neither owns the loan nor is staff
            InvalidStateError: loan is not ACTIVE or OVERDUE
            ExceedsBalanceError: amount larger than the remaining balance
        """
        amount = to_positive_amount(amount)

        try:
            with self.storage.atomic():
                data = self.storage.load_for_update(self.loans_table, loan_id)
                if not data:
                    raise NotFoundError("Loan not found", loan_id=loan_id)
                loan = Loan.from_dict(data)
                authorize(caller, owner_id=self._owner_of(loan))

                if loan.status not in PAYABLE_STATUSES:
                    raise InvalidStateError(
                        f"Loan is {loan.status.value}, payments need an ACTIVE or OVERDUE loan",
                        loan_id=loan_id
                    )

                paid = self.total_paid(loan.id)
                remaining = loan.amount - paid
                if amount > remaining:
                    raise ExceedsBalanceError(
                        f"Payment exceeds the remaining balance of {remaining}",
                        loan_id=loan_id,
                        remaining_amount=remaining
                    )

                now = datetime.now(timezone.utc)
                payment = LoanPayment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    amount=amount,
                    due_date=now.date()
                )
                self.storage.insert(self.payments_table, payment.id, payment.to_dict())

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAYMENT_APPLIED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"payment_id": payment.id, "amount": amount,
                              "remaining": remaining - amount},
                    user_id=caller.caller_id
                )

                if paid + amount >= loan.amount:
                    loan.status = LoanStatus.PAID
                    loan.updated_at = now
                    self.storage.save(self.loans_table, loan.id, loan.to_dict())
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_PAID_OFF,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"total_paid": paid + amount},
                        user_id=caller.caller_id
                    )
        except BankingError as e:
            log_action(
                self.logger, "warning", f"Loan payment rejected: {e.message}",
                user_id=caller.caller_id, action="apply_loan_payment",
                resource=f"loan:{loan_id}", extra={"amount": str(amount), "error": e.code}
            )
            raise

        log_action(
            self.logger, "info", "Loan payment applied",
            user_id=caller.caller_id, action="apply_loan_payment", resource=f"loan:{loan_id}",
            extra={"amount": str(amount), "status": loan.status.value}
        )
        return payment

    def set_loan_status(
        self,
        caller: Caller,
        loan_id: str,
        status: Any,
        reason: Optional[str] = None
    ) -> Loan:
        """
        Move a loan through its lifecycle (staff only)

        A manual move to PAID is accepted only when the payment ledger
        already covers the principal.
        """
        authorize(caller)
        if not isinstance(status, LoanStatus):
            try:
                status = LoanStatus(status)
            except ValueError:
                raise InvalidArgumentError(f"Invalid loan status: {status}")

        with self.storage.atomic():
            data = self.storage.load_for_update(self.loans_table, loan_id)
            if not data:
                raise NotFoundError("Loan not found", loan_id=loan_id)

            loan = Loan.from_dict(data)
            old_status = loan.status
            if status == old_status:
                raise InvalidStateError(f"Loan is already {status.value}", loan_id=loan_id)
            if status not in LOAN_TRANSITIONS[old_status]:
                raise InvalidStateError(
                    f"Cannot change loan status from {old_status.value} to {status.value}",
                    loan_id=loan_id
                )
            if status == LoanStatus.PAID and self.total_paid(loan.id) < loan.amount:
                raise InvalidStateError("Loan cannot be marked PAID before it is fully repaid",
                                        loan_id=loan_id)

            loan.status = status
            loan.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"old_status": old_status.value, "new_status": status.value,
                          "reason": reason},
                user_id=caller.caller_id
            )

        log_action(self.logger, "info", f"Loan status changed to {status.value}",
                   user_id=caller.caller_id, action="set_loan_status",
                   resource=f"loan:{loan_id}", extra={"reason": reason})
        return loan

    def get_loan_summary(self, caller: Caller, loan_id: str) -> Dict[str, Any]:
        """Repayment position of a loan (owner or staff)"""
        loan = self.get_loan(caller, loan_id)
        paid = self.total_paid(loan.id)
        schedule = loan.schedule
        return {
            "loan_id": loan.id,
            "loan_number": loan.loan_number,
            "status": loan.status,
            "principal": loan.amount,
            "total_paid": paid,
            "remaining": max(loan.amount - paid, ZERO),
            "monthly_payment": schedule.monthly_payment,
            "total_payment": schedule.total_payment,
            "total_interest": schedule.total_interest,
        }
