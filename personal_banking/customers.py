"""
Customer Management Module

Manages customer profiles. Each user owns at most one customer profile,
which in turn owns accounts and loans.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .amounts import to_decimal, ZERO
from .audit import AuditTrail, AuditEventType
from .errors import ConflictError, InvalidArgumentError, NotFoundError
from .logging_config import get_logger, log_action
from .rbac import Caller, authorize
from .storage import DuplicateRecordError, StorageInterface, StorageRecord


class EmploymentStatus(Enum):
    """Employment status reported on the customer profile"""
    EMPLOYED = "EMPLOYED"
    SELF_EMPLOYED = "SELF_EMPLOYED"
    UNEMPLOYED = "UNEMPLOYED"
    STUDENT = "STUDENT"
    RETIRED = "RETIRED"


PROFILE_FIELDS = (
    "phone", "address", "city", "state", "zip_code", "country",
    "employment_status", "annual_income", "additional_info"
)


@dataclass
class Customer(StorageRecord):
    """Customer profile owned by exactly one user"""
    user_id: str
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    employment_status: Optional[EmploymentStatus] = None
    annual_income: Optional[Decimal] = None
    additional_info: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        """Profile has the contact and financial fields needed to bank"""
        return all([self.phone, self.address, self.city, self.country,
                    self.employment_status, self.annual_income is not None])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        data = dict(data)
        if data.get('employment_status'):
            data['employment_status'] = EmploymentStatus(data['employment_status'])
        if data.get('annual_income') is not None:
            data['annual_income'] = Decimal(data['annual_income'])
        return super().from_dict(data)


class CustomerManager:
    """Creates, reads and updates customer profiles"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.customers_table = "customers"
        self.storage.declare_unique(self.customers_table, "user_id")
        self.logger = get_logger("banking.customers")

    def _clean_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(profile) - set(PROFILE_FIELDS)
        if unknown:
            raise InvalidArgumentError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        cleaned = dict(profile)
        if cleaned.get('employment_status') is not None:
            try:
                cleaned['employment_status'] = EmploymentStatus(cleaned['employment_status'])
            except ValueError:
                raise InvalidArgumentError(f"Invalid employment status: {cleaned['employment_status']}")

        if cleaned.get('annual_income') is not None:
            income = to_decimal(cleaned['annual_income'], "annual_income")
            if income < ZERO:
                raise InvalidArgumentError("annual_income cannot be negative")
            cleaned['annual_income'] = income

        return cleaned

    def create_customer(self, caller: Caller, **profile) -> Customer:
        """
        Create the caller's own customer profile

        Raises:
            ConflictError: the caller already has a profile
            InvalidArgumentError: a profile field is malformed
        """
        cleaned = self._clean_profile(profile)
        now = datetime.now(timezone.utc)

        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=caller.caller_id,
            **cleaned
        )

        with self.storage.atomic():
            try:
                self.storage.insert(self.customers_table, customer.id, customer.to_dict())
            except DuplicateRecordError:
                raise ConflictError("Customer profile already exists", user_id=caller.caller_id)

            self.audit_trail.log_event(
                event_type=AuditEventType.CUSTOMER_CREATED,
                entity_type="customer",
                entity_id=customer.id,
                metadata={"user_id": caller.caller_id},
                user_id=caller.caller_id
            )

        log_action(self.logger, "info", "Customer profile created",
                   user_id=caller.caller_id, action="create_customer",
                   resource=f"customer:{customer.id}")
        return customer

    def load_customer(self, customer_id: str) -> Customer:
        """Load a customer without authorization (internal use)"""
        data = self.storage.load(self.customers_table, customer_id)
        if not data:
            raise NotFoundError("Customer not found", customer_id=customer_id)
        return Customer.from_dict(data)

    def get_customer(self, caller: Caller, customer_id: str) -> Customer:
        """Get a customer profile (owner or staff)"""
        customer = self.load_customer(customer_id)
        authorize(caller, owner_id=customer.user_id)
        return customer

    def get_customer_for_user(self, user_id: str) -> Optional[Customer]:
        """Get the customer profile owned by a user, if any"""
        found = self.storage.find(self.customers_table, {"user_id": user_id})
        if found:
            return Customer.from_dict(found[0])
        return None

    def update_customer(self, caller: Caller, customer_id: str, **changes) -> Customer:
        """Update profile fields (owner or staff). Fields passed as None are left unchanged."""
        cleaned = self._clean_profile({k: v for k, v in changes.items() if v is not None})

        with self.storage.atomic():
            data = self.storage.load_for_update(self.customers_table, customer_id)
            if not data:
                raise NotFoundError("Customer not found", customer_id=customer_id)

            customer = Customer.from_dict(data)
            authorize(caller, owner_id=customer.user_id)

            for key, value in cleaned.items():
                setattr(customer, key, value)
            customer.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.customers_table, customer.id, customer.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.CUSTOMER_UPDATED,
                entity_type="customer",
                entity_id=customer.id,
                metadata={"fields": sorted(cleaned)},
                user_id=caller.caller_id
            )

        return customer

    def list_customers(self, caller: Caller) -> List[Customer]:
        """List all customers (staff only)"""
        authorize(caller)
        customers = [Customer.from_dict(d) for d in self.storage.load_all(self.customers_table)]
        return sorted(customers, key=lambda c: c.created_at)
