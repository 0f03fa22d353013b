"""
Account Management Module

Manages customer accounts (savings, current and fixed deposit), the account
lifecycle state machine, account-number generation and masking, and the
fixed-deposit rate and maturity calculations.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar
import random
import uuid

from .amounts import ZERO, quantize, to_months, to_positive_amount
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .customers import Customer, CustomerManager
from .errors import BankingError, ConflictError, InvalidArgumentError, InvalidStateError, NotFoundError
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .rbac import Caller, authorize
from .storage import DuplicateRecordError, StorageInterface, StorageRecord, insert_with_retry


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"
    FIXED_DEPOSIT = "FIXED_DEPOSIT"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"        # Normal operation
    SUSPENDED = "SUSPENDED"  # Temporarily blocked, can be reactivated
    CLOSED = "CLOSED"        # Permanently closed


ALLOWED_TRANSITIONS = {
    AccountStatus.ACTIVE: {AccountStatus.SUSPENDED, AccountStatus.CLOSED},
    AccountStatus.SUSPENDED: {AccountStatus.ACTIVE, AccountStatus.CLOSED},
    AccountStatus.CLOSED: set(),
}

STATUS_EVENTS = {
    AccountStatus.ACTIVE: AuditEventType.ACCOUNT_REACTIVATED,
    AccountStatus.SUSPENDED: AuditEventType.ACCOUNT_SUSPENDED,
    AccountStatus.CLOSED: AuditEventType.ACCOUNT_CLOSED,
}

# (tenure below N months, annual rate in percent)
FIXED_DEPOSIT_RATES = (
    (3, Decimal('3.5')),
    (6, Decimal('4.0')),
    (12, Decimal('5.0')),
    (24, Decimal('5.5')),
    (36, Decimal('6.0')),
    (60, Decimal('6.25')),
)
LONG_TERM_RATE = Decimal('6.5')


def calculate_interest_rate(tenure_months: int) -> Decimal:
    """Annual fixed-deposit rate for a tenure"""
    for limit, rate in FIXED_DEPOSIT_RATES:
        if tenure_months < limit:
            return rate
    return LONG_TERM_RATE


def calculate_maturity_value(balance: Decimal, rate: Decimal, tenure_months: int) -> Decimal:
    """Simple-interest maturity value: balance x (1 + rate/100 x tenure/12)"""
    return quantize(balance * (1 + rate / 100 * Decimal(tenure_months) / 12))


def add_months(start: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the end of the month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_account_number() -> str:
    """Random 10-digit account number"""
    return str(random.randint(1000000000, 9999999999))


def mask_account_number(number: str) -> str:
    """Show only the first two and last two characters"""
    if not number:
        return "****"
    if len(number) <= 4:
        return number
    return number[:2] + "*" * (len(number) - 4) + number[-2:]


@dataclass
class Account(StorageRecord):
    """Customer account. Fixed deposits also carry tenure, rate and maturity date."""
    customer_id: str
    account_number: str
    account_type: AccountType
    balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    tenure_months: Optional[int] = None
    interest_rate: Optional[Decimal] = None
    maturity_date: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_fixed_deposit(self) -> bool:
        return self.account_type == AccountType.FIXED_DEPOSIT

    @property
    def masked_number(self) -> str:
        return mask_account_number(self.account_number)

    @property
    def maturity_value(self) -> Optional[Decimal]:
        """Derived on every read from the current balance, never stored"""
        if not self.is_fixed_deposit or self.interest_rate is None or not self.tenure_months:
            return None
        return calculate_maturity_value(self.balance, self.interest_rate, self.tenure_months)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['account_type'] = AccountType(data['account_type'])
        data['status'] = AccountStatus(data['status'])
        data['balance'] = Decimal(data['balance'])
        if data.get('interest_rate') is not None:
            data['interest_rate'] = Decimal(data['interest_rate'])
        if isinstance(data.get('maturity_date'), str):
            data['maturity_date'] = date.fromisoformat(data['maturity_date'])
        return super().from_dict(data)


class AccountManager:
    """
    Opens accounts, enforces the account lifecycle and answers account reads.

    Balance changes after opening go through TransactionProcessor; this
    manager only writes a balance when it records the opening deposit.
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
        self.ledger = TransactionLedger(storage)
        self.accounts_table = "accounts"
        self.storage.declare_unique(self.accounts_table, "account_number")
        self.logger = get_logger("banking.accounts")

    def _parse_type(self, account_type: Any) -> AccountType:
        if isinstance(account_type, AccountType):
            return account_type
        try:
            return AccountType(account_type)
        except ValueError:
            raise InvalidArgumentError(f"Invalid account type: {account_type}")

    def create_account(
        self,
        caller: Caller,
        customer_id: str,
        account_type: Any,
        initial_deposit: Any,
        tenure_months: Optional[Any] = None
    ) -> Account:
        """
        Open an account funded by an opening deposit

        Args:
            caller: Customer owning ``customer_id``, or staff
            customer_id: Customer that will own the account
            account_type: SAVINGS, CURRENT or FIXED_DEPOSIT
            initial_deposit: Opening balance, at least the configured minimum
            tenure_months: Required for fixed deposits, rejected otherwise

        Returns:
            The new Account; its INIT deposit transaction is written in the
            same atomic unit

        Raises:
            NotFoundError: unknown customer
            ForbiddenError: caller neither owns the customer nor is staff
            InvalidArgumentError: bad type, deposit or tenure
            ConflictError: no unique account number could be allocated
        """
        customer = self.customer_manager.load_customer(customer_id)
        authorize(caller, owner_id=customer.user_id)

        account_type = self._parse_type(account_type)
        deposit = to_positive_amount(initial_deposit, "initial_deposit")
        minimum = Decimal(get_config().min_initial_deposit)
        if deposit < minimum:
            raise InvalidArgumentError(f"Minimum initial deposit is {minimum}")

        interest_rate = None
        maturity_date = None
        if account_type == AccountType.FIXED_DEPOSIT:
            if tenure_months is None:
                raise InvalidArgumentError("tenure_months is required for fixed deposits")
            tenure_months = to_months(tenure_months, "tenure_months")
            interest_rate = calculate_interest_rate(tenure_months)
            maturity_date = add_months(date.today(), tenure_months)
        elif tenure_months is not None:
            raise InvalidArgumentError("tenure_months only applies to fixed deposits")

        def build() -> Account:
            now = datetime.now(timezone.utc)
            return Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer.id,
                account_number=generate_account_number(),
                account_type=account_type,
                balance=deposit,
                tenure_months=tenure_months,
                interest_rate=interest_rate,
                maturity_date=maturity_date
            )

        try:
            with self.storage.atomic():
                try:
                    account = insert_with_retry(
                        self.storage, self.accounts_table, build,
                        get_config().identifier_retry_attempts
                    )
                except DuplicateRecordError:
                    raise ConflictError("Could not allocate a unique account number")

                self.ledger.record(
                    account.id, TransactionType.DEPOSIT, deposit, "Initial deposit",
                    balance_after=deposit, reference_prefix="INIT"
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_OPENED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "customer_id": customer.id,
                        "account_type": account_type.value,
                        "initial_deposit": deposit,
                        "tenure_months": tenure_months
                    },
                    user_id=caller.caller_id
                )
        except BankingError as e:
            log_action(self.logger, "warning", f"Account opening rejected: {e.message}",
                       user_id=caller.caller_id, action="create_account",
                       resource=f"customer:{customer.id}")
            raise

        log_action(
            self.logger, "info", f"Account opened: {account_type.value}",
            user_id=caller.caller_id, action="create_account",
            resource=f"account:{account.id}",
            extra={"account_number": account.masked_number, "initial_deposit": str(deposit)}
        )
        return account

    def load_account(self, account_id: str) -> Account:
        """Load an account without authorization (internal use)"""
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError("Account not found", account_id=account_id)
        return Account.from_dict(data)

    def owner_of(self, account: Account) -> str:
        """User id owning an account"""
        return self.customer_manager.load_customer(account.customer_id).user_id

    def get_account(self, caller: Caller, account_id: str) -> Account:
        """Get an account (owner or staff)"""
        account = self.load_account(account_id)
        authorize(caller, owner_id=self.owner_of(account))
        return account

    def _accounts_of_customer(self, customer: Customer) -> List[Account]:
        found = self.storage.find(self.accounts_table, {"customer_id": customer.id})
        return [Account.from_dict(d) for d in found]

    def list_accounts(self, caller: Caller, customer_id: Optional[str] = None) -> List[Account]:
        """
        List accounts, newest first.

        Customers see only their own accounts; staff see every account or
        one customer's accounts when ``customer_id`` is given.
        """
        if customer_id is not None:
            customer = self.customer_manager.load_customer(customer_id)
            authorize(caller, owner_id=customer.user_id)
            accounts = self._accounts_of_customer(customer)
        elif caller.is_staff:
            accounts = [Account.from_dict(d) for d in self.storage.load_all(self.accounts_table)]
        else:
            customer = self.customer_manager.get_customer_for_user(caller.caller_id)
            accounts = self._accounts_of_customer(customer) if customer else []

        return sorted(accounts, key=lambda a: a.created_at, reverse=True)

    def set_account_status(
        self,
        caller: Caller,
        account_id: str,
        status: Any,
        reason: Optional[str] = None
    ) -> Account:
        """Move an account through its lifecycle (staff only)"""
        authorize(caller)
        if not isinstance(status, AccountStatus):
            try:
                status = AccountStatus(status)
            except ValueError:
                raise InvalidArgumentError(f"Invalid account status: {status}")

        with self.storage.atomic():
            data = self.storage.load_for_update(self.accounts_table, account_id)
            if not data:
                raise NotFoundError("Account not found", account_id=account_id)

            account = Account.from_dict(data)
            old_status = account.status
            if status == old_status:
                raise InvalidStateError(f"Account is already {status.value}",
                                        account_id=account_id)
            if status not in ALLOWED_TRANSITIONS[old_status]:
                raise InvalidStateError(
                    f"Cannot change account status from {old_status.value} to {status.value}",
                    account_id=account_id
                )

            account.status = status
            account.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.accounts_table, account.id, account.to_dict())

            self.audit_trail.log_event(
                event_type=STATUS_EVENTS[status],
                entity_type="account",
                entity_id=account.id,
                metadata={"old_status": old_status.value, "new_status": status.value,
                          "reason": reason},
                user_id=caller.caller_id
            )

        log_action(self.logger, "info", f"Account status changed to {status.value}",
                   user_id=caller.caller_id, action="set_account_status",
                   resource=f"account:{account_id}", extra={"reason": reason})
        return account
