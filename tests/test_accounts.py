"""
Test suite for accounts module

Tests account opening, the lifecycle state machine, account-number
generation and masking, and fixed-deposit rate and maturity math.
"""

import pytest
from decimal import Decimal
from datetime import date

from personal_banking.storage import InMemoryStorage
from personal_banking.audit import AuditTrail, AuditEventType
from personal_banking.customers import CustomerManager
from personal_banking.accounts import (
    AccountManager, AccountStatus, AccountType, add_months,
    calculate_interest_rate, calculate_maturity_value,
    generate_account_number, mask_account_number
)
from personal_banking.errors import (
    ConflictError, ForbiddenError, InvalidArgumentError, InvalidStateError, NotFoundError
)
from personal_banking.ledger import TransactionType
from personal_banking.rbac import Caller, Role
import personal_banking.accounts as accounts_module


ALICE = Caller("idp|alice", Role.CUSTOMER)
BOB = Caller("idp|bob", Role.CUSTOMER)
EMPLOYEE = Caller("idp|emp", Role.EMPLOYEE)


class TestInterestRate:
    """Test the fixed-deposit rate table"""

    @pytest.mark.parametrize("tenure,expected", [
        (1, "3.5"), (2, "3.5"),
        (3, "4.0"), (5, "4.0"),
        (6, "5.0"), (11, "5.0"),
        (12, "5.5"), (23, "5.5"),
        (24, "6.0"), (35, "6.0"),
        (36, "6.25"), (59, "6.25"),
        (60, "6.5"), (120, "6.5"),
    ])
    def test_rate_steps(self, tenure, expected):
        assert calculate_interest_rate(tenure) == Decimal(expected)


class TestMaturityValue:
    """Test simple-interest maturity value"""

    def test_one_year(self):
        assert calculate_maturity_value(Decimal("1000.00"), Decimal("5.5"), 12) == Decimal("1055.00")

    def test_rounds_to_cents(self):
        # 1000 x (1 + 0.035 x 2/12) = 1005.8333...
        assert calculate_maturity_value(Decimal("1000.00"), Decimal("3.5"), 2) == Decimal("1005.83")


class TestAccountNumbers:
    """Test account-number generation and masking"""

    def test_generated_numbers_are_ten_digits(self):
        for _ in range(50):
            number = generate_account_number()
            assert len(number) == 10
            assert number.isdigit()
            assert number[0] != "0"

    def test_mask(self):
        assert mask_account_number("1234567890") == "12******90"

    def test_mask_short_values_unchanged(self):
        assert mask_account_number("1234") == "1234"
        assert mask_account_number("12") == "12"

    def test_mask_empty(self):
        assert mask_account_number("") == "****"


class TestAddMonths:
    """Test month arithmetic for maturity dates"""

    def test_simple(self):
        assert add_months(date(2024, 1, 15), 6) == date(2024, 7, 15)

    def test_crosses_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)


class TestAccountManager:
    """Test account management functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.account_manager = AccountManager(self.storage, self.audit_trail, self.customer_manager)

        self.alice = self.customer_manager.create_customer(ALICE, city="Pune")
        self.bob = self.customer_manager.create_customer(BOB, city="Delhi")

    def test_create_savings_account(self):
        account = self.account_manager.create_account(
            ALICE, self.alice.id, "SAVINGS", "1000.00"
        )

        assert account.account_type == AccountType.SAVINGS
        assert account.status == AccountStatus.ACTIVE
        assert account.balance == Decimal("1000.00")
        assert account.maturity_value is None
        assert account.tenure_months is None

    def test_opening_deposit_recorded_in_ledger(self):
        account = self.account_manager.create_account(
            ALICE, self.alice.id, AccountType.CURRENT, "750"
        )

        transactions = self.account_manager.ledger.for_account(account.id)
        assert len(transactions) == 1
        opening = transactions[0]
        assert opening.transaction_type == TransactionType.DEPOSIT
        assert opening.amount == Decimal("750.00")
        assert opening.reference.startswith("INIT-")
        assert opening.description == "Initial deposit"
        assert self.account_manager.ledger.balance_of(account.id) == account.balance

        events = self.audit_trail.get_events_for_entity("account", account.id)
        assert events[0].event_type == AuditEventType.ACCOUNT_OPENED

    def test_create_fixed_deposit(self):
        account = self.account_manager.create_account(
            ALICE, self.alice.id, "FIXED_DEPOSIT", "10000", tenure_months=12
        )

        assert account.interest_rate == Decimal("5.5")
        assert account.tenure_months == 12
        assert account.maturity_date == add_months(date.today(), 12)
        assert account.maturity_value == Decimal("10550.00")

        reloaded = self.account_manager.get_account(ALICE, account.id)
        assert reloaded.maturity_date == account.maturity_date
        assert reloaded.maturity_value == Decimal("10550.00")

    def test_fixed_deposit_requires_tenure(self):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(ALICE, self.alice.id, "FIXED_DEPOSIT", "1000")
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(
                ALICE, self.alice.id, "FIXED_DEPOSIT", "1000", tenure_months=0
            )

    @pytest.mark.parametrize("tenure", [601, 200000])
    def test_tenure_beyond_maximum_rejected(self, tenure):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(
                ALICE, self.alice.id, "FIXED_DEPOSIT", "1000", tenure_months=tenure
            )
        assert self.storage.count("accounts") == 0

    def test_longest_tenure_accepted(self):
        account = self.account_manager.create_account(
            ALICE, self.alice.id, "FIXED_DEPOSIT", "1000", tenure_months=600
        )
        assert account.maturity_date == add_months(date.today(), 600)
        assert account.interest_rate == Decimal("6.5")

    def test_tenure_rejected_for_other_types(self):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(
                ALICE, self.alice.id, "SAVINGS", "1000", tenure_months=12
            )

    def test_minimum_initial_deposit(self):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "499.99")

        account = self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "500.00")
        assert account.balance == Decimal("500.00")

    def test_invalid_inputs(self):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(ALICE, self.alice.id, "CHECKING", "1000")
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "lots")
        with pytest.raises(InvalidArgumentError):
            self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1e30")
        assert self.storage.count("accounts") == 0
        assert self.storage.count("transactions") == 0

    def test_cannot_open_for_another_customer(self):
        with pytest.raises(ForbiddenError):
            self.account_manager.create_account(BOB, self.alice.id, "SAVINGS", "1000")

        account = self.account_manager.create_account(EMPLOYEE, self.alice.id, "SAVINGS", "1000")
        assert account.customer_id == self.alice.id

    def test_unknown_customer(self):
        with pytest.raises(NotFoundError):
            self.account_manager.create_account(EMPLOYEE, "missing", "SAVINGS", "1000")

    def test_account_number_collision_retried(self, monkeypatch):
        numbers = iter(["1111111111", "1111111111", "2222222222"])
        monkeypatch.setattr(accounts_module, "generate_account_number", lambda: next(numbers))

        first = self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")
        second = self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")

        assert first.account_number == "1111111111"
        assert second.account_number == "2222222222"

    def test_account_number_exhaustion_is_conflict(self, monkeypatch):
        monkeypatch.setattr(accounts_module, "generate_account_number", lambda: "3333333333")
        self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")

        with pytest.raises(ConflictError):
            self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")
        assert self.storage.count("accounts") == 1
        assert self.storage.count("transactions") == 1

    def test_get_account_authorization(self):
        account = self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")

        with pytest.raises(ForbiddenError):
            self.account_manager.get_account(BOB, account.id)
        assert self.account_manager.get_account(EMPLOYEE, account.id).id == account.id
        with pytest.raises(NotFoundError):
            self.account_manager.get_account(ALICE, "missing")

    def test_list_accounts(self):
        self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000")
        self.account_manager.create_account(ALICE, self.alice.id, "CURRENT", "1000")
        self.account_manager.create_account(BOB, self.bob.id, "SAVINGS", "1000")

        assert len(self.account_manager.list_accounts(ALICE)) == 2
        assert len(self.account_manager.list_accounts(BOB)) == 1
        assert len(self.account_manager.list_accounts(EMPLOYEE)) == 3
        assert len(self.account_manager.list_accounts(EMPLOYEE, customer_id=self.bob.id)) == 1

        with pytest.raises(ForbiddenError):
            self.account_manager.list_accounts(ALICE, customer_id=self.bob.id)

    def test_list_accounts_without_profile(self):
        assert self.account_manager.list_accounts(Caller("idp|new", Role.CUSTOMER)) == []


class TestAccountLifecycle:
    """Test the account status state machine"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail)
        self.account_manager = AccountManager(self.storage, self.audit_trail, self.customer_manager)

        customer = self.customer_manager.create_customer(ALICE)
        self.account = self.account_manager.create_account(ALICE, customer.id, "SAVINGS", "1000")

    def test_suspend_and_reactivate(self):
        suspended = self.account_manager.set_account_status(
            EMPLOYEE, self.account.id, "SUSPENDED", reason="KYC review"
        )
        assert suspended.status == AccountStatus.SUSPENDED

        active = self.account_manager.set_account_status(EMPLOYEE, self.account.id, AccountStatus.ACTIVE)
        assert active.status == AccountStatus.ACTIVE

        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("account", self.account.id)]
        assert AuditEventType.ACCOUNT_SUSPENDED in event_types
        assert AuditEventType.ACCOUNT_REACTIVATED in event_types

    def test_closed_is_terminal(self):
        self.account_manager.set_account_status(EMPLOYEE, self.account.id, "CLOSED")

        for status in ("ACTIVE", "SUSPENDED"):
            with pytest.raises(InvalidStateError):
                self.account_manager.set_account_status(EMPLOYEE, self.account.id, status)

    def test_same_status_rejected(self):
        with pytest.raises(InvalidStateError):
            self.account_manager.set_account_status(EMPLOYEE, self.account.id, "ACTIVE")

    def test_customer_cannot_change_status(self):
        with pytest.raises(ForbiddenError):
            self.account_manager.set_account_status(ALICE, self.account.id, "CLOSED")
        assert self.account_manager.get_account(ALICE, self.account.id).status == AccountStatus.ACTIVE

    def test_invalid_status(self):
        with pytest.raises(InvalidArgumentError):
            self.account_manager.set_account_status(EMPLOYEE, self.account.id, "FROZEN")

    def test_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.account_manager.set_account_status(EMPLOYEE, "missing", "CLOSED")
