"""
Test suite for transactions module

Tests deposits and withdrawals, the no-overdraft rule, atomicity under
injected store failures, concurrent withdrawals, and transaction history.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone

from personal_banking.storage import InMemoryStorage, SQLiteStorage
from personal_banking.audit import AuditTrail, AuditEventType
from personal_banking.customers import CustomerManager
from personal_banking.accounts import AccountManager
from personal_banking.ledger import Transaction, TransactionType, sum_signed
from personal_banking.transactions import TransactionProcessor
from personal_banking.errors import (
    ConflictError, ForbiddenError, InsufficientFundsError, InvalidArgumentError,
    InvalidStateError, NotFoundError
)
from personal_banking.rbac import Caller, Role
import personal_banking.ledger as ledger_module


ALICE = Caller("idp|alice", Role.CUSTOMER)
BOB = Caller("idp|bob", Role.CUSTOMER)
EMPLOYEE = Caller("idp|emp", Role.EMPLOYEE)


def build_processor(storage):
    audit_trail = AuditTrail(storage)
    customer_manager = CustomerManager(storage, audit_trail)
    account_manager = AccountManager(storage, audit_trail, customer_manager)
    processor = TransactionProcessor(storage, audit_trail, account_manager)
    return audit_trail, customer_manager, account_manager, processor


class TestTransactionModel:
    """Test signed amounts and categories"""

    def _transaction(self, transaction_type, description):
        now = datetime.now(timezone.utc)
        return Transaction(
            id="t1", created_at=now, updated_at=now, account_id="a1",
            transaction_type=transaction_type, amount=Decimal("100.00"),
            reference="TXN-1-1", description=description
        )

    def test_deposit_is_income(self):
        txn = self._transaction(TransactionType.DEPOSIT, "Salary")
        assert txn.signed_amount == Decimal("100.00")
        assert txn.category == "Income"

    def test_withdrawal_is_expense(self):
        txn = self._transaction(TransactionType.WITHDRAWAL, "ATM")
        assert txn.signed_amount == Decimal("-100.00")
        assert txn.category == "Expense"

    def test_transfer_direction_from_description(self):
        outgoing = self._transaction(TransactionType.TRANSFER, "Transfer to savings")
        incoming = self._transaction(TransactionType.TRANSFER, "Transfer from savings")

        assert outgoing.signed_amount == Decimal("-100.00")
        assert incoming.signed_amount == Decimal("100.00")
        assert outgoing.category == incoming.category == "Transfer"

    def test_sum_signed(self):
        txns = [
            self._transaction(TransactionType.DEPOSIT, "in"),
            self._transaction(TransactionType.WITHDRAWAL, "out"),
            self._transaction(TransactionType.DEPOSIT, "in"),
        ]
        assert sum_signed(txns) == Decimal("100.00")


class TestTransactionProcessor:
    """Test transaction processing functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        (self.audit_trail, self.customer_manager,
         self.account_manager, self.processor) = build_processor(self.storage)

        self.alice = self.customer_manager.create_customer(ALICE)
        self.bob = self.customer_manager.create_customer(BOB)
        self.account = self.account_manager.create_account(ALICE, self.alice.id, "SAVINGS", "1000.00")

    def _balance(self):
        return self.account_manager.load_account(self.account.id).balance

    def test_deposit(self):
        txn = self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "250.50")

        assert txn.transaction_type == TransactionType.DEPOSIT
        assert txn.amount == Decimal("250.50")
        assert txn.balance_after == Decimal("1250.50")
        assert txn.description == "Deposit"
        assert txn.reference.startswith("TXN-")
        assert self._balance() == Decimal("1250.50")

    def test_withdrawal(self):
        txn = self.processor.apply_transaction(
            ALICE, self.account.id, TransactionType.WITHDRAWAL, 300, description="Rent"
        )

        assert txn.description == "Rent"
        assert self._balance() == Decimal("700.00")
        events = self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_APPLIED)
        assert events[-1].entity_id == txn.id

    def test_withdraw_entire_balance(self):
        self.processor.apply_transaction(ALICE, self.account.id, "WITHDRAWAL", "1000.00")
        assert self._balance() == Decimal("0.00")

    def test_no_overdraft(self):
        with pytest.raises(InsufficientFundsError):
            self.processor.apply_transaction(ALICE, self.account.id, "WITHDRAWAL", "1000.01")

        assert self._balance() == Decimal("1000.00")
        assert len(self.account_manager.ledger.for_account(self.account.id)) == 1

    @pytest.mark.parametrize("amount", [
        "0", "-5", "abc", None, "NaN", True, "1e30", "1000000000000.00"
    ])
    def test_invalid_amounts(self, amount):
        with pytest.raises(InvalidArgumentError):
            self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", amount)
        assert self._balance() == Decimal("1000.00")

    def test_transfer_rejected(self):
        with pytest.raises(InvalidArgumentError):
            self.processor.apply_transaction(ALICE, self.account.id, "TRANSFER", "10")
        with pytest.raises(InvalidArgumentError):
            self.processor.apply_transaction(ALICE, self.account.id, "REFUND", "10")

    def test_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.processor.apply_transaction(ALICE, "missing", "DEPOSIT", "10")

    def test_other_customer_forbidden(self):
        with pytest.raises(ForbiddenError):
            self.processor.apply_transaction(BOB, self.account.id, "WITHDRAWAL", "10")
        assert self._balance() == Decimal("1000.00")

    def test_staff_can_transact(self):
        self.processor.apply_transaction(EMPLOYEE, self.account.id, "DEPOSIT", "5")
        assert self._balance() == Decimal("1005.00")

    @pytest.mark.parametrize("status", ["SUSPENDED", "CLOSED"])
    def test_inactive_account_rejected(self, status):
        self.account_manager.set_account_status(EMPLOYEE, self.account.id, status)

        with pytest.raises(InvalidStateError):
            self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "10")
        assert self._balance() == Decimal("1000.00")

    def test_store_failure_leaves_state_intact(self, monkeypatch):
        """A failure after the balance write rolls the whole unit back"""
        audit_count = self.audit_trail.count_events()
        real_insert = self.storage.insert

        def failing_insert(table, record_id, data):
            if table == "transactions":
                raise RuntimeError("disk full")
            return real_insert(table, record_id, data)

        monkeypatch.setattr(self.storage, "insert", failing_insert)

        with pytest.raises(RuntimeError):
            self.processor.apply_transaction(ALICE, self.account.id, "WITHDRAWAL", "400")

        monkeypatch.undo()
        assert self._balance() == Decimal("1000.00")
        assert len(self.account_manager.ledger.for_account(self.account.id)) == 1
        assert self.audit_trail.count_events() == audit_count

    def test_reference_collision_retried(self, monkeypatch):
        first = self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "1")
        references = iter([first.reference, "TXN-fresh-1"])
        monkeypatch.setattr(ledger_module, "generate_reference", lambda prefix="TXN": next(references))

        second = self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "1")
        assert second.reference == "TXN-fresh-1"

    def test_reference_exhaustion_is_conflict(self, monkeypatch):
        first = self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "1")
        monkeypatch.setattr(ledger_module, "generate_reference", lambda prefix="TXN": first.reference)

        with pytest.raises(ConflictError):
            self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "1")
        assert self._balance() == Decimal("1001.00")

    def test_balance_equals_signed_sum(self):
        for txn_type, amount in [("DEPOSIT", "200"), ("WITHDRAWAL", "50.25"),
                                 ("WITHDRAWAL", "1000"), ("DEPOSIT", "0.75")]:
            self.processor.apply_transaction(ALICE, self.account.id, txn_type, amount)

        assert self._balance() == Decimal("150.50")
        assert self.account_manager.ledger.balance_of(self.account.id) == self._balance()

    def test_get_transaction(self):
        txn = self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "10")

        assert self.processor.get_transaction(ALICE, txn.id).id == txn.id
        with pytest.raises(ForbiddenError):
            self.processor.get_transaction(BOB, txn.id)
        with pytest.raises(NotFoundError):
            self.processor.get_transaction(ALICE, "missing")

    def test_list_transactions_newest_first(self):
        for amount in ("1", "2", "3"):
            self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", amount)

        history = self.processor.list_transactions(ALICE, account_id=self.account.id)
        assert [t.amount for t in history] == [
            Decimal("3.00"), Decimal("2.00"), Decimal("1.00"), Decimal("1000.00")
        ]

        limited = self.processor.list_transactions(ALICE, limit=2)
        assert len(limited) == 2

    def test_list_transactions_scoping(self):
        bob_account = self.account_manager.create_account(BOB, self.bob.id, "SAVINGS", "600")
        self.processor.apply_transaction(BOB, bob_account.id, "DEPOSIT", "5")

        alice_history = self.processor.list_transactions(ALICE)
        assert {t.account_id for t in alice_history} == {self.account.id}

        with pytest.raises(ForbiddenError):
            self.processor.list_transactions(ALICE, account_id=bob_account.id)

        everything = self.processor.list_transactions(EMPLOYEE, limit=100)
        assert len(everything) == 3

    def test_list_transactions_invalid_limit(self):
        with pytest.raises(InvalidArgumentError):
            self.processor.list_transactions(ALICE, limit=0)

    def test_account_summary(self):
        self.processor.apply_transaction(ALICE, self.account.id, "DEPOSIT", "200")
        self.processor.apply_transaction(ALICE, self.account.id, "WITHDRAWAL", "50")

        summary = self.processor.account_summary(ALICE, self.account.id)
        assert summary["total_deposits"] == Decimal("1200.00")
        assert summary["total_withdrawals"] == Decimal("50.00")
        assert summary["transaction_count"] == 3


class TestConcurrentWithdrawals:
    """Concurrent mutations on one account are linearizable"""

    def _race(self, storage):
        _, customer_manager, account_manager, processor = build_processor(storage)
        customer = customer_manager.create_customer(ALICE)
        account = account_manager.create_account(ALICE, customer.id, "SAVINGS", "1000.00")

        barrier = threading.Barrier(2)
        results = []

        def withdraw():
            barrier.wait()
            try:
                processor.apply_transaction(ALICE, account.id, "WITHDRAWAL", "600")
                results.append("ok")
            except InsufficientFundsError:
                results.append("insufficient")

        threads = [threading.Thread(target=withdraw) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == ["insufficient", "ok"]
        final = account_manager.load_account(account.id)
        assert final.balance == Decimal("400.00")
        assert account_manager.ledger.balance_of(account.id) == final.balance

    def test_in_memory(self):
        self._race(InMemoryStorage())

    def test_sqlite(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "banking.db")
        self._race(storage)
        storage.close()

    def test_many_deposits(self):
        storage = InMemoryStorage()
        _, customer_manager, account_manager, processor = build_processor(storage)
        customer = customer_manager.create_customer(ALICE)
        account = account_manager.create_account(ALICE, customer.id, "SAVINGS", "500")

        def deposit():
            for _ in range(10):
                processor.apply_transaction(ALICE, account.id, "DEPOSIT", "1.00")

        threads = [threading.Thread(target=deposit) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert account_manager.load_account(account.id).balance == Decimal("540.00")
