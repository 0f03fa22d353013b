"""
Transaction Ledger Module

The append-only record of every balance movement on every account.
Transactions are inserted once and never updated or deleted; an account's
balance must always equal the sum of its signed transaction amounts.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import random
import time
import uuid

from .amounts import ZERO
from .config import get_config
from .errors import ConflictError
from .storage import DuplicateRecordError, StorageInterface, StorageRecord, insert_with_retry


class TransactionType(Enum):
    """Kinds of balance movement"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"  # Reserved: readable, never written by the core


TRANSACTIONS_TABLE = "transactions"


@dataclass
class Transaction(StorageRecord):
    """Immutable record of a single balance movement"""
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    reference: str
    description: str
    balance_after: Optional[Decimal] = None

    @property
    def is_outgoing(self) -> bool:
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return True
        if self.transaction_type == TransactionType.TRANSFER:
            return " to " in f" {self.description.lower()} "
        return False

    @property
    def signed_amount(self) -> Decimal:
        """Amount with its effect on the balance: negative when money left the account"""
        return -self.amount if self.is_outgoing else self.amount

    @property
    def category(self) -> str:
        if self.transaction_type == TransactionType.TRANSFER:
            return "Transfer"
        return "Expense" if self.is_outgoing else "Income"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['amount'] = Decimal(data['amount'])
        if data.get('balance_after') is not None:
            data['balance_after'] = Decimal(data['balance_after'])
        return super().from_dict(data)


def generate_reference(prefix: str = "TXN") -> str:
    """Generate a transaction reference: <prefix>-<epoch ms>-<random>"""
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def sum_signed(transactions: Iterable[Transaction]) -> Decimal:
    """Net effect of a set of transactions on a balance"""
    return sum((t.signed_amount for t in transactions), ZERO)


class TransactionLedger:
    """
    Storage access for the transaction ledger.

    Writes go through ``record`` only; callers are expected to hold an
    atomic unit that also covers the matching balance update.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = TRANSACTIONS_TABLE
        self.storage.declare_unique(self.table_name, "reference")

    def record(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
        balance_after: Decimal,
        reference_prefix: str = "TXN"
    ) -> Transaction:
        """
        Append a transaction with a freshly generated unique reference

        Raises:
            ConflictError: no unique reference after the configured attempts
        """
        def build() -> Transaction:
            now = datetime.now(timezone.utc)
            return Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                transaction_type=transaction_type,
                amount=amount,
                reference=generate_reference(reference_prefix),
                description=description,
                balance_after=balance_after
            )

        try:
            return insert_with_retry(
                self.storage, self.table_name, build, get_config().identifier_retry_attempts
            )
        except DuplicateRecordError:
            raise ConflictError("Could not allocate a unique transaction reference",
                                account_id=account_id)

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    def for_account(self, account_id: str) -> List[Transaction]:
        """All transactions of one account, oldest first"""
        found = self.storage.find(self.table_name, {"account_id": account_id})
        return sorted((Transaction.from_dict(d) for d in found), key=lambda t: t.created_at)

    def all(self) -> List[Transaction]:
        return sorted(
            (Transaction.from_dict(d) for d in self.storage.load_all(self.table_name)),
            key=lambda t: t.created_at
        )

    def balance_of(self, account_id: str) -> Decimal:
        """Balance implied by the ledger for one account"""
        return sum_signed(self.for_account(account_id))
