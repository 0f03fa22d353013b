"""
Transaction Processing Module

Applies deposits and withdrawals to account balances. Each mutation reloads
the account under a row lock, validates it, writes the new balance, appends
the ledger entry and the audit event in a single atomic unit.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from .accounts import AccountManager, Account
from .amounts import ZERO, format_amount, to_positive_amount
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .errors import (
    BankingError, InsufficientFundsError, InvalidArgumentError,
    InvalidStateError, NotFoundError
)
from .ledger import Transaction, TransactionType
from .logging_config import get_logger, log_action
from .rbac import Caller, authorize
from .storage import StorageInterface

DEFAULT_DESCRIPTIONS = {
    TransactionType.DEPOSIT: "Deposit",
    TransactionType.WITHDRAWAL: "Withdrawal",
}


class TransactionProcessor:
    """
    Processes balance mutations and serves transaction history
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        account_manager: AccountManager
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.account_manager = account_manager
        self.ledger = account_manager.ledger
        self.logger = get_logger("banking.transactions")

    def _parse_type(self, transaction_type: Any) -> TransactionType:
        if not isinstance(transaction_type, TransactionType):
            try:
                transaction_type = TransactionType(transaction_type)
            except ValueError:
                raise InvalidArgumentError(f"Invalid transaction type: {transaction_type}")
        if transaction_type not in DEFAULT_DESCRIPTIONS:
            raise InvalidArgumentError(f"{transaction_type.value} transactions are not supported")
        return transaction_type

    def apply_transaction(
        self,
        caller: Caller,
        account_id: str,
        transaction_type: Any,
        amount: Any,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Deposit to or withdraw from an account

        Args:
            caller: Account owner or staff
            account_id: Account to mutate
            transaction_type: DEPOSIT or WITHDRAWAL
            amount: Positive amount (str, int or Decimal)
            description: Optional free text, defaults to the type name

        Returns:
            The recorded Transaction, carrying the balance after the mutation

        Raises:
            InvalidArgumentError: bad type or amount
            NotFoundError: unknown account
            ForbiddenError: caller neither owns the account nor is staff
            InvalidStateError: account is not ACTIVE
            InsufficientFundsError: withdrawal larger than the balance
        """
        transaction_type = self._parse_type(transaction_type)
        amount = to_positive_amount(amount)
        description = description or DEFAULT_DESCRIPTIONS[transaction_type]

        try:
            with self.storage.atomic():
                account = self._lock_account(account_id)
                authorize(caller, owner_id=self.account_manager.owner_of(account))

                if not account.is_active:
                    raise InvalidStateError(
                        f"Account is {account.status.value}, only ACTIVE accounts accept transactions",
                        account_id=account_id
                    )

                if transaction_type == TransactionType.WITHDRAWAL:
                    if amount > account.balance:
                        raise InsufficientFundsError(
                            f"Insufficient funds: balance {format_amount(account.balance, get_config().currency_code)}",
                            account_id=account_id
                        )
                    new_balance = account.balance - amount
                else:
                    new_balance = account.balance + amount

                account.balance = new_balance
                account.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.account_manager.accounts_table, account.id, account.to_dict())

                transaction = self.ledger.record(
                    account.id, transaction_type, amount, description, balance_after=new_balance
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSACTION_APPLIED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={
                        "account_id": account.id,
                        "transaction_type": transaction_type.value,
                        "amount": amount,
                        "balance_after": new_balance,
                        "reference": transaction.reference
                    },
                    user_id=caller.caller_id
                )
        except BankingError as e:
            log_action(
                self.logger, "warning", f"Transaction rejected: {e.message}",
                user_id=caller.caller_id, action="apply_transaction",
                resource=f"account:{account_id}",
                extra={"transaction_type": transaction_type.value, "amount": str(amount),
                       "error": e.code}
            )
            raise

        log_action(
            self.logger, "info", f"Transaction applied: {transaction_type.value}",
            user_id=caller.caller_id, action="apply_transaction",
            resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account_id,
                "amount": str(amount),
                "balance_after": str(new_balance),
                "reference": transaction.reference
            }
        )
        return transaction

    def _lock_account(self, account_id: str) -> Account:
        data = self.storage.load_for_update(self.account_manager.accounts_table, account_id)
        if not data:
            raise NotFoundError("Account not found", account_id=account_id)
        return Account.from_dict(data)

    def get_transaction(self, caller: Caller, transaction_id: str) -> Transaction:
        """Get a transaction (owner of its account or staff)"""
        transaction = self.ledger.get(transaction_id)
        if not transaction:
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        account = self.account_manager.load_account(transaction.account_id)
        authorize(caller, owner_id=self.account_manager.owner_of(account))
        return transaction

    def list_transactions(
        self,
        caller: Caller,
        account_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """
        Transaction history, newest first.

        With ``account_id`` the caller must own that account or be staff.
        Without it, customers get the history of all their own accounts and
        staff get every transaction.
        """
        if limit is None:
            limit = get_config().default_transaction_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgumentError("limit must be a positive integer")

        if account_id is not None:
            self.account_manager.get_account(caller, account_id)
            transactions = self.ledger.for_account(account_id)
        elif caller.is_staff:
            transactions = self.ledger.all()
        else:
            transactions = []
            for account in self.account_manager.list_accounts(caller):
                transactions.extend(self.ledger.for_account(account.id))

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions[:limit]

    def account_summary(self, caller: Caller, account_id: str) -> dict:
        """Deposit and withdrawal totals for one account"""
        account = self.account_manager.get_account(caller, account_id)
        transactions = self.ledger.for_account(account_id)
        deposits = sum((t.amount for t in transactions if not t.is_outgoing), ZERO)
        withdrawals = sum((t.amount for t in transactions if t.is_outgoing), ZERO)
        return {
            "account_id": account.id,
            "balance": account.balance,
            "total_deposits": deposits,
            "total_withdrawals": withdrawals,
            "transaction_count": len(transactions),
        }
