"""
Reporting Module

Read-only summaries for the dashboard. Customers get figures over their
own accounts and loans; staff get figures over the whole bank.
"""

from decimal import Decimal
from typing import Any, Dict

from .accounts import AccountManager, AccountType
from .amounts import ZERO
from .loans import LoanManager, PAYABLE_STATUSES
from .rbac import Caller
from .transactions import TransactionProcessor

RECENT_TRANSACTIONS = 5


class ReportingService:
    """Builds dashboard summaries"""

    def __init__(
        self,
        account_manager: AccountManager,
        loan_manager: LoanManager,
        transaction_processor: TransactionProcessor
    ):
        self.account_manager = account_manager
        self.loan_manager = loan_manager
        self.transaction_processor = transaction_processor

    def dashboard_summary(self, caller: Caller) -> Dict[str, Any]:
        accounts = self.account_manager.list_accounts(caller)
        loans = self.loan_manager.list_loans(caller)

        total_balance = sum((a.balance for a in accounts if a.is_active), ZERO)
        accounts_by_type = {t.value: 0 for t in AccountType}
        for account in accounts:
            accounts_by_type[account.account_type.value] += 1

        outstanding: Decimal = ZERO
        active_loans = 0
        for loan in loans:
            if loan.status in PAYABLE_STATUSES:
                active_loans += 1
                outstanding += loan.amount - self.loan_manager.total_paid(loan.id)

        return {
            "total_balance": total_balance,
            "account_count": len(accounts),
            "accounts_by_type": accounts_by_type,
            "active_loan_count": active_loans,
            "outstanding_loan_balance": outstanding,
            "recent_transactions": self.transaction_processor.list_transactions(
                caller, limit=RECENT_TRANSACTIONS
            ),
        }
