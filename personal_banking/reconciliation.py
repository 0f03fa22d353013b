"""
Reconciliation Module

Consistency checks that recompute derived state from the append-only
ledgers and compare it with what is stored:

- account balance == sum of signed transaction amounts
- loan payments never exceed the principal
- stored loan status == status derived from the payment ledger
- the audit hash chain is intact
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from .accounts import Account, AccountManager
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager
from .logging_config import get_logger, log_action
from .rbac import Caller, authorize


class ReconciliationService:
    """Runs ledger consistency checks and repairs cached loan statuses"""

    def __init__(
        self,
        account_manager: AccountManager,
        loan_manager: LoanManager,
        audit_trail: AuditTrail
    ):
        self.account_manager = account_manager
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.storage = account_manager.storage
        self.logger = get_logger("banking.reconciliation")

    def _balance_mismatches(self) -> List[Dict[str, Any]]:
        mismatches = []
        ledger = self.account_manager.ledger
        for data in self.storage.load_all(self.account_manager.accounts_table):
            account = Account.from_dict(data)
            expected = ledger.balance_of(account.id)
            if expected != account.balance:
                mismatches.append({
                    "account_id": account.id,
                    "stored_balance": str(account.balance),
                    "ledger_balance": str(expected),
                })
        return mismatches

    def _loan_findings(self) -> Dict[str, List[Dict[str, Any]]]:
        overpaid = []
        status_mismatches = []
        for data in self.storage.load_all(self.loan_manager.loans_table):
            loan = Loan.from_dict(data)
            paid = self.loan_manager.total_paid(loan.id)
            if paid > loan.amount:
                overpaid.append({
                    "loan_id": loan.id,
                    "principal": str(loan.amount),
                    "total_paid": str(paid),
                })
            derived = self.loan_manager.derive_status(loan)
            if derived != loan.status:
                status_mismatches.append({
                    "loan_id": loan.id,
                    "stored_status": loan.status.value,
                    "derived_status": derived.value,
                })
        return {"overpaid_loans": overpaid, "status_mismatches": status_mismatches}

    def run(self) -> Dict[str, Any]:
        """
        Run every check

        Returns:
            Report with the findings of each check and an overall ``clean`` flag
        """
        with self.storage.atomic():
            balance_mismatches = self._balance_mismatches()
            loan_findings = self._loan_findings()
            audit_integrity = self.audit_trail.verify_integrity()

        report = {
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "balance_mismatches": balance_mismatches,
            "overpaid_loans": loan_findings["overpaid_loans"],
            "status_mismatches": loan_findings["status_mismatches"],
            "audit_integrity": audit_integrity,
        }
        report["clean"] = not (
            balance_mismatches
            or loan_findings["overpaid_loans"]
            or loan_findings["status_mismatches"]
            or not audit_integrity["valid"]
        )

        level = "info" if report["clean"] else "warning"
        log_action(
            self.logger, level, "Reconciliation finished",
            action="reconciliation_run", resource="ledger",
            extra={
                "clean": report["clean"],
                "balance_mismatches": len(balance_mismatches),
                "overpaid_loans": len(loan_findings["overpaid_loans"]),
                "status_mismatches": len(loan_findings["status_mismatches"]),
                "audit_valid": audit_integrity["valid"],
            }
        )
        return report

    def run_for(self, caller: Caller) -> Dict[str, Any]:
        """Run the checks on behalf of a staff caller and audit the run"""
        authorize(caller)
        report = self.run()
        self.audit_trail.log_event(
            event_type=AuditEventType.RECONCILIATION_RUN,
            entity_type="system",
            entity_id="reconciliation",
            metadata={"clean": report["clean"]},
            user_id=caller.caller_id
        )
        return report

    def repair_loan_statuses(self) -> List[Dict[str, Any]]:
        """
        Rewrite every stored loan status that disagrees with the payment
        ledger to the derived value, in one atomic unit

        Returns:
            The repairs made
        """
        repairs = []
        with self.storage.atomic():
            for data in self.storage.load_all(self.loan_manager.loans_table):
                loan = Loan.from_dict(data)
                derived = self.loan_manager.derive_status(loan)
                if derived == loan.status:
                    continue

                repairs.append({
                    "loan_id": loan.id,
                    "old_status": loan.status.value,
                    "new_status": derived.value,
                })
                loan.status = derived
                loan.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.loan_manager.loans_table, loan.id, loan.to_dict())

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_REPAIRED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata=repairs[-1]
                )

        if repairs:
            log_action(self.logger, "warning", f"Repaired {len(repairs)} loan statuses",
                       action="repair_loan_statuses", resource="loans",
                       extra={"repairs": repairs})
        return repairs
