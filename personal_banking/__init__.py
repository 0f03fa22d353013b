"""
Personal Banking Ledger Core

Accounts, deposits and withdrawals, loans and repayments with an
append-only ledger, atomic balance mutation and a hash-chained audit trail.
"""

__version__ = "1.0.0"
