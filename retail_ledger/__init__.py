"""
Retail Ledger

A personal banking ledger with atomic funds movement, account-type balance
floors, and transaction-PIN authorization with independent lockout tracking.
"""

__version__ = "1.0.0"
