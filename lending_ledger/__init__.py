"""
Lending Ledger

Reconciliation and derived-state engine for a small lending business:
cash/bank balances, invoice balances, chit groups and investments kept
consistent as vouchers are created, edited, voided or deleted.
All monetary values use Decimal.
"""

__version__ = "1.0.0"
