"""
Fundflow

Atomic fund transfers between account balances with a pending/completed/failed
transaction ledger, Decimal money math, and a hash-chained, append-only audit
trail written off the transfer path.
"""

__version__ = "1.0.0"
