"""
Microlend

Payment settlement and loan-state reconciliation for peer-to-peer micro-loans,
with Decimal money, version-guarded writes and a hash-chained audit trail.
"""

__version__ = "1.0.0"
