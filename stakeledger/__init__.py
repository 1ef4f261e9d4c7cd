"""
Stake Ledger - Source Package

The accountability ledger and goal-settlement engine behind a
"stake money on your goals" app.

DESIGN PRINCIPLES:
1. Money only moves through the balance guard
2. Every balance change leaves an immutable ledger entry
3. Settlements happen at most once per idempotency key
4. Fail loudly with a typed error from a closed set
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Stake Ledger Team"
