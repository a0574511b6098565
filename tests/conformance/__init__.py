"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of a lending pool on the Ledger.

The tests are organized by invariant:
1. conservation.py - Tokens and items are never created or destroyed
2. share_accounting.py - Shares never redeem for more than they are worth
3. solvency.py - Borrows never exceed supply; custody matches the books
4. atomicity.py - A rejected operation changes nothing
5. accrual.py - Interest only accrues forward in time
6. determinism.py - Identical inputs give identical pools

These tests use hypothesis for property-based testing.
"""
