"""
Liquidity Planner - Source Package

The recurring-transaction core of a liquidity planning tool. Recurring
templates (rent, salaries, loan instalments, fund distributions) are turned
into dated payment and earning occurrences that a forecast can rely on.

DESIGN PRINCIPLES:
1. Generation is idempotent - running it twice never duplicates a slot
2. Fail early, fail visibly
3. No partial writes - an operation commits completely or not at all
4. Every mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Liquidity Planner Team"
