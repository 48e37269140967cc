"""
Payments Core

Money-movement core for a retail banking API: atomic transfers, limit checks,
step-up verification of sensitive transfers, and scheduled/recurring
transaction execution. All monetary values use Decimal.
"""

__version__ = "1.0.0"
