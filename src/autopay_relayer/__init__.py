"""
AutoPay relayer.

Indexes recurring-payment policies from the policy manager contract and
charges them when they fall due.
"""

__version__ = "0.1.0"
