"""Referral attribution and reward ledger services"""

__version__ = "1.0.0"
