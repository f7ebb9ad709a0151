"""
Database models for the treeledger engine.
Import all models here so metadata is complete and for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.user import User
from models.wallet import Wallet
from models.transaction import LedgerTransaction
from models.investment import Investment
from models.request import MoneyRequest
from models.otp_session import OTPSession

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'User',
    'Wallet',
    'LedgerTransaction',
    'Investment',
    'MoneyRequest',
    'OTPSession',

    # Listeners
    'register_all_listeners',
]
