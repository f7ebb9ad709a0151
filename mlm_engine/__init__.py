# mlm_engine/__init__.py
"""
Compensation and ledger engine: tree placement, ledger, commissions,
investment accrual, ranks and the request approval state machine.
"""

# Services
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.tree_service import TreeService
from mlm_engine.services.commission_service import CommissionService
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.accrual_service import AccrualService
from mlm_engine.services.rank_service import RankService
from mlm_engine.services.otp_service import OTPService
from mlm_engine.services.request_service import RequestService
from mlm_engine.services.report_service import ReportService

# Configuration
from mlm_engine.config.ranks import RankTier, RANK_CONFIG

# Utilities
from mlm_engine.utils.time_machine import timeMachine

__all__ = [
    # Services
    'LedgerService',
    'TreeService',
    'CommissionService',
    'InvestmentService',
    'AccrualService',
    'RankService',
    'OTPService',
    'RequestService',
    'ReportService',

    # Config
    'RankTier',
    'RANK_CONFIG',

    # Utils
    'timeMachine',
]
