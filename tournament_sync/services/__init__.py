"""
Services package for the tournament synchronization engine.
"""

from .base import BackoffPolicy, BaseService
from .calendar import CalendarService
from .score_ledger import ScoreLedgerService
from .registration import RegistrationService
from .tournament import TournamentService
from .reconciliation import ReconciliationScheduler
from .diagnostics import DiagnosticService

__all__ = [
    'BackoffPolicy', 'BaseService', 'CalendarService', 'ScoreLedgerService',
    'RegistrationService', 'TournamentService', 'ReconciliationScheduler', 'DiagnosticService',
]
