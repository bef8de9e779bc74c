"""
Diagnostic Service

Operator-facing read and repair surface over the synchronization engine.
Holds no logic of its own beyond assembling status dictionaries; the CLI and
any UI layer call into it.
"""

from typing import Any, Dict, Optional

from tournament_sync.database.models import ReconciliationState
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.phase_clock import Moment, phase_of, tournament_status, utc_now
from tournament_sync.services.reconciliation import ReconciliationScheduler, SyncOutcome
from tournament_sync.services.score_ledger import ScoreLedgerService
from tournament_sync.utils.logger import setup_logger

logger = setup_logger(__name__)


class DiagnosticService:
    """Status dumps, forced resync and signer checks for operators."""

    def __init__(self, calendar: CalendarService, ledger: ScoreLedgerService,
                 scheduler: ReconciliationScheduler, gateway=None):
        self.calendar = calendar
        self.ledger = ledger
        self.scheduler = scheduler
        self.gateway = gateway if gateway is not None else scheduler.gateway

    async def get_week_sync_status(self, week: int, now: Optional[Moment] = None) -> Dict[str, Any]:
        """
        Full sync picture for a week.

        The reconciliation state is the in-memory state while a pass is
        running, otherwise the last persisted outcome, otherwise idle.

        Raises:
            WeekNotFoundError: If the week is not scheduled
        """
        schedule = await self.calendar.get_week(week)
        phase = phase_of(schedule, now if now is not None else utc_now())

        state = self.scheduler.current_state(week)
        persisted = await self.scheduler.get_persisted_status(week)
        if state == ReconciliationState.IDLE and persisted is not None:
            state = persisted.state

        rows = await self.ledger.get_rows(week)
        return {
            'week': week,
            'phase': phase.value,
            'state': state.value,
            'last_error': persisted.last_error if persisted else None,
            'error_kind': persisted.error_kind if persisted else None,
            'requires_operator': persisted.requires_operator if persisted else False,
            'claimed_by': persisted.claimed_by if persisted else None,
            'last_tx_hash': persisted.last_tx_hash if persisted else None,
            'last_synced_at': persisted.last_synced_at.isoformat() if persisted and persisted.last_synced_at else None,
            'players': [row.to_dict() for row in rows],
        }

    async def force_resync(self, week: int) -> SyncOutcome:
        logger.info(f"Operator forced resync of week {week}")
        return await self.scheduler.force_resync(week)

    async def check_signer_authorization(self):
        return await self.gateway.verify_signer()

    async def tournament_status(self, week: int, now: Optional[Moment] = None) -> Dict[str, Any]:
        schedule = await self.calendar.get_week(week)
        return tournament_status(schedule, now if now is not None else utc_now())

    def scheduler_status(self) -> Dict[str, Any]:
        return self.scheduler.scheduler_status()

    async def chain_week(self) -> int:
        return await self.gateway.get_current_week()
