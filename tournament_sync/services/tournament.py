"""
Tournament Service

Receives raw match outcomes (winner wallet, loser wallet) from the game layer
and turns them into Score Ledger increments. It knows nothing about game
rules; it only applies the weekly points policy to registered players.
"""

from typing import Dict, List, Optional

from tournament_sync.constants import ScoringConstants
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.phase_clock import Moment, Phase, phase_of, utc_now
from tournament_sync.services.registration import RegistrationService
from tournament_sync.services.score_ledger import ScoreLedgerService, normalize_address
from tournament_sync.utils.logger import setup_logger

logger = setup_logger(__name__)


class TournamentService:
    """Applies the win/participation points policy to finalized matches."""

    def __init__(self, calendar: CalendarService, ledger: ScoreLedgerService,
                 registration: RegistrationService):
        self.calendar = calendar
        self.ledger = ledger
        self.registration = registration

    async def process_match_result(self, week: int, winner: Optional[str], loser: Optional[str],
                                   now: Optional[Moment] = None) -> Dict[str, int]:
        """
        Award points for one finalized match.

        Results only count while the week is in point collection, and only for
        players registered for the week; anything else is ignored.

        Args:
            week: Tournament week the match belongs to
            winner: Winner wallet (+3 points)
            loser: Loser wallet (+1 participation point)
            now: Decision time, defaults to the engine clock

        Returns:
            Dict of wallet -> new weekly total for every wallet that was credited

        Raises:
            InvalidPlayerAddress: If either wallet is malformed; nothing is credited
        """
        winner = normalize_address(winner) if winner else None
        loser = normalize_address(loser) if loser else None

        schedule = await self.calendar.get_week(week)
        phase = phase_of(schedule, now if now is not None else utc_now())
        if phase != Phase.POINT_COLLECTION:
            logger.info(f"Ignoring match result for week {week}: phase is {phase.value}")
            return {}

        if not winner:
            logger.error(f"Winner wallet missing for a week {week} match; winner points not recorded")

        awarded: Dict[str, int] = {}
        for wallet, points in ((winner, ScoringConstants.WIN_POINTS), (loser, ScoringConstants.LOSS_POINTS)):
            if not wallet:
                continue
            if not await self.registration.is_registered(wallet, week):
                logger.warning(f"{wallet} is not registered for week {week}; +{points} not recorded")
                continue
            awarded[wallet] = await self.ledger.record_result(wallet, week, points)
            logger.info(f"Awarded +{points} to {wallet} (week {week})")

        return awarded

    async def room_standings(self, week: int) -> List[Dict]:
        """Per-room standings for a week, highest score first within each room."""
        totals = await self.ledger.snapshot(week)
        standings = []
        for room_id, players in sorted((await self.registration.rooms(week)).items()):
            board = sorted(
                ({'wallet': p, 'score': totals.get(p, 0)} for p in players),
                key=lambda entry: (-entry['score'], entry['wallet'])
            )
            standings.append({'roomId': room_id, 'players': board})
        return standings
