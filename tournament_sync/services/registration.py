"""
Registration Service

Players join a tournament week while it is in registration by presenting the
ticket purchase transaction. Each entry is seated in a room in join order,
PLAYERS_PER_ROOM to a room. Only registered players earn points for the week.
"""

import asyncio
from typing import Dict, List, Optional
from weakref import WeakValueDictionary

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from tournament_sync.config import Config
from tournament_sync.constants import RegistrationConstants
from tournament_sync.database.models import TournamentEntry
from tournament_sync.services.base import BaseService
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.phase_clock import Moment, Phase, phase_of, utc_now
from tournament_sync.services.score_ledger import normalize_address
from tournament_sync.utils.logger import setup_logger
from tournament_sync.utils.sync_exceptions import RegistrationClosedError, TicketVerificationError

logger = setup_logger(__name__)


def _mask(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


class RegistrationService(BaseService):
    """Week registration with ticket verification and room assignment."""

    def __init__(self, session_factory, calendar: CalendarService, gateway=None,
                 ticket_price_wei: Optional[int] = None,
                 players_per_room: int = RegistrationConstants.PLAYERS_PER_ROOM):
        super().__init__(session_factory)
        self.calendar = calendar
        self.gateway = gateway
        self.ticket_price_wei = ticket_price_wei if ticket_price_wei is not None else Config.TOURNAMENT_TICKET_PRICE_WEI
        self.players_per_room = players_per_room
        # Seat assignment is serialized per week
        self._week_locks: "WeakValueDictionary[int, asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, week: int) -> asyncio.Lock:
        lock = self._week_locks.get(week)
        if lock is None:
            lock = self._week_locks[week] = asyncio.Lock()
        return lock

    async def join_tournament(self, player: str, week: int, ticket_tx_hash: Optional[str] = None,
                              now: Optional[Moment] = None) -> Dict:
        """
        Register a player for a week and seat them in a room.

        Joining again returns the existing seat. Without a chain gateway the
        ticket is recorded but not verified.

        Args:
            player: Wallet address
            week: Tournament week
            ticket_tx_hash: Ticket purchase transaction
            now: Decision time, defaults to the engine clock

        Returns:
            {'week', 'roomId', 'isNew'}

        Raises:
            InvalidPlayerAddress: If player is not a wallet address
            WeekNotFoundError: If the week is not scheduled
            RegistrationClosedError: If the week is not in registration
            TicketVerificationError: If the ticket does not check out on-chain
        """
        address = normalize_address(player)
        schedule = await self.calendar.get_week(week)

        existing = await self.get_entry(address, week)
        if existing is not None:
            logger.info(f"{_mask(address)} rejoined week {week}, room {existing.room_id} (existing)")
            return {'week': week, 'roomId': existing.room_id, 'isNew': False}

        phase = phase_of(schedule, now if now is not None else utc_now())
        if phase != Phase.REGISTRATION:
            raise RegistrationClosedError(week, phase.value)

        await self._verify_ticket(address, ticket_tx_hash)

        async with self._lock_for(week):
            try:
                async with self.get_session() as session:
                    count = (await session.execute(
                        select(func.count(TournamentEntry.id)).where(TournamentEntry.week == week)
                    )).scalar_one()
                    room_id = count // self.players_per_room + 1
                    session.add(TournamentEntry(
                        player_address=address,
                        week=week,
                        room_id=room_id,
                        ticket_tx_hash=ticket_tx_hash,
                        joined_at=utc_now(),
                    ))
            except IntegrityError:
                # Joined through another process in the meantime
                existing = await self.get_entry(address, week)
                if existing is None:
                    raise
                return {'week': week, 'roomId': existing.room_id, 'isNew': False}

        logger.info(f"{_mask(address)} joined week {week}, room {room_id}")
        return {'week': week, 'roomId': room_id, 'isNew': True}

    async def _verify_ticket(self, address: str, ticket_tx_hash: Optional[str]):
        if self.gateway is None:
            logger.warning(f"No chain gateway; registering {_mask(address)} without ticket verification")
            return
        if not ticket_tx_hash:
            raise TicketVerificationError(address, ticket_tx_hash, "ticket transaction hash is required")

        async with self.get_session() as session:
            used = (await session.execute(
                select(TournamentEntry.player_address, TournamentEntry.week)
                .where(TournamentEntry.ticket_tx_hash == ticket_tx_hash)
            )).first()
        if used is not None:
            raise TicketVerificationError(
                address, ticket_tx_hash, f"ticket already used by {_mask(used[0])} in week {used[1]}"
            )

        reason = await self.gateway.verify_ticket_payment(ticket_tx_hash, address, self.ticket_price_wei)
        if reason:
            logger.error(f"Ticket {ticket_tx_hash} for {_mask(address)} rejected: {reason}")
            raise TicketVerificationError(address, ticket_tx_hash, reason)

    async def get_entry(self, player: str, week: int) -> Optional[TournamentEntry]:
        address = normalize_address(player)
        async with self.get_session() as session:
            result = await session.execute(
                select(TournamentEntry).where(
                    TournamentEntry.player_address == address,
                    TournamentEntry.week == week
                )
            )
            return result.scalar_one_or_none()

    async def is_registered(self, player: str, week: int) -> bool:
        return await self.get_entry(player, week) is not None

    async def rooms(self, week: int) -> Dict[int, List[str]]:
        """Room id -> wallets in join order."""
        async with self.get_session() as session:
            result = await session.execute(
                select(TournamentEntry.room_id, TournamentEntry.player_address)
                .where(TournamentEntry.week == week)
                .order_by(TournamentEntry.room_id, TournamentEntry.id)
            )
            rooms: Dict[int, List[str]] = {}
            for room_id, address in result.all():
                rooms.setdefault(room_id, []).append(address)
            return rooms
