"""
Score Ledger Service

Off-chain authoritative store of per-player, per-week accumulated scores.

Match results increment `off_chain_score`; the reconciliation scheduler owns
the sync bookkeeping fields (`last_synced_score`, `sync_state`,
`last_sync_attempt_at`). Rows are append-only per week and never deleted.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from weakref import WeakValueDictionary

from sqlalchemy import select, update, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from web3 import Web3

from tournament_sync.database.models import PlayerWeekScore, SyncState
from tournament_sync.services.base import BaseService
from tournament_sync.services.phase_clock import utc_now
from tournament_sync.utils.logger import setup_logger
from tournament_sync.utils.sync_exceptions import InvalidDelta, InvalidPlayerAddress

logger = setup_logger(__name__)


def is_valid_address(player) -> bool:
    """True for a 0x-prefixed 20-byte hex wallet address, in any letter case."""
    if not isinstance(player, str):
        return False
    address = player.strip().lower()
    return address.startswith('0x') and Web3.is_address(address)


def normalize_address(player: str) -> str:
    """
    Wallet addresses are stored lowercase so lookups are case-insensitive.

    Raises:
        InvalidPlayerAddress: If `player` is not a wallet address
    """
    if not is_valid_address(player):
        raise InvalidPlayerAddress([player])
    return player.strip().lower()


class ScoreLedgerService(BaseService):
    """Service for recording match results and reading weekly totals."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        # One lock per (player, week): same-key increments serialize, others run concurrently.
        # Entries vanish once no caller holds or awaits the lock.
        self._key_locks: "WeakValueDictionary[Tuple[str, int], asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, address: str, week: int) -> asyncio.Lock:
        key = (address, week)
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def record_result(self, player: str, week: int, delta: int) -> int:
        """
        Atomically add `delta` to a player's weekly score.

        Args:
            player: Wallet address
            week: Tournament week
            delta: Non-negative integer increment

        Returns:
            The player's new off-chain total for the week

        Raises:
            InvalidDelta: If delta is negative or not an integer
            InvalidPlayerAddress: If player is not a wallet address
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
            raise InvalidDelta(delta)

        address = normalize_address(player)
        async with self._lock_for(address, week):
            async with self.get_session() as session:
                new_score = await self._increment(session, address, week, delta)

        logger.debug(f"Recorded +{delta} for {address} in week {week}, total {new_score}")
        return new_score

    async def _increment(self, session: AsyncSession, address: str, week: int, delta: int) -> int:
        if await self._apply_increment(session, address, week, delta):
            return await self._read_score(session, address, week)

        session.add(PlayerWeekScore(
            player_address=address,
            week=week,
            off_chain_score=delta,
            sync_state=SyncState.PENDING,
        ))
        try:
            await session.flush()
        except IntegrityError:
            # Row created by another writer between our UPDATE and INSERT
            await session.rollback()
            await self._apply_increment(session, address, week, delta)
        return await self._read_score(session, address, week)

    async def _apply_increment(self, session: AsyncSession, address: str, week: int, delta: int) -> bool:
        values = {'off_chain_score': PlayerWeekScore.off_chain_score + delta}
        if delta > 0:
            values['sync_state'] = SyncState.PENDING
        result = await session.execute(
            update(PlayerWeekScore)
            .where(PlayerWeekScore.player_address == address, PlayerWeekScore.week == week)
            .values(**values)
        )
        return result.rowcount > 0

    async def _read_score(self, session: AsyncSession, address: str, week: int) -> int:
        result = await session.execute(
            select(PlayerWeekScore.off_chain_score).where(
                PlayerWeekScore.player_address == address,
                PlayerWeekScore.week == week
            )
        )
        return result.scalar_one()

    async def snapshot(self, week: int) -> Dict[str, int]:
        """Point-in-time read of every player's total for the week."""
        async with self.get_session() as session:
            result = await session.execute(
                select(PlayerWeekScore.player_address, PlayerWeekScore.off_chain_score)
                .where(PlayerWeekScore.week == week)
            )
            return {address: score for address, score in result.all()}

    async def mark_sync_state(self, player: str, week: int, state: SyncState,
                              synced_score: Optional[int] = None,
                              attempted_at: Optional[datetime] = None) -> bool:
        """
        Update sync bookkeeping for a player. Never touches `off_chain_score`.

        A `clean` mark only sticks when the confirmed score still equals the
        off-chain total; results recorded since the snapshot keep the row
        `pending` for the next pass.

        Returns:
            False if the row does not exist
        """
        address = normalize_address(player)
        async with self._lock_for(address, week):
            async with self.get_session() as session:
                result = await session.execute(
                    select(PlayerWeekScore).where(
                        PlayerWeekScore.player_address == address,
                        PlayerWeekScore.week == week
                    ).with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    logger.warning(f"No ledger row for {address} in week {week}, cannot mark {state.value}")
                    return False

                row.last_sync_attempt_at = attempted_at or utc_now()
                if synced_score is not None:
                    row.last_synced_score = synced_score

                if state == SyncState.CLEAN and synced_score is not None and row.off_chain_score != synced_score:
                    row.sync_state = SyncState.PENDING
                else:
                    row.sync_state = state
        return True

    async def get_rows(self, week: int) -> List[PlayerWeekScore]:
        async with self.get_session() as session:
            result = await session.execute(
                select(PlayerWeekScore)
                .where(PlayerWeekScore.week == week)
                .order_by(PlayerWeekScore.player_address)
            )
            return list(result.scalars().all())

    async def has_unsynced(self, week: int) -> bool:
        """True if any row for the week is pending or failed."""
        async with self.get_session() as session:
            result = await session.execute(
                select(exists().where(
                    PlayerWeekScore.week == week,
                    PlayerWeekScore.sync_state != SyncState.CLEAN
                ))
            )
            return bool(result.scalar())

    async def leaderboard(self, week: int, limit: Optional[int] = None) -> List[Dict]:
        """Players sorted by weekly score, highest first."""
        async with self.get_session() as session:
            stmt = (
                select(PlayerWeekScore.player_address, PlayerWeekScore.off_chain_score)
                .where(PlayerWeekScore.week == week)
                .order_by(PlayerWeekScore.off_chain_score.desc(), PlayerWeekScore.player_address)
            )
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [{'wallet': address, 'score': score} for address, score in result.all()]
