"""
Reconciliation Scheduler

Drives every tournament week through the sync state machine:

    idle -> computing -> submitting -> confirming -> {synced, partial_failure}

A pass is started by the timer (weeks in point collection or ended) or by an
explicit resync. Both funnel into reconcile_week(), which holds a per-week
lock so passes for the same week never overlap. The lock is backed by a claim
on the week's `week_sync_status` row, so a resync from another process (the
operator CLI) waits for the daemon's pass instead of racing it. Every pass
recomputes the delta set from the current ledger and chain state, so
re-running a pass is always safe and is the repair mechanism after any failure.

The timer is an APScheduler interval job; a tick that is still running when
the next one is due is coalesced rather than stacked.
"""

import asyncio
import hashlib
import json
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from weakref import WeakValueDictionary

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from tournament_sync.config import Config
from tournament_sync.database.models import ReconciliationState, SyncState, WeekSyncStatus
from tournament_sync.services.base import BackoffPolicy, BaseService
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.chain_gateway import ConfirmationStatus
from tournament_sync.services.phase_clock import Moment, Phase, ensure_utc, phase_of, utc_now
from tournament_sync.services.score_ledger import ScoreLedgerService, is_valid_address
from tournament_sync.utils.logger import setup_logger
from tournament_sync.utils.sync_exceptions import (
    AuthorizationError, ChainError, ChainRevert, ChainUnavailable,
    ConfirmationTimeout, InvalidPlayerAddress, OnChainAheadError, SyncException
)

logger = setup_logger(__name__)

TIMER = "timer"
MANUAL = "manual"
TICK_JOB_ID = "reconciliation_tick"

# Failures that need a human before the timer may try again
OPERATOR_ERRORS = (AuthorizationError, ChainRevert, ConfirmationTimeout, OnChainAheadError, InvalidPlayerAddress)
UNEXPECTED_ERROR = "UnexpectedError"


@dataclass
class SyncJob:
    """One pass worth of absolute targets for a week. Never persisted."""
    week: int
    entries: Dict[str, int]
    idempotency_key: str = ''
    attempts: int = 0
    tx_hashes: List[str] = field(default_factory=list)
    synced: List[str] = field(default_factory=list)
    outcome: Optional['SyncOutcome'] = None

    def __post_init__(self):
        if not self.idempotency_key:
            self.idempotency_key = self.compute_key(self.week, self.entries)

    @staticmethod
    def compute_key(week: int, entries: Dict[str, int]) -> str:
        canonical = json.dumps(sorted(entries.items()), separators=(',', ':'))
        return hashlib.sha256(f"{week}:{canonical}".encode()).hexdigest()

    def chunks(self, size: int) -> List[List[Tuple[str, int]]]:
        items = sorted(self.entries.items())
        return [items[i:i + size] for i in range(0, len(items), size)]

    @property
    def unsynced(self) -> List[str]:
        return [player for player in sorted(self.entries) if player not in self.synced]


@dataclass
class SyncOutcome:
    """Terminal result of one reconciliation pass."""
    week: int
    state: ReconciliationState
    trigger: str
    chain_writes: int = 0
    attempts: int = 0
    error_kind: Optional[str] = None
    last_error: Optional[str] = None
    requires_operator: bool = False
    idempotency_key: Optional[str] = None
    tx_hashes: List[str] = field(default_factory=list)
    synced_players: List[str] = field(default_factory=list)
    failed_players: List[str] = field(default_factory=list)
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return self.state == ReconciliationState.SYNCED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'week': self.week,
            'state': self.state.value,
            'trigger': self.trigger,
            'chain_writes': self.chain_writes,
            'attempts': self.attempts,
            'error_kind': self.error_kind,
            'last_error': self.last_error,
            'requires_operator': self.requires_operator,
            'idempotency_key': self.idempotency_key,
            'tx_hashes': list(self.tx_hashes),
            'synced_players': list(self.synced_players),
            'failed_players': list(self.failed_players),
            'finished_at': self.finished_at.isoformat(),
        }


class ReconciliationScheduler(BaseService):
    """Timer job and per-week state machine that settles ledger totals on-chain."""

    def __init__(self, session_factory, calendar: CalendarService, ledger: ScoreLedgerService,
                 gateway, policy: Optional[BackoffPolicy] = None,
                 max_batch_size: Optional[int] = None,
                 confirm_timeout: Optional[float] = None,
                 confirm_max_cycles: Optional[int] = None,
                 poll_interval: Optional[float] = None,
                 auto_advance: Optional[bool] = None,
                 lease_seconds: Optional[float] = None,
                 lease_poll_interval: Optional[float] = None):
        super().__init__(session_factory)
        self.calendar = calendar
        self.ledger = ledger
        self.gateway = gateway
        self.policy = policy or BackoffPolicy.from_config()
        self.max_batch_size = max_batch_size or Config.SYNC_MAX_BATCH_SIZE
        self.confirm_timeout = confirm_timeout if confirm_timeout is not None else Config.SYNC_CONFIRM_TIMEOUT_SECONDS
        self.confirm_max_cycles = confirm_max_cycles or Config.SYNC_CONFIRM_MAX_CYCLES
        self.poll_interval = poll_interval if poll_interval is not None else Config.SYNC_POLL_INTERVAL_SECONDS
        self.auto_advance = Config.SYNC_AUTO_ADVANCE_WEEK if auto_advance is None else auto_advance
        self.lease_seconds = lease_seconds if lease_seconds is not None else Config.SYNC_LEASE_SECONDS
        self.lease_poll_interval = (lease_poll_interval if lease_poll_interval is not None
                                    else Config.SYNC_LEASE_POLL_SECONDS)

        # Identifies this process's claims in week_sync_status
        self.owner_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self._week_locks: "WeakValueDictionary[int, asyncio.Lock]" = WeakValueDictionary()
        self._states: Dict[int, ReconciliationState] = {}
        self._last_outcomes: Dict[int, SyncOutcome] = {}
        self._phases: Dict[int, Phase] = {}
        self._in_flight: Dict[int, asyncio.Task] = {}
        self._advanced_weeks = set()

        self._timer: Optional[AsyncIOScheduler] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._running = False
        self._last_tick_at: Optional[datetime] = None

    def _lock_for(self, week: int) -> asyncio.Lock:
        lock = self._week_locks.get(week)
        if lock is None:
            lock = self._week_locks[week] = asyncio.Lock()
        return lock

    def _set_state(self, week: int, state: ReconciliationState):
        previous = self._states.get(week, ReconciliationState.IDLE)
        self._states[week] = state
        if previous != state:
            logger.info(f"Week {week}: {previous.value} -> {state.value}")

    def _forget(self, week: int):
        """Drop in-memory bookkeeping for a settled week; its outcome stays persisted."""
        self._states.pop(week, None)
        self._last_outcomes.pop(week, None)
        self._phases.pop(week, None)
        self._advanced_weeks.discard(week)

    def current_state(self, week: int) -> ReconciliationState:
        return self._states.get(week, ReconciliationState.IDLE)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[Moment] = None) -> List[asyncio.Task]:
        """
        Start a reconciliation task for every eligible week.

        Weeks already being reconciled are left alone. Ended weeks that are
        fully settled are skipped and dropped from the in-memory maps.
        Returns the tasks that were started so callers can await them.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        self._last_tick_at = now
        started = []

        for schedule in await self.calendar.list_weeks():
            week = schedule.week
            phase = phase_of(schedule, now)
            previous = self._phases.get(week)
            if previous != phase:
                self._phases[week] = phase
                if previous is not None:
                    logger.info(f"Week {week} phase changed: {previous.value} -> {phase.value}")

            if phase not in (Phase.POINT_COLLECTION, Phase.ENDED):
                continue
            if week in self._in_flight:
                logger.debug(f"Week {week} already reconciling, skipping tick")
                continue

            status = await self.get_persisted_status(week)
            if status is not None and status.requires_operator:
                logger.debug(f"Week {week} waits for operator ({status.error_kind}), timer skips it")
                continue
            if phase == Phase.ENDED and await self._is_settled(week, status):
                self._forget(week)
                continue

            task = asyncio.create_task(self.reconcile_week(week, TIMER, now))
            self._in_flight[week] = task
            task.add_done_callback(lambda t, week=week: self._on_task_done(week, t))
            started.append(task)

        return started

    async def run_once(self, now: Optional[Moment] = None) -> List[SyncOutcome]:
        """One tick, waiting for every started pass to finish."""
        tasks = await self.tick(now)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    def _on_task_done(self, week: int, task: asyncio.Task):
        if self._in_flight.get(week) is task:
            del self._in_flight[week]
        if task.cancelled():
            logger.warning(f"Reconciliation of week {week} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Reconciliation of week {week} crashed: {error!r}", exc_info=error)

    async def _is_settled(self, week: int, status: Optional[WeekSyncStatus]) -> bool:
        return (status is not None and status.state == ReconciliationState.SYNCED
                and not await self.ledger.has_unsynced(week))

    async def _scheduled_tick(self):
        """APScheduler job body. The tick is shielded so shutdown never cuts it short."""
        self._tick_task = asyncio.ensure_future(self.tick())
        try:
            await asyncio.shield(self._tick_task)
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)

    def start(self):
        """Start the interval job on the running event loop. The first tick runs immediately."""
        if self._timer is not None and self._timer.running:
            return
        self._timer = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone=pytz.utc)
        self._timer.add_job(
            self._scheduled_tick,
            IntervalTrigger(seconds=self.poll_interval),
            id=TICK_JOB_ID,
            name='Reconcile tournament weeks',
            max_instances=1,
            coalesce=True,
            next_run_time=utc_now(),
        )
        self._timer.start()
        self._running = True
        logger.info(f"Reconciliation scheduler started, polling every {self.poll_interval}s")

    async def stop(self):
        """Stop the timer and wait for in-flight passes to reach a terminal state."""
        logger.info("Stopping reconciliation scheduler...")
        if self._timer is not None and self._timer.running:
            self._timer.shutdown(wait=True)
        self._timer = None
        if self._tick_task is not None and not self._tick_task.done():
            await asyncio.gather(self._tick_task, return_exceptions=True)
        await self._drain()
        self._running = False
        logger.info("Reconciliation scheduler stopped")

    async def _drain(self):
        tasks = list(self._in_flight.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} in-flight reconciliation(s)")
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Cross-process week claim
    # ------------------------------------------------------------------

    async def _try_claim(self, week: int) -> bool:
        """Conditionally take the week's claim: free, already ours, or expired."""
        now = utc_now()
        expired_before = now - timedelta(seconds=self.lease_seconds)
        async with self.get_session() as session:
            if await session.get(WeekSyncStatus, week) is None:
                session.add(WeekSyncStatus(week=week, state=ReconciliationState.IDLE))
                try:
                    await session.flush()
                except IntegrityError:
                    # Row created by another process first
                    await session.rollback()

            result = await session.execute(
                update(WeekSyncStatus)
                .where(
                    WeekSyncStatus.week == week,
                    or_(
                        WeekSyncStatus.claimed_by.is_(None),
                        WeekSyncStatus.claimed_by == self.owner_id,
                        WeekSyncStatus.claimed_at < expired_before,
                    )
                )
                .values(claimed_by=self.owner_id, claimed_at=now)
            )
            return result.rowcount == 1

    async def _claim_week(self, week: int):
        """Wait until this process holds the week. A dead holder's claim expires after lease_seconds."""
        announced = False
        while not await self._try_claim(week):
            if not announced:
                logger.info(f"Week {week} is being reconciled by another process, waiting")
                announced = True
            await asyncio.sleep(self.lease_poll_interval)

    async def _release_week(self, week: int):
        async with self.get_session() as session:
            await session.execute(
                update(WeekSyncStatus)
                .where(WeekSyncStatus.week == week, WeekSyncStatus.claimed_by == self.owner_id)
                .values(claimed_by=None, claimed_at=None)
            )

    # ------------------------------------------------------------------
    # Reconciliation pass
    # ------------------------------------------------------------------

    async def force_resync(self, week: int) -> SyncOutcome:
        """Run a pass now, ignoring the timer and any requires-operator flag."""
        logger.info(f"Manual resync requested for week {week}")
        return await self.reconcile_week(week, MANUAL)

    async def reconcile_week(self, week: int, trigger: str = MANUAL,
                             now: Optional[Moment] = None) -> SyncOutcome:
        """
        Run one reconciliation pass for `week` to a terminal state.

        Raises:
            WeekNotFoundError: If the week is not scheduled
        """
        async with self._lock_for(week):
            schedule = await self.calendar.get_week(week)
            phase = phase_of(schedule, now if now is not None else utc_now())
            await self._claim_week(week)
            try:
                try:
                    outcome = await self._run_pass(week, phase, trigger)
                except Exception:
                    self._set_state(week, ReconciliationState.IDLE)
                    raise
                self._set_state(week, outcome.state)
                self._last_outcomes[week] = outcome
                await self._record_outcome(outcome)

                if outcome.succeeded and self.auto_advance and phase == Phase.ENDED:
                    await self._maybe_advance_week(week)
                return outcome
            finally:
                await self._release_week(week)

    async def _run_pass(self, week: int, phase: Phase, trigger: str) -> SyncOutcome:
        self._set_state(week, ReconciliationState.COMPUTING)
        job = None
        ahead: List[str] = []
        invalid: List[str] = []
        try:
            entries, ahead, invalid = await self._compute_delta(week, phase)
            if entries:
                job = SyncJob(week=week, entries=entries)
                await self._submit_job(job)
            if ahead:
                raise OnChainAheadError(week, ahead)
            if invalid:
                raise InvalidPlayerAddress(invalid, week)
        except SyncException as e:
            return self._failure(week, trigger, job, e, extra_failed=ahead + invalid)
        except Exception as e:
            logger.error(f"Week {week} reconciliation hit an unexpected error: {e!r}", exc_info=True)
            return self._failure(week, trigger, job, e, extra_failed=ahead + invalid)

        outcome = SyncOutcome(
            week=week,
            state=ReconciliationState.SYNCED,
            trigger=trigger,
            chain_writes=len(job.tx_hashes) if job else 0,
            attempts=job.attempts if job else 0,
            idempotency_key=job.idempotency_key if job else None,
            tx_hashes=list(job.tx_hashes) if job else [],
            synced_players=list(job.synced) if job else [],
        )
        if job:
            job.outcome = outcome
            logger.info(f"Week {week} synced: {len(job.synced)} player(s) in {len(job.tx_hashes)} write(s)")
        else:
            logger.info(f"Week {week} already in sync, no chain write needed")
        return outcome

    def _failure(self, week: int, trigger: str, job: Optional[SyncJob], error: Exception,
                 extra_failed: Optional[List[str]] = None) -> SyncOutcome:
        failed = list(job.unsynced) if job else []
        for player in extra_failed or []:
            if player not in failed:
                failed.append(player)

        if isinstance(error, SyncException):
            kind, message = error.kind, str(error)
            requires_operator = isinstance(error, OPERATOR_ERRORS)
        else:
            # Unknown failures repeat on every tick until someone looks at them
            kind, message = UNEXPECTED_ERROR, f"{type(error).__name__}: {error}"
            requires_operator = True

        outcome = SyncOutcome(
            week=week,
            state=ReconciliationState.PARTIAL_FAILURE,
            trigger=trigger,
            chain_writes=len(job.tx_hashes) if job else 0,
            attempts=job.attempts if job else 0,
            error_kind=kind,
            last_error=message,
            requires_operator=requires_operator,
            idempotency_key=job.idempotency_key if job else None,
            tx_hashes=list(job.tx_hashes) if job else [],
            synced_players=list(job.synced) if job else [],
            failed_players=failed,
        )
        if job:
            job.outcome = outcome
        logger.error(
            f"Week {week} reconciliation failed [{kind}]: {message} "
            f"(operator required: {requires_operator})"
        )
        return outcome

    async def _with_backoff(self, func: Callable[[], Awaitable[Any]], operation: str,
                            job: Optional[SyncJob] = None) -> Any:
        async def attempt():
            if job is not None:
                job.attempts += 1
            return await func()
        return await self.execute_with_retry(attempt, self.policy, (ChainUnavailable,), operation)

    async def _compute_delta(self, week: int, phase: Phase) -> Tuple[Dict[str, int], List[str], List[str]]:
        """
        Compare ledger totals with on-chain records.

        Returns:
            (player -> absolute target for players behind on-chain,
             players whose on-chain score is ahead of the ledger,
             ledger rows that are not wallet addresses)
        """
        check = await self._with_backoff(self.gateway.verify_signer, 'verifySigner')
        if not check.is_match:
            raise AuthorizationError(check.configured_address, check.contract_authorized_address)

        snapshot = await self.ledger.snapshot(week)
        states = {row.player_address: row.sync_state for row in await self.ledger.get_rows(week)}

        if phase == Phase.POINT_COLLECTION:
            chain_week = await self._with_backoff(self.gateway.get_current_week, 'currentWeek')
            if chain_week != week:
                logger.warning(f"Week {week} is collecting points but the contract is on week {chain_week}")

        entries: Dict[str, int] = {}
        ahead: List[str] = []
        invalid: List[str] = []
        for player, off_chain in sorted(snapshot.items()):
            if not is_valid_address(player):
                logger.error(f"Week {week}: ledger row {player!r} is not a wallet address, leaving it unsynced")
                invalid.append(player)
                continue

            record = await self._with_backoff(
                lambda p=player: self.gateway.get_player_record(p, week), 'getPlayerScore'
            )
            on_chain = record.score if record.present else 0

            if off_chain > on_chain:
                entries[player] = off_chain
            elif off_chain == on_chain:
                if states.get(player) != SyncState.CLEAN:
                    await self.ledger.mark_sync_state(player, week, SyncState.CLEAN, synced_score=on_chain)
            else:
                logger.error(f"Week {week}: on-chain score {on_chain} for {player} exceeds ledger {off_chain}")
                ahead.append(player)
                await self.ledger.mark_sync_state(player, week, SyncState.FAILED)

        logger.info(
            f"Week {week}: {len(entries)} player(s) to sync, {len(ahead)} ahead on-chain, "
            f"{len(invalid)} malformed"
        )
        return entries, ahead, invalid

    async def _submit_job(self, job: SyncJob):
        try:
            for chunk in job.chunks(self.max_batch_size):
                self._set_state(job.week, ReconciliationState.SUBMITTING)
                tx_hash = await self._with_backoff(
                    lambda c=chunk: self.gateway.submit_score_batch(job.week, c), 'setScores', job
                )
                job.tx_hashes.append(tx_hash)

                self._set_state(job.week, ReconciliationState.CONFIRMING)
                confirmation = await self._confirm(tx_hash)
                if confirmation.status == ConfirmationStatus.REVERTED:
                    raise ChainRevert('setScores', f"transaction {tx_hash} reverted on-chain")

                for player, target in chunk:
                    await self.ledger.mark_sync_state(player, job.week, SyncState.CLEAN, synced_score=target)
                    job.synced.append(player)
        except ChainError:
            for player in job.unsynced:
                await self.ledger.mark_sync_state(player, job.week, SyncState.FAILED)
            raise

    async def _confirm(self, tx_hash: str):
        for cycle in range(self.confirm_max_cycles):
            try:
                confirmation = await self.gateway.confirm_transaction(tx_hash, self.confirm_timeout)
            except ChainUnavailable as e:
                logger.warning(f"Confirmation poll {cycle + 1} for {tx_hash} failed: {e}")
                await self._sleep(self.policy.delay_for(cycle))
                continue
            if confirmation.status != ConfirmationStatus.TIMED_OUT:
                return confirmation
            logger.warning(f"Transaction {tx_hash} still pending after poll {cycle + 1}/{self.confirm_max_cycles}")
        raise ConfirmationTimeout(tx_hash, self.confirm_max_cycles)

    async def _maybe_advance_week(self, week: int):
        if week in self._advanced_weeks:
            return
        try:
            chain_week = await self._with_backoff(self.gateway.get_current_week, 'currentWeek')
            if chain_week != week:
                return
            tx_hash = await self._with_backoff(self.gateway.start_new_week, 'startNewWeek')
            self._advanced_weeks.add(week)
            logger.info(f"Advanced contract past week {week}: {tx_hash}")
        except ChainError as e:
            logger.error(f"Could not advance contract past week {week}: {e}")

    # ------------------------------------------------------------------
    # Persistence and status
    # ------------------------------------------------------------------

    async def _record_outcome(self, outcome: SyncOutcome):
        async with self.get_session() as session:
            status = await session.get(WeekSyncStatus, outcome.week)
            if status is None:
                status = WeekSyncStatus(week=outcome.week)
                session.add(status)
            status.state = outcome.state
            status.error_kind = outcome.error_kind
            status.last_error = outcome.last_error
            status.requires_operator = outcome.requires_operator
            status.idempotency_key = outcome.idempotency_key
            status.last_tx_hash = outcome.tx_hashes[-1] if outcome.tx_hashes else status.last_tx_hash
            status.chain_writes = outcome.chain_writes
            status.attempts = outcome.attempts
            status.trigger = outcome.trigger
            status.updated_at = outcome.finished_at
            if outcome.succeeded:
                status.last_synced_at = outcome.finished_at

    async def get_persisted_status(self, week: int) -> Optional[WeekSyncStatus]:
        async with self.get_session() as session:
            result = await session.execute(select(WeekSyncStatus).where(WeekSyncStatus.week == week))
            return result.scalar_one_or_none()

    def scheduler_status(self) -> Dict[str, Any]:
        job = self._timer.get_job(TICK_JOB_ID) if self._timer is not None else None
        return {
            'running': self._running,
            'lastTickAt': self._last_tick_at.isoformat() if self._last_tick_at else None,
            'nextRunAt': job.next_run_time.isoformat() if job and job.next_run_time else None,
            'pollIntervalSeconds': self.poll_interval,
            'phases': {week: phase.value for week, phase in sorted(self._phases.items())},
            'inFlight': sorted(self._in_flight),
            'states': {week: state.value for week, state in sorted(self._states.items())},
            'lastOutcomes': {week: o.to_dict() for week, o in sorted(self._last_outcomes.items())},
        }
