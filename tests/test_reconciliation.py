import asyncio
import gc
from datetime import timedelta

import pytest
from sqlalchemy import update

from tournament_sync.database.models import PlayerWeekScore, ReconciliationState, SyncState, WeekSyncStatus
from tournament_sync.services.chain_gateway import ConfirmationStatus
from tournament_sync.services.phase_clock import utc_now
from tournament_sync.services.reconciliation import TICK_JOB_ID, SyncJob
from tournament_sync.utils.sync_exceptions import ChainRevert, ChainUnavailable, WeekNotFoundError

from conftest import (
    BASE_TIME, OTHER_SIGNER, PLAYER_A, PLAYER_B, PLAYER_C, collecting, ended, make_week
)


@pytest.fixture
def week_29():
    return make_week(29)


async def rows_by_player(ledger, week):
    return {row.player_address: row for row in await ledger.get_rows(week)}


# ----------------------------------------------------------------------
# End-to-end weeks
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_week_29_absent_on_chain_is_submitted(calendar, ledger, scheduler, gateway, diagnostics, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 150)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.SYNCED
    assert gateway.submit_calls == [(29, [(PLAYER_A, 150)])]
    assert gateway.score(PLAYER_A, 29) == 150
    assert outcome.chain_writes == 1

    status = await diagnostics.get_week_sync_status(29, now=ended(week_29))
    assert status['state'] == 'synced'
    assert status['phase'] == 'ended'
    assert status['last_tx_hash'] == outcome.tx_hashes[0]
    [player] = status['players']
    assert player['player'] == PLAYER_A
    assert player['sync_state'] == 'clean'
    assert player['last_synced_score'] == 150


@pytest.mark.asyncio
async def test_week_30_already_in_sync_needs_no_write(calendar, ledger, scheduler, gateway):
    week_30 = make_week(30, BASE_TIME + timedelta(days=7))
    await calendar.create_week(week_30)
    await ledger.record_result(PLAYER_A, 30, 200)
    gateway.set_score(PLAYER_A, 30, 200)

    outcome = await scheduler.reconcile_week(30, now=ended(week_30))

    assert outcome.state == ReconciliationState.SYNCED
    assert outcome.chain_writes == 0
    assert gateway.submit_calls == []
    row = (await rows_by_player(ledger, 30))[PLAYER_A]
    assert row.sync_state == SyncState.CLEAN
    assert row.last_synced_score == 200


@pytest.mark.asyncio
async def test_contract_revert_then_manual_resync(calendar, ledger, scheduler, gateway, diagnostics, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 150)
    gateway.submit_failures.append(ChainRevert('setScores', 'IncorrectBidAmount'))

    failed = await scheduler.reconcile_week(29, now=ended(week_29))

    assert failed.state == ReconciliationState.PARTIAL_FAILURE
    assert failed.error_kind == 'ChainRevert'
    assert 'IncorrectBidAmount' in failed.last_error
    assert failed.requires_operator
    assert failed.failed_players == [PLAYER_A]
    assert (await rows_by_player(ledger, 29))[PLAYER_A].sync_state == SyncState.FAILED
    assert len(gateway.submit_calls) == 1

    status = await diagnostics.get_week_sync_status(29)
    assert status['state'] == 'partial_failure'
    assert status['error_kind'] == 'ChainRevert'
    assert status['requires_operator'] is True

    # Timer leaves the week for the operator
    assert await scheduler.run_once(ended(week_29)) == []

    fixed = await diagnostics.force_resync(29)

    assert fixed.state == ReconciliationState.SYNCED
    assert fixed.trigger == 'manual'
    assert gateway.score(PLAYER_A, 29) == 150
    status = await diagnostics.get_week_sync_status(29)
    assert status['requires_operator'] is False
    assert status['players'][0]['sync_state'] == 'clean'


# ----------------------------------------------------------------------
# Idempotence and delta computation
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_pass_without_changes_writes_nothing(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_B, 29, 1)

    first = await scheduler.reconcile_week(29, now=collecting(week_29))
    second = await scheduler.reconcile_week(29, now=collecting(week_29))

    assert first.chain_writes == 1
    assert second.state == ReconciliationState.SYNCED
    assert second.chain_writes == 0
    assert len(gateway.submit_calls) == 1


@pytest.mark.asyncio
async def test_later_results_are_written_as_absolute_totals(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    await scheduler.reconcile_week(29, now=collecting(week_29))

    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_B, 29, 1)
    await scheduler.reconcile_week(29, now=collecting(week_29))

    assert gateway.submit_calls[-1] == (29, [(PLAYER_A, 6), (PLAYER_B, 1)])
    assert gateway.score(PLAYER_A, 29) == 6
    assert gateway.score(PLAYER_B, 29) == 1


@pytest.mark.asyncio
async def test_only_players_behind_on_chain_are_submitted(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 9)
    await ledger.record_result(PLAYER_B, 29, 4)
    gateway.set_score(PLAYER_A, 29, 9)
    gateway.set_score(PLAYER_B, 29, 1)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert gateway.submit_calls == [(29, [(PLAYER_B, 4)])]
    assert outcome.synced_players == [PLAYER_B]


@pytest.mark.asyncio
async def test_on_chain_ahead_is_excluded_and_escalated(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_B, 29, 4)
    gateway.set_score(PLAYER_A, 29, 10)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'OnChainAhead'
    assert outcome.requires_operator
    assert outcome.failed_players == [PLAYER_A]
    assert gateway.submit_calls == [(29, [(PLAYER_B, 4)])]
    assert gateway.score(PLAYER_A, 29) == 10

    rows = await rows_by_player(ledger, 29)
    assert rows[PLAYER_A].sync_state == SyncState.FAILED
    assert rows[PLAYER_B].sync_state == SyncState.CLEAN


@pytest.mark.asyncio
async def test_large_delta_is_split_into_batches(calendar, ledger, make_scheduler, gateway, week_29):
    scheduler = make_scheduler(max_batch_size=2)
    players = [f"0x{i:040x}" for i in range(1, 6)]
    await calendar.create_week(week_29)
    for player in players:
        await ledger.record_result(player, 29, 3)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.SYNCED
    assert [len(entries) for _, entries in gateway.submit_calls] == [2, 2, 1]
    assert outcome.chain_writes == 3
    assert all(gateway.score(p, 29) == 3 for p in players)


def test_sync_job_key_is_order_independent():
    first = SyncJob(week=29, entries={PLAYER_A: 3, PLAYER_B: 1})
    second = SyncJob(week=29, entries={PLAYER_B: 1, PLAYER_A: 3})
    other_week = SyncJob(week=30, entries={PLAYER_A: 3, PLAYER_B: 1})

    assert first.idempotency_key == second.idempotency_key
    assert first.idempotency_key != other_week.idempotency_key
    assert first.chunks(1) == [[(PLAYER_A, 3)], [(PLAYER_B, 1)]]


# ----------------------------------------------------------------------
# Failure handling
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_signer_mismatch_blocks_all_writes(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.authorized_address = OTHER_SIGNER

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'AuthorizationError'
    assert outcome.requires_operator
    assert gateway.submit_calls == []
    assert gateway.read_calls == 0


@pytest.mark.asyncio
async def test_transient_submit_failure_is_retried(calendar, ledger, scheduler, gateway, sleeps, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.submit_failures.append(ChainUnavailable('setScores', 'connection reset'))

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.SYNCED
    assert outcome.attempts == 2
    assert sleeps == [1.0]
    assert gateway.score(PLAYER_A, 29) == 3


@pytest.mark.asyncio
async def test_exhausted_backoff_stays_eligible_for_timer(calendar, ledger, scheduler, gateway, sleeps, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.submit_failures.extend(ChainUnavailable('setScores', 'timeout') for _ in range(3))

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'ChainUnavailable'
    assert not outcome.requires_operator
    assert len(gateway.submit_calls) == 3
    assert sleeps == [1.0, 2.0]

    [retry] = await scheduler.run_once(ended(week_29))
    assert retry.state == ReconciliationState.SYNCED
    assert retry.trigger == 'timer'
    assert gateway.score(PLAYER_A, 29) == 3


@pytest.mark.asyncio
async def test_transient_read_failure_is_retried(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.read_failures.append(ChainUnavailable('getPlayerScore', 'HTTP 503'))

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.SYNCED
    assert gateway.read_calls == 2


@pytest.mark.asyncio
async def test_slow_confirmation_is_polled_again(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.confirm_script.extend([
        ConfirmationStatus.TIMED_OUT,
        ChainUnavailable('waitForReceipt', 'connection refused'),
    ])

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.SYNCED
    assert len(gateway.confirm_calls) == 3
    assert len(gateway.submit_calls) == 1


@pytest.mark.asyncio
async def test_confirmation_timeout_escalates_then_resync_repairs(
        calendar, ledger, scheduler, gateway, diagnostics, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.confirm_script.extend([ConfirmationStatus.TIMED_OUT] * 3)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'ConfirmationTimeout'
    assert outcome.requires_operator
    assert await scheduler.run_once(ended(week_29)) == []

    # The transaction lands after the engine gave up
    gateway.set_score(PLAYER_A, 29, 3)
    repaired = await diagnostics.force_resync(29)

    assert repaired.state == ReconciliationState.SYNCED
    assert repaired.chain_writes == 0
    assert len(gateway.submit_calls) == 1
    row = (await rows_by_player(ledger, 29))[PLAYER_A]
    assert row.sync_state == SyncState.CLEAN
    assert row.last_synced_score == 3


@pytest.mark.asyncio
async def test_reverted_receipt_marks_players_failed(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.confirm_script.append(ConfirmationStatus.REVERTED)

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'ChainRevert'
    assert (await rows_by_player(ledger, 29))[PLAYER_A].sync_state == SyncState.FAILED
    assert gateway.score(PLAYER_A, 29) is None


@pytest.mark.asyncio
async def test_unknown_week_raises(scheduler):
    with pytest.raises(WeekNotFoundError):
        await scheduler.force_resync(404)


# ----------------------------------------------------------------------
# Timer, concurrency and shutdown
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_timer_only_picks_collecting_and_ended_weeks(calendar, ledger, scheduler, gateway):
    week_29 = make_week(29)
    week_30 = make_week(30, BASE_TIME + timedelta(days=7))
    await calendar.create_week(week_29)
    await calendar.create_week(week_30)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_A, 30, 1)

    outcomes = await scheduler.run_once(collecting(week_29))

    assert [o.week for o in outcomes] == [29]
    assert gateway.score(PLAYER_A, 30) is None
    assert scheduler.scheduler_status()['phases'] == {29: 'point_collection', 30: 'upcoming'}


@pytest.mark.asyncio
async def test_timer_skips_settled_ended_weeks(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)

    assert len(await scheduler.run_once(ended(week_29))) == 1
    assert await scheduler.run_once(ended(week_29)) == []

    # A late result makes the week eligible again
    await ledger.record_result(PLAYER_A, 29, 1)
    [outcome] = await scheduler.run_once(ended(week_29))
    assert outcome.state == ReconciliationState.SYNCED
    assert gateway.score(PLAYER_A, 29) == 4


@pytest.mark.asyncio
async def test_same_week_passes_are_serialized(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_B, 29, 1)

    first, second = await asyncio.gather(
        scheduler.reconcile_week(29, 'timer', ended(week_29)),
        scheduler.force_resync(29),
    )

    assert first.state == second.state == ReconciliationState.SYNCED
    assert len(gateway.submit_calls) == 1
    assert first.chain_writes + second.chain_writes == 1


@pytest.mark.asyncio
async def test_different_weeks_reconcile_in_one_tick(calendar, ledger, scheduler, gateway):
    week_29 = make_week(29)
    week_30 = make_week(30, BASE_TIME + timedelta(days=1))
    await calendar.create_week(week_29)
    await calendar.create_week(week_30)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_C, 30, 1)

    outcomes = await scheduler.run_once(ended(week_30))

    assert sorted(o.week for o in outcomes) == [29, 30]
    assert gateway.score(PLAYER_A, 29) == 3
    assert gateway.score(PLAYER_C, 30) == 1


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_passes(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)

    scheduler.start()
    job = scheduler._timer.get_job(TICK_JOB_ID)
    assert job.max_instances == 1
    assert job.coalesce is True
    assert scheduler.scheduler_status()['running'] is True

    for _ in range(200):
        if gateway.submit_calls:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    status = scheduler.scheduler_status()
    assert status['running'] is False
    assert status['inFlight'] == []
    assert status['nextRunAt'] is None
    assert status['lastTickAt'] is not None
    assert gateway.score(PLAYER_A, 29) == 3
    assert (await scheduler.get_persisted_status(29)).state == ReconciliationState.SYNCED


@pytest.mark.asyncio
async def test_stop_right_after_start_is_clean(calendar, scheduler):
    scheduler.start()
    scheduler.start()
    await scheduler.stop()

    assert scheduler.scheduler_status()['running'] is False
    await scheduler.stop()


@pytest.mark.asyncio
async def test_week_locks_and_settled_weeks_are_released(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)

    [outcome] = await scheduler.run_once(ended(week_29))
    assert outcome.state == ReconciliationState.SYNCED
    assert scheduler.scheduler_status()['states'] == {29: 'synced'}

    assert await scheduler.run_once(ended(week_29)) == []
    gc.collect()

    status = scheduler.scheduler_status()
    assert status['states'] == {}
    assert status['phases'] == {}
    assert status['lastOutcomes'] == {}
    assert len(scheduler._week_locks) == 0
    assert (await scheduler.get_persisted_status(29)).state == ReconciliationState.SYNCED


# ----------------------------------------------------------------------
# Unexpected and malformed input
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_malformed_ledger_row_does_not_block_the_week(
        database, calendar, ledger, scheduler, gateway, diagnostics, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 150)
    async with database.session_factory.begin() as session:
        session.add(PlayerWeekScore(player_address='alice', week=29, off_chain_score=3))

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'InvalidPlayerAddress'
    assert "'alice'" in outcome.last_error
    assert outcome.requires_operator
    assert outcome.synced_players == [PLAYER_A]
    assert outcome.failed_players == ['alice']
    assert gateway.score(PLAYER_A, 29) == 150
    assert gateway.read_calls == 1

    status = await diagnostics.get_week_sync_status(29)
    assert status['state'] == 'partial_failure'
    assert status['error_kind'] == 'InvalidPlayerAddress'
    assert await scheduler.run_once(ended(week_29)) == []


@pytest.mark.asyncio
async def test_unexpected_error_is_persisted_as_partial_failure(calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    gateway.read_failures.append(RuntimeError("decoder exploded"))

    outcome = await scheduler.reconcile_week(29, now=ended(week_29))

    assert outcome.state == ReconciliationState.PARTIAL_FAILURE
    assert outcome.error_kind == 'UnexpectedError'
    assert outcome.last_error == 'RuntimeError: decoder exploded'
    assert outcome.requires_operator
    assert scheduler.current_state(29) == ReconciliationState.PARTIAL_FAILURE

    persisted = await scheduler.get_persisted_status(29)
    assert persisted.state == ReconciliationState.PARTIAL_FAILURE
    assert persisted.last_error == 'RuntimeError: decoder exploded'
    assert persisted.claimed_by is None

    repaired = await scheduler.force_resync(29)
    assert repaired.state == ReconciliationState.SYNCED
    assert gateway.score(PLAYER_A, 29) == 3


# ----------------------------------------------------------------------
# Cross-process week claim
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_passes_from_separate_schedulers_are_serialized(calendar, ledger, make_scheduler, gateway, week_29):
    daemon = make_scheduler()
    operator = make_scheduler()
    assert daemon.owner_id != operator.owner_id
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    await ledger.record_result(PLAYER_B, 29, 1)

    first, second = await asyncio.gather(
        daemon.reconcile_week(29, 'timer', ended(week_29)),
        operator.force_resync(29),
    )

    assert first.state == second.state == ReconciliationState.SYNCED
    assert len(gateway.submit_calls) == 1
    assert first.chain_writes + second.chain_writes == 1
    assert (await daemon.get_persisted_status(29)).claimed_by is None


@pytest.mark.asyncio
async def test_live_claim_from_another_process_blocks_the_pass(
        database, calendar, ledger, scheduler, gateway, week_29):
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    async with database.session_factory.begin() as session:
        session.add(WeekSyncStatus(
            week=29, state=ReconciliationState.SUBMITTING,
            claimed_by='other-host:1:cafe', claimed_at=utc_now(),
        ))

    task = asyncio.create_task(scheduler.force_resync(29))
    await asyncio.sleep(0.1)
    assert not task.done()
    assert gateway.submit_calls == []

    async with database.session_factory.begin() as session:
        await session.execute(
            update(WeekSyncStatus).where(WeekSyncStatus.week == 29).values(claimed_by=None, claimed_at=None)
        )

    outcome = await asyncio.wait_for(task, timeout=5)
    assert outcome.state == ReconciliationState.SYNCED
    assert gateway.score(PLAYER_A, 29) == 3


@pytest.mark.asyncio
async def test_expired_claim_is_taken_over(database, calendar, ledger, make_scheduler, gateway, week_29):
    scheduler = make_scheduler(lease_seconds=60)
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)
    async with database.session_factory.begin() as session:
        session.add(WeekSyncStatus(
            week=29, state=ReconciliationState.CONFIRMING,
            claimed_by='crashed-host:7:dead', claimed_at=utc_now() - timedelta(minutes=5),
        ))

    outcome = await asyncio.wait_for(scheduler.force_resync(29), timeout=5)

    assert outcome.state == ReconciliationState.SYNCED
    assert (await scheduler.get_persisted_status(29)).claimed_by is None


@pytest.mark.asyncio
async def test_auto_advance_after_final_sync(calendar, ledger, make_scheduler, gateway, week_29):
    scheduler = make_scheduler(auto_advance=True)
    gateway.current_week = 29
    await calendar.create_week(week_29)
    await ledger.record_result(PLAYER_A, 29, 3)

    await scheduler.reconcile_week(29, now=collecting(week_29))
    assert gateway.start_new_week_calls == 0

    await scheduler.reconcile_week(29, now=ended(week_29))
    await scheduler.reconcile_week(29, now=ended(week_29))
    assert gateway.start_new_week_calls == 1
    assert gateway.current_week == 30
