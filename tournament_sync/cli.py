#!/usr/bin/env python3
"""
Operator command line for the tournament synchronization engine.

Usage:
    python -m tournament_sync.cli status --week 29
    python -m tournament_sync.cli resync --week 29
    python -m tournament_sync.cli check-signer
    python -m tournament_sync.cli chain-week
    python -m tournament_sync.cli schedule --first-week 30 --first-day 2025-07-01 --count 4
    python -m tournament_sync.cli leaderboard --week 29 --limit 10
    python -m tournament_sync.cli rooms --week 29

Every command prints JSON. Commands that take --week default to the current
week. A resync waits for any pass the running daemon holds on the same week.
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from tournament_sync.main import SyncEngine
from tournament_sync.utils.sync_exceptions import SyncException

CHAIN_COMMANDS = {'resync', 'check-signer', 'chain-week'}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Tournament score synchronization tools')
    sub = parser.add_subparsers(dest='command', required=True)

    status = sub.add_parser('status', help='Sync status of a week')
    status.add_argument('--week', type=int, default=None)

    resync = sub.add_parser('resync', help='Run a reconciliation pass now')
    resync.add_argument('--week', type=int, required=True)

    sub.add_parser('check-signer', help="Compare the server key with the contract's authorized signer")
    sub.add_parser('chain-week', help="The contract's current week")

    schedule = sub.add_parser('schedule', help='Create upcoming weeks')
    schedule.add_argument('--first-week', type=int, required=True)
    schedule.add_argument('--first-day', type=date.fromisoformat, required=True,
                          help='Local day registration opens, YYYY-MM-DD')
    schedule.add_argument('--count', type=int, default=1)
    schedule.add_argument('--timezone', default=None)

    leaderboard = sub.add_parser('leaderboard', help='Weekly standings from the ledger')
    leaderboard.add_argument('--week', type=int, default=None)
    leaderboard.add_argument('--limit', type=int, default=None)

    rooms = sub.add_parser('rooms', help='Registered players by room, with standings')
    rooms.add_argument('--week', type=int, default=None)

    return parser


async def _resolve_week(engine: SyncEngine, week) -> int:
    if week is not None:
        return week
    return (await engine.calendar.current_week()).week


async def run_command(engine: SyncEngine, args) -> object:
    diagnostics = engine.diagnostics
    if args.command == 'status':
        return await diagnostics.get_week_sync_status(await _resolve_week(engine, args.week))
    if args.command == 'resync':
        return (await diagnostics.force_resync(args.week)).to_dict()
    if args.command == 'check-signer':
        return (await diagnostics.check_signer_authorization()).to_dict()
    if args.command == 'chain-week':
        return {'currentWeek': await diagnostics.chain_week()}
    if args.command == 'schedule':
        created = await engine.calendar.schedule_ahead(
            args.first_week, args.first_day, args.count, tz_name=args.timezone
        )
        return [dict(week=w.week, **w.to_dict()) for w in created]
    if args.command == 'leaderboard':
        return await engine.ledger.leaderboard(await _resolve_week(engine, args.week), args.limit)
    if args.command == 'rooms':
        return await engine.tournament.room_standings(await _resolve_week(engine, args.week))
    raise ValueError(f"Unknown command {args.command}")


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    connect_chain = args.command in CHAIN_COMMANDS

    engine = SyncEngine()
    try:
        await engine.setup(connect_chain=connect_chain)
        result = await run_command(engine, args)
    except SyncException as e:
        print(json.dumps({'error': e.kind, 'message': str(e), 'hint': e.user_message}, indent=2))
        return 1
    finally:
        await engine.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
