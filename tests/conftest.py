import os

os.environ.setdefault('LOG_TO_FILE', 'False')

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from tournament_sync.database.database import Database
from tournament_sync.services.base import BackoffPolicy
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.chain_gateway import (
    Confirmation, ConfirmationStatus, PlayerRecord, SignerCheck
)
from tournament_sync.services.diagnostics import DiagnosticService
from tournament_sync.services.phase_clock import WeekSchedule
from tournament_sync.services.reconciliation import ReconciliationScheduler
from tournament_sync.services.registration import RegistrationService
from tournament_sync.services.score_ledger import ScoreLedgerService
from tournament_sync.services.tournament import TournamentService
from tournament_sync.utils.sync_exceptions import AuthorizationError

SERVER = "0x1111111111111111111111111111111111111111"
OTHER_SIGNER = "0x2222222222222222222222222222222222222222"
PLAYER_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
PLAYER_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
PLAYER_C = "0xcccccccccccccccccccccccccccccccccccccccc"

BASE_TIME = datetime(2025, 6, 30, 9, 0, tzinfo=timezone.utc)


def make_week(week: int, start: datetime = BASE_TIME) -> WeekSchedule:
    """Registration 5h, one minute gap, then point collection until start + 20h."""
    return WeekSchedule(
        week=week,
        registration_start=start,
        registration_end=start + timedelta(hours=5),
        point_collection_start=start + timedelta(hours=5, minutes=1),
        point_collection_end=start + timedelta(hours=20),
    )


def registering(schedule: WeekSchedule) -> datetime:
    return schedule.registration_start + timedelta(minutes=10)


def collecting(schedule: WeekSchedule) -> datetime:
    return schedule.point_collection_start + timedelta(hours=1)


def ended(schedule: WeekSchedule) -> datetime:
    return schedule.point_collection_end + timedelta(hours=1)


class FakeChainGateway:
    """In-memory stand-in for the contract. Writes are absolute and applied on confirmation."""

    def __init__(self, current_week: int = 1):
        self.configured_address = SERVER
        self.authorized_address = SERVER
        self.current_week = current_week
        self.records: Dict[Tuple[str, int], int] = {}

        self.submit_calls: List[Tuple[int, List[Tuple[str, int]]]] = []
        self.confirm_calls: List[str] = []
        self.read_calls = 0
        self.start_new_week_calls = 0

        # Scripted behaviour, consumed front to back
        self.submit_failures: List[Exception] = []
        self.read_failures: List[Exception] = []
        self.confirm_script: List[object] = []

        # Ticket purchases: tx hash -> (sender, value in wei)
        self.tickets: Dict[str, Tuple[str, int]] = {}

        self._pending: Dict[str, Tuple[int, List[Tuple[str, int]]]] = {}
        self._tx_counter = 0

    def set_score(self, player: str, week: int, score: int):
        self.records[(player.lower(), week)] = score

    def score(self, player: str, week: int) -> Optional[int]:
        return self.records.get((player.lower(), week))

    def issue_ticket(self, player: str, value: int = 10**15) -> str:
        tx_hash = f"0x7777{len(self.tickets) + 1:060x}"
        self.tickets[tx_hash] = (player.lower(), value)
        return tx_hash

    async def verify_ticket_payment(self, tx_hash: str, player: str, min_value: int) -> Optional[str]:
        if tx_hash not in self.tickets:
            return "transaction not found"
        sender, value = self.tickets[tx_hash]
        if sender != player.lower():
            return f"sent by {sender}, not {player}"
        if value < min_value:
            return f"value {value} is below the ticket price {min_value}"
        return None

    async def verify_signer(self) -> SignerCheck:
        return SignerCheck(
            configured_address=self.configured_address,
            contract_authorized_address=self.authorized_address,
            is_match=self.configured_address.lower() == self.authorized_address.lower(),
        )

    async def get_current_week(self) -> int:
        return self.current_week

    async def get_player_record(self, player: str, week: int) -> PlayerRecord:
        self.read_calls += 1
        if self.read_failures:
            raise self.read_failures.pop(0)
        score = self.score(player, week)
        return PlayerRecord(score=score or 0, present=score is not None)

    async def submit_score_batch(self, week: int, entries) -> str:
        check = await self.verify_signer()
        if not check.is_match:
            raise AuthorizationError(check.configured_address, check.contract_authorized_address)
        self.submit_calls.append((week, list(entries)))
        if self.submit_failures:
            raise self.submit_failures.pop(0)
        self._tx_counter += 1
        tx_hash = f"0x{self._tx_counter:064x}"
        self._pending[tx_hash] = (week, list(entries))
        return tx_hash

    async def confirm_transaction(self, tx_hash: str, timeout: float) -> Confirmation:
        self.confirm_calls.append(tx_hash)
        if self.confirm_script:
            step = self.confirm_script.pop(0)
            if isinstance(step, Exception):
                raise step
            if step == ConfirmationStatus.TIMED_OUT:
                return Confirmation(ConfirmationStatus.TIMED_OUT)
            if step == ConfirmationStatus.REVERTED:
                self._pending.pop(tx_hash, None)
                return Confirmation(ConfirmationStatus.REVERTED, 100)

        week, entries = self._pending.pop(tx_hash)
        for player, score in entries:
            self.set_score(player, week, score)
        return Confirmation(ConfirmationStatus.SUCCESS, 100)

    async def start_new_week(self) -> str:
        self.start_new_week_calls += 1
        self.current_week += 1
        return "0x" + "ab" * 32


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'tournament_sync_test.db'}")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def calendar(database):
    return CalendarService(database.session_factory)


@pytest.fixture
def ledger(database):
    return ScoreLedgerService(database.session_factory)


@pytest.fixture
def registration(database, calendar, gateway):
    return RegistrationService(database.session_factory, calendar, gateway, ticket_price_wei=10**15)


@pytest.fixture
def tournament(calendar, ledger, registration):
    return TournamentService(calendar, ledger, registration)


@pytest.fixture
def gateway():
    return FakeChainGateway()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_scheduler(database, calendar, ledger, gateway, sleeps):
    def factory(**overrides):
        options = dict(
            policy=BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=2.0),
            max_batch_size=100,
            confirm_timeout=0.01,
            confirm_max_cycles=3,
            poll_interval=0.01,
            auto_advance=False,
            lease_poll_interval=0.01,
        )
        options.update(overrides)
        scheduler = ReconciliationScheduler(database.session_factory, calendar, ledger, gateway, **options)

        async def fake_sleep(delay):
            sleeps.append(delay)

        scheduler._sleep = fake_sleep
        return scheduler
    return factory


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def diagnostics(calendar, ledger, scheduler, gateway):
    return DiagnosticService(calendar, ledger, scheduler, gateway)
