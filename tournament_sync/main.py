import asyncio
import logging
import signal
import traceback
from typing import Optional

from tournament_sync.config import Config
from tournament_sync.database.database import Database
from tournament_sync.services.calendar import CalendarService
from tournament_sync.services.chain_gateway import ChainGateway
from tournament_sync.services.diagnostics import DiagnosticService
from tournament_sync.services.reconciliation import ReconciliationScheduler
from tournament_sync.services.registration import RegistrationService
from tournament_sync.services.score_ledger import ScoreLedgerService
from tournament_sync.services.tournament import TournamentService
from tournament_sync.utils.logger import setup_logger


class SyncEngine:
    """Wires the database, services and chain gateway together."""

    def __init__(self, gateway: Optional[ChainGateway] = None, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.db = Database(database_url)
        self.gateway = gateway
        self.calendar: Optional[CalendarService] = None
        self.ledger: Optional[ScoreLedgerService] = None
        self.registration: Optional[RegistrationService] = None
        self.tournament: Optional[TournamentService] = None
        self.scheduler: Optional[ReconciliationScheduler] = None
        self.diagnostics: Optional[DiagnosticService] = None

    async def setup(self, connect_chain: bool = True):
        """Initialize storage and services. Without the chain only ledger tools work."""
        self.logger.info("Setting up tournament sync engine...")

        await self.db.initialize()
        if self.gateway is None and connect_chain:
            self.gateway = ChainGateway.from_config()

        session_factory = self.db.session_factory
        self.calendar = CalendarService(session_factory)
        self.ledger = ScoreLedgerService(session_factory)
        self.registration = RegistrationService(session_factory, self.calendar, self.gateway)
        self.tournament = TournamentService(self.calendar, self.ledger, self.registration)
        self.scheduler = ReconciliationScheduler(session_factory, self.calendar, self.ledger, self.gateway)
        self.diagnostics = DiagnosticService(self.calendar, self.ledger, self.scheduler, self.gateway)

        if self.gateway is None:
            self.logger.info("Chain gateway not connected; reconciliation disabled")
            return

        check = await self.diagnostics.check_signer_authorization()
        if not check.is_match:
            self.logger.error(
                f"Signer {check.configured_address} is not the contract's authorized writer "
                f"({check.contract_authorized_address}); writes will be blocked until fixed"
            )

        self.logger.info("Tournament sync engine setup complete!")

    async def run(self):
        """Run the scheduler until SIGINT/SIGTERM"""
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt
                pass

        self.scheduler.start()
        await stop.wait()
        self.logger.info("Shutdown signal received")

    async def close(self):
        """Cleanup when the engine is shutting down"""
        self.logger.info("Shutting down tournament sync engine...")

        if self.scheduler:
            await self.scheduler.stop()
        if self.db:
            await self.db.close()


async def main():
    """Main entry point"""
    Config.validate()

    engine = SyncEngine()

    try:
        await engine.setup()
        await engine.run()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
        raise
    finally:
        await engine.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
