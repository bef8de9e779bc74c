import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() == 'true'


class Config:
    """Synchronization engine configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///tournament_sync.db')

    # Runtime settings
    DEBUG = _env_bool('DEBUG')
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = _env_bool('LOG_TO_FILE', 'True')

    # Chain settings
    RPC_URL = os.getenv('RPC_URL', 'https://sepolia.base.org')
    CHAIN_ID = int(os.getenv('CHAIN_ID', 84532))  # Base Sepolia
    PRIVATE_KEY = os.getenv('PRIVATE_KEY')
    TOURNAMENT_CONTRACT_ADDRESS = os.getenv('TOURNAMENT_CONTRACT_ADDRESS')
    RPC_REQUEST_TIMEOUT_SECONDS = int(os.getenv('RPC_REQUEST_TIMEOUT_SECONDS', 30))

    # Tournament settings
    TOURNAMENT_TIMEZONE = os.getenv('TOURNAMENT_TIMEZONE', 'Asia/Jakarta')
    TOURNAMENT_TICKET_PRICE_WEI = int(os.getenv('TOURNAMENT_TICKET_PRICE_WEI', 10**15))  # 0.001 ETH

    # Reconciliation settings
    SYNC_POLL_INTERVAL_SECONDS = float(os.getenv('SYNC_POLL_INTERVAL_SECONDS', 30))
    SYNC_MAX_BATCH_SIZE = int(os.getenv('SYNC_MAX_BATCH_SIZE', 100))
    SYNC_SUBMIT_MAX_ATTEMPTS = int(os.getenv('SYNC_SUBMIT_MAX_ATTEMPTS', 5))
    SYNC_BACKOFF_BASE_SECONDS = float(os.getenv('SYNC_BACKOFF_BASE_SECONDS', 1.0))
    SYNC_BACKOFF_MAX_SECONDS = float(os.getenv('SYNC_BACKOFF_MAX_SECONDS', 30.0))
    SYNC_CONFIRM_TIMEOUT_SECONDS = float(os.getenv('SYNC_CONFIRM_TIMEOUT_SECONDS', 120))
    SYNC_CONFIRM_MAX_CYCLES = int(os.getenv('SYNC_CONFIRM_MAX_CYCLES', 3))
    SYNC_AUTO_ADVANCE_WEEK = _env_bool('SYNC_AUTO_ADVANCE_WEEK')

    # Cross-process claim on a week while a pass runs; must outlast the slowest pass
    SYNC_LEASE_SECONDS = float(os.getenv('SYNC_LEASE_SECONDS', 900))
    SYNC_LEASE_POLL_SECONDS = float(os.getenv('SYNC_LEASE_POLL_SECONDS', 1.0))

    @classmethod
    def get_async_database_url(cls, database_url: Optional[str] = None) -> str:
        """Get the database URL (configured one by default) with an async driver for SQLite"""
        database_url = database_url or cls.DATABASE_URL
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        return database_url

    @classmethod
    def get_private_key(cls) -> str:
        """Get the signing key with a 0x prefix"""
        pk = (cls.PRIVATE_KEY or '').strip()
        if pk and not pk.startswith('0x'):
            pk = f'0x{pk}'
        return pk

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.PRIVATE_KEY:
            raise ValueError("PRIVATE_KEY is required")
        if not cls.TOURNAMENT_CONTRACT_ADDRESS:
            raise ValueError("TOURNAMENT_CONTRACT_ADDRESS is required")
        if cls.SYNC_MAX_BATCH_SIZE <= 0:
            raise ValueError("SYNC_MAX_BATCH_SIZE must be positive")
        if cls.SYNC_SUBMIT_MAX_ATTEMPTS <= 0:
            raise ValueError("SYNC_SUBMIT_MAX_ATTEMPTS must be positive")
        if cls.SYNC_CONFIRM_MAX_CYCLES <= 0:
            raise ValueError("SYNC_CONFIRM_MAX_CYCLES must be positive")
