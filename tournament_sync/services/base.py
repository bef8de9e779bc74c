"""
Base service class for the synchronization engine.

Provides async database session management and the bounded exponential
backoff used for transient failures.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Awaitable, Callable, Any, Tuple, Type
from sqlalchemy.ext.asyncio import AsyncSession

from tournament_sync.config import Config
from tournament_sync.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff: delay = base * 2**attempt, capped at max_delay."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls) -> 'BackoffPolicy':
        return cls(
            max_attempts=Config.SYNC_SUBMIT_MAX_ATTEMPTS,
            base_delay=Config.SYNC_BACKOFF_BASE_SECONDS,
            max_delay=Config.SYNC_BACKOFF_MAX_SECONDS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1` (attempt is zero-based)."""
        return min(self.max_delay, self.base_delay * (2 ** attempt))


class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, session_factory):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        self.session_factory = session_factory
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable[[], Awaitable[Any]], policy: BackoffPolicy,
                                 retry_on: Tuple[Type[BaseException], ...],
                                 operation: str = None) -> Any:
        """
        Execute a coroutine function, retrying the listed exception types with backoff.

        Any other exception propagates immediately. After `policy.max_attempts`
        failed attempts the last exception is re-raised.
        """
        name = operation or getattr(func, '__name__', 'operation')
        for attempt in range(policy.max_attempts):
            try:
                return await func()
            except retry_on as e:
                if attempt == policy.max_attempts - 1:
                    logger.error(f"{name} failed after {policy.max_attempts} attempts: {e}")
                    raise
                delay = policy.delay_for(attempt)
                logger.warning(f"Retry attempt {attempt + 1} for {name} in {delay:.2f}s: {e}")
                await self._sleep(delay)
