"""
Transaction helper shared by the matching services.

Storage failures (lock timeouts, busy database, constraint races) are rolled
back and retried once after a short backoff; a second failure is reported as
TransientFailureError so it can never be mistaken for a business outcome.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from matchround.config.settings import settings
from matchround.errors import TransientFailureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_in_transaction(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_attempts: int = 2
) -> T:
    """Run `operation` and commit; roll back on any failure, retry storage errors."""
    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation()
            await db.commit()
            return result
        except (IntegrityError, OperationalError) as e:
            await db.rollback()
            if attempt < max_attempts:
                delay = settings.MATCHING_STORE_RETRY_BACKOFF_MS / 1000
                logger.warning(
                    f"{operation_name}: retry {attempt}/{max_attempts - 1} after storage error: {e}. "
                    f"Waiting {delay}s"
                )
                await asyncio.sleep(delay)
                continue
            logger.error(f"{operation_name}: giving up after {max_attempts} attempts: {e}")
            raise TransientFailureError(operation_name) from e
        except Exception:
            await db.rollback()
            raise
    raise TransientFailureError(operation_name)
