from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatehouse.core.config import get_settings
from gatehouse.core.errors import (
    AlreadyExistsError,
    ConsistencyFaultError,
    IdentityError,
    IdentityStoreError,
    TransientStoreError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[AsyncSession], Awaitable[T]]


def _is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


def translate_store_error(exc: SQLAlchemyError, *, name: str) -> IdentityError:
    # Map driver-level failures onto the identity error kinds callers handle.
    if isinstance(exc, IntegrityError):
        return AlreadyExistsError(f"{name} conflicted with a concurrent write")
    if _is_transient(exc):
        return TransientStoreError(f"{name} failed on a transient store error")
    return IdentityStoreError(f"{name} failed in the database layer")


async def _rollback(session: AsyncSession, *, name: str) -> None:
    try:
        await session.rollback()
    except Exception as exc:  # noqa: BLE001 - rollback failures must not mask the original error
        logger.warning("transaction_rollback_failed operation=%s", name, exc_info=exc)


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Operation[T],
    *,
    name: str,
) -> T:
    """Run ``operation`` inside one session and one transaction.

    The transaction commits when the operation returns. Any exception rolls it
    back, except identity errors flagged ``retain_changes`` which commit first so
    failure accounting survives the raised error.
    """
    async with session_factory() as session:
        try:
            result = await operation(session)
            await session.commit()
            return result
        except IdentityError as exc:
            if exc.retain_changes:
                try:
                    await session.commit()
                except SQLAlchemyError as commit_exc:
                    await _rollback(session, name=name)
                    raise translate_store_error(commit_exc, name=name) from commit_exc
            else:
                await _rollback(session, name=name)
            if isinstance(exc, ConsistencyFaultError):
                logger.error("transaction_consistency_fault operation=%s detail=%s", name, exc)
            raise
        except SQLAlchemyError as exc:
            await _rollback(session, name=name)
            translated = translate_store_error(exc, name=name)
            level = logger.warning if isinstance(translated, (AlreadyExistsError, TransientStoreError)) else logger.error
            level("transaction_store_error operation=%s kind=%s", name, type(translated).__name__, exc_info=exc)
            raise translated from exc
        except (TimeoutError, asyncio.TimeoutError) as exc:
            await _rollback(session, name=name)
            logger.warning("transaction_timeout operation=%s", name)
            raise TransientStoreError(f"{name} timed out") from exc
        except BaseException:
            await _rollback(session, name=name)
            raise


def expect_rowcount(result: Any, expected: int, *, action: str) -> int:
    # Writes must touch exactly the rows the read phase saw; anything else is a race or a bug.
    rowcount = int(getattr(result, "rowcount", -1))
    if rowcount != expected:
        raise ConsistencyFaultError(
            f"{action} affected {rowcount} rows, expected {expected}"
        )
    return rowcount


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.db_retry_max_attempts,
        backoff_ms=settings.db_retry_backoff_ms,
    )


async def retry_transient(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Re-run the whole operation on transient store failures only; each attempt is its own transaction.
    policy = policy or default_retry_policy()
    attempt = 1
    while True:
        try:
            return await func()
        except TransientStoreError:
            if attempt >= max(policy.max_attempts, 1):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("transient_store_retry attempt=%s sleep_s=%.3f", attempt, sleep_s)
            await sleep(sleep_s)
            attempt += 1
