# db.py
import asyncio
import logging
from typing import AsyncGenerator, Awaitable, Callable, TypeVar

from sqlalchemy.exc import (
    DBAPIError, IntegrityError, InterfaceError, NoSuchTableError, OperationalError,
    ProgrammingError, SQLAlchemyError, TimeoutError as SATimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from viewforge.errors import PersistenceError
from viewforge.retry import fixed_delay, retry_async
from viewforge.settings import settings

T = TypeVar("T")

# --- Configuration & Setup ---
logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Rewrites plain PostgreSQL URLs to the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


DATABASE_URL = normalize_database_url(settings.DATABASE_URL)

# SQLite uses a single-connection pool, so pooling arguments only apply to PostgreSQL.
engine_kwargs = {"echo": False}
if DATABASE_URL.startswith("postgresql+asyncpg://"):
    logger.info("Connecting to PostgreSQL database.")
    engine_kwargs.update(
        pool_size=10,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=1800,
    )
else:
    logger.info("Using local SQLite database for development.")


# --- SQLAlchemy Engine & Session ---

engine = create_async_engine(DATABASE_URL, **engine_kwargs)

# `expire_on_commit=False` keeps rows readable after the workflow commits them.
async_session_maker = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Base class for declarative models. All models in `models.py` inherit from this.
Base = declarative_base()


# --- Write helpers ---

SCHEMA_ERROR_MARKERS = (
    "no such table",
    "no such column",
    "does not exist",
    "undefinedtable",
    "undefinedcolumn",
)


def classify_db_error(exc: BaseException) -> PersistenceError:
    """Maps a driver/SQLAlchemy error to a PersistenceError flagged transient or not."""
    text = str(exc).lower()
    if isinstance(exc, (ProgrammingError, NoSuchTableError)) or any(m in text for m in SCHEMA_ERROR_MARKERS):
        return PersistenceError(f"Database schema error: {exc}", transient=False)
    if isinstance(exc, IntegrityError):
        return PersistenceError(f"Integrity error: {exc}", transient=False)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return PersistenceError(f"Database connection lost: {exc}", transient=True)
    if isinstance(exc, (OperationalError, InterfaceError, SATimeoutError, ConnectionError, asyncio.TimeoutError)):
        return PersistenceError(f"Transient database error: {exc}", transient=True)
    return PersistenceError(f"Database error: {exc}", transient=False)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PersistenceError) and exc.transient


async def persist_with_retry(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    label: str = "database write",
) -> T:
    """
    Runs `work()` and commits, retrying transient failures at a fixed delay.

    `work` is called again from scratch on every attempt, so it must build
    its rows fresh instead of reusing objects from a rolled-back attempt.
    Schema-level errors are raised on the first occurrence.
    """
    async def attempt(n: int) -> T:
        try:
            result = await work()
            await db.commit()
            return result
        except PersistenceError:
            await db.rollback()
            raise
        except (SQLAlchemyError, ConnectionError, asyncio.TimeoutError) as e:
            await db.rollback()
            raise classify_db_error(e) from e
        except Exception:
            await db.rollback()
            raise

    return await retry_async(
        attempt,
        max_attempts=settings.PERSIST_MAX_ATTEMPTS,
        delay=fixed_delay(settings.PERSIST_RETRY_DELAY_SECONDS),
        should_retry=is_transient,
        label=label,
    )


# --- FastAPI Dependency ---

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session to each request.

    Rolls back anything left uncommitted if the request fails.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
