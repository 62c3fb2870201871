"""Database bootstrap helpers and the retrying unit of work."""

import time
from typing import Callable, TypeVar

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from creatorpay.common.config import settings
from creatorpay.common.errors import ConcurrencyConflict, TransientStorageError
from creatorpay.common.logging import logger
from creatorpay.common.metrics import retries_total

T = TypeVar("T")

# JSONB on postgres, plain JSON elsewhere (tests run on sqlite).
JsonType = JSON().with_variant(JSONB(), "postgresql")

# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def unit_of_work(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    attempts: int = 3,
    backoff_seconds: float = 0.05,
    service_name: str = "monetization",
) -> T:
    """Run `work(db)` in one transaction, retrying storage contention.

    Lock timeouts, deadlocks, dropped connections and lost optimistic version
    races are retried up to `attempts` times with exponential backoff, then
    surface as `TransientStorageError`. Any other exception is propagated
    untouched after rollback.
    """

    for attempt in range(1, attempts + 1):
        with session_factory() as db:
            try:
                result = work(db)
                db.commit()
                return result
            except (OperationalError, ConcurrencyConflict) as exc:
                db.rollback()
                retries_total.labels(service=service_name, dependency="storage").inc()
                if attempt == attempts:
                    logger.error("storage retries exhausted attempts=%s error=%s", attempts, exc)
                    raise TransientStorageError(f"storage contention: {exc}") from exc
                delay = backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "storage contention retry=%s/%s backoff_s=%s error=%s", attempt, attempts, delay, exc
                )
                time.sleep(delay)
            except Exception:
                db.rollback()
                raise
    raise TransientStorageError("unit of work did not run")
