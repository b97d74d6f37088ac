import logging
from decimal import Decimal
from typing import Callable, Iterable, List, TypeVar

from sqlalchemy import create_engine, delete, func, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

T = TypeVar("T")

# One declarative base per database; the stores never share a connection.
PrimaryBase = declarative_base()
SmsBase = declarative_base()


class StoreError(Exception):
    """A store was unreachable or a query against it failed."""

    def __init__(self, store: str, operation: str):
        super().__init__(f"{store} store: {operation} failed")
        self.store = store
        self.operation = operation


class TierNotFound(Exception):
    """No paddle pledge row exists for the requested tier."""

    def __init__(self, tier_cents: int):
        super().__init__(f"No paddle pledge tier {tier_cents}")
        self.tier_cents = tier_cents


def create_store_engine(url: str, query_timeout: float) -> Engine:
    """
    Create a SQLAlchemy engine with per-dialect query bounds.

    PostgreSQL connections get a server-side statement_timeout, SQLite gets
    a lock wait timeout. check_same_thread=False is required for SQLite
    because queries run on the threadpool.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": query_timeout}
    elif url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(int(query_timeout), 1),
            "options": f"-c statement_timeout={int(query_timeout * 1000)}",
        }
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True, echo=False)


class _Store:
    """Owns one engine and session factory; runs queries off the event loop."""

    name = "store"

    def __init__(self, url: str, query_timeout: float = 10.0):
        self.engine = create_store_engine(url, query_timeout)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self.SessionLocal() as db:
                return fn(db)

        try:
            return await run_in_threadpool(work)
        except SQLAlchemyError as e:
            logger.error(f"{self.name} store {operation} failed: {e}")
            raise StoreError(self.name, operation) from e

    async def ping(self) -> bool:
        """Return True if the store answers a trivial query."""
        try:
            await self._run("ping", lambda db: db.execute(text("SELECT 1")))
            return True
        except StoreError:
            return False

    def dispose(self) -> None:
        self.engine.dispose()


# =============================================================================
# Primary store: paddle pledges
# =============================================================================

class TierPledgeStore(_Store):
    """Paddle pledge tiers held in the primary database."""

    name = "primary"

    async def init_schema(self, tiers: Iterable[int], create_tables: bool = True) -> None:
        """
        Create the paddle_pledges table (when enabled) and seed any
        configured tier that has no row yet, with a count of zero.
        """
        from pledge_tracker.models import PaddlePledge

        tiers = sorted(set(tiers), reverse=True)

        def work(db: Session) -> int:
            if create_tables:
                PrimaryBase.metadata.create_all(bind=self.engine)
            existing = set(db.execute(select(PaddlePledge.tier_cents)).scalars())
            missing = [t for t in tiers if t not in existing]
            for tier in missing:
                db.add(PaddlePledge(tier_cents=tier, count=0, total_cents=0))
            db.commit()
            return len(missing)

        seeded = await self._run("init_schema", work)
        logger.info(f"Primary store ready, seeded {seeded} new tier(s)")

    async def fetch_tiers(self) -> List:
        """All tiers, highest tier first."""
        from pledge_tracker.models import PaddlePledge

        return await self._run(
            "fetch_tiers",
            lambda db: list(
                db.execute(select(PaddlePledge).order_by(PaddlePledge.tier_cents.desc())).scalars()
            ),
        )

    async def update_tier_count(self, tier_cents: int, count: int):
        """
        Set the pledge count for one tier.

        total_cents and updated_at are computed by the database in the same
        UPDATE statement.

        Raises:
            TierNotFound: no row has this tier_cents
        """
        from pledge_tracker.models import PaddlePledge

        logger.info(f"Updating paddle tier {tier_cents} to count={count}")

        def work(db: Session):
            result = db.execute(
                update(PaddlePledge)
                .where(PaddlePledge.tier_cents == tier_cents)
                .values(
                    count=count,
                    total_cents=PaddlePledge.tier_cents * count,
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise TierNotFound(tier_cents)
            db.commit()
            return db.execute(
                select(PaddlePledge).where(PaddlePledge.tier_cents == tier_cents)
            ).scalar_one()

        return await self._run("update_tier_count", work)

    async def tier_subtotal(self) -> int:
        """Sum of total_cents over all tiers; 0 when there are none."""
        from pledge_tracker.models import PaddlePledge

        total = await self._run(
            "tier_subtotal",
            lambda db: db.execute(
                select(func.coalesce(func.sum(PaddlePledge.total_cents), 0))
            ).scalar(),
        )
        return int(total or 0)

    async def reset_counts(self) -> int:
        """Zero every tier's count and total, keeping the seeded rows."""
        from pledge_tracker.models import PaddlePledge

        def work(db: Session) -> int:
            result = db.execute(
                update(PaddlePledge)
                .values(count=0, total_cents=0, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount

        reset = await self._run("reset_counts", work)
        logger.info(f"Reset {reset} paddle tier(s) to zero")
        return reset


# =============================================================================
# SMS store: text pledges
# =============================================================================

class TextPledgeStore(_Store):
    """Text pledges held in the SMS provider's database."""

    name = "sms"

    async def init_schema(self, create_tables: bool = True) -> None:
        # Import models to register them with SmsBase.metadata
        from pledge_tracker.models import TextPledge  # noqa: F401

        if create_tables:
            await self._run("init_schema", lambda db: SmsBase.metadata.create_all(bind=self.engine))
        logger.info("SMS store ready")

    async def fetch_recent(self, limit: int = 50) -> List:
        """Most recent text pledges, newest first."""
        from pledge_tracker.models import TextPledge

        return await self._run(
            "fetch_recent",
            lambda db: list(
                db.execute(
                    select(TextPledge)
                    .order_by(TextPledge.created_at.desc(), TextPledge.id.desc())
                    .limit(limit)
                ).scalars()
            ),
        )

    async def count(self) -> int:
        from pledge_tracker.models import TextPledge

        return await self._run(
            "count",
            lambda db: db.execute(select(func.count(TextPledge.id))).scalar() or 0,
        )

    async def fetch_amounts(self) -> List[Decimal]:
        """pledge_amount of every text pledge, in dollars."""
        from pledge_tracker.models import TextPledge

        return await self._run(
            "fetch_amounts",
            lambda db: [
                Decimal(str(amount))
                for amount in db.execute(select(TextPledge.pledge_amount)).scalars()
            ],
        )

    async def delete_all(self) -> int:
        """Delete every text pledge. Returns the number of rows removed."""
        from pledge_tracker.models import TextPledge

        def work(db: Session) -> int:
            result = db.execute(delete(TextPledge))
            db.commit()
            return result.rowcount

        deleted = await self._run("delete_all", work)
        logger.info(f"Deleted {deleted} text pledge(s)")
        return deleted
