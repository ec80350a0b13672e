"""Async repository for the audit trail.

Wrap SQLAlchemy async engine and session management.  Writes are batched
inserts into append-only tables; the only read path the engine needs is
the set of confirmed claims, used to keep redemption idempotent across
restarts.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from updown_engine.apps.audit.models import (
    Base,
    ClaimAttemptRow,
    OrderAttemptRow,
    StrategyEventRow,
)
from updown_engine.apps.redeemer.models import ClaimRecord

logger = logging.getLogger(__name__)

AuditRow = OrderAttemptRow | ClaimAttemptRow | StrategyEventRow


class AuditRepository:
    """Async repository for audit rows.

    Args:
        db_url: SQLAlchemy async connection string
            (e.g. ``sqlite+aiosqlite:///updown_audit.db``).

    """

    def __init__(self, db_url: str) -> None:
        """Initialize the repository with an async database engine."""
        self._engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self) -> None:
        """Create all tables if they do not already exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Audit tables initialised")

    async def save_rows(self, rows: list[AuditRow]) -> None:
        """Batch-insert audit rows of any type.

        Args:
            rows: ORM instances to persist.

        """
        if not rows:
            return
        async with self._session_factory() as session, session.begin():
            session.add_all(rows)
        logger.debug("Saved %d audit rows", len(rows))

    async def get_confirmed_claims(self) -> list[ClaimRecord]:
        """Return the first confirmed claim per condition id.

        Returns:
            Claim records ordered by confirmation time.

        """
        stmt = (
            select(ClaimAttemptRow)
            .where(ClaimAttemptRow.success.is_(True))
            .order_by(ClaimAttemptRow.ts)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        records: dict[str, ClaimRecord] = {}
        for row in rows:
            records.setdefault(
                row.condition_id,
                ClaimRecord(
                    condition_id=row.condition_id,
                    tx_hash=row.tx_hash or "",
                    payout_usd=Decimal(row.payout_usd),
                    claimed_at=row.ts,
                ),
            )
        return list(records.values())

    async def get_order_attempt_count(self) -> int:
        """Return the number of recorded order attempts."""
        stmt = select(func.count()).select_from(OrderAttemptRow)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def get_strategy_events(self, market_id: str) -> list[StrategyEventRow]:
        """Return strategy events for one market ordered by time.

        Args:
            market_id: Market to filter on.

        Returns:
            Matching rows, oldest first.

        """
        stmt = (
            select(StrategyEventRow)
            .where(StrategyEventRow.market_id == market_id)
            .order_by(StrategyEventRow.ts, StrategyEventRow.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def close(self) -> None:
        """Dispose the async engine and release all connections."""
        await self._engine.dispose()
        logger.info("Audit database engine disposed")
