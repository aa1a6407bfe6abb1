"""
Durable webhook event ledger on SQLAlchemy (async).

One row per provider event id. The UNIQUE constraint on ``event_id`` is what
makes the claim atomic across processes: the losing insert of a duplicate
delivery hits an IntegrityError and is reported as ALREADY_EXISTS.
"""
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from subscription_billing.application.ports import (
    LedgerInsertResult,
    WebhookEventRecord,
    WebhookEventStatus,
)
from subscription_billing.config import Settings, get_settings
from subscription_billing.domain.exceptions import (
    DuplicateEventError,
    NotFoundError,
    TransientInfrastructureError,
)

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class WebhookEventRow(Base):
    """
    Webhook events table.

    Stores every provider event id seen, with its processing status, so a
    redelivery can be told apart from a new event.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'processed', 'failed')",
            name="valid_webhook_status",
        ),
        Index("idx_webhook_events_status_received", "status", "received_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEventRow."""
        return f"<WebhookEventRow(event_id={self.event_id}, status={self.status})>"


# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for ``settings.database_url``.

    SQLite (used in tests) gets no pool sizing; its dialect rejects it.
    """
    options: dict = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return create_async_engine(settings.database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the process-wide session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the ledger table if it doesn't exist."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored value is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def _database_errors(operation: str, event_id: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(
            "webhook_ledger_database_error",
            operation=operation,
            event_id=event_id,
            error=str(e),
        )
        raise TransientInfrastructureError(
            f"Webhook ledger {operation} failed for {event_id}: {e}"
        ) from e


class SqlWebhookEventLedger:
    """
    WebhookEventLedger backed by the ``webhook_events`` table.

    Every method runs in its own short transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        claim_ttl_seconds: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the ledger.

        Args:
            session_factory: Optional session factory (process-wide one if not provided)
            claim_ttl_seconds: Age after which a RECEIVED claim counts as abandoned
            clock: Source of the current UTC time
        """
        self.session_factory = session_factory or get_session_factory()
        if claim_ttl_seconds is None:
            claim_ttl_seconds = get_settings().webhook_claim_ttl_seconds
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.clock = clock

    async def exists_processed(self, event_id: str) -> bool:
        with _database_errors("exists_processed", event_id):
            async with self.session_factory() as session:
                stmt = select(WebhookEventRow.status).where(
                    WebhookEventRow.event_id == event_id
                )
                status = (await session.execute(stmt)).scalar_one_or_none()
        return status == WebhookEventStatus.PROCESSED.value

    async def insert_received(
        self, event_id: str, event_type: str, payload: str | None = None
    ) -> LedgerInsertResult:
        with _database_errors("insert_received", event_id):
            try:
                await self._insert(event_id, event_type, payload)
                return LedgerInsertResult.RECEIVED
            except DuplicateEventError:
                logger.info("webhook_event_already_recorded", event_id=event_id)

            if await self._reclaim(event_id):
                logger.info("webhook_event_reclaimed", event_id=event_id)
                return LedgerInsertResult.RECEIVED
            return LedgerInsertResult.ALREADY_EXISTS

    async def mark_processed(self, event_id: str) -> None:
        with _database_errors("mark_processed", event_id):
            await self._update_status(
                event_id,
                status=WebhookEventStatus.PROCESSED.value,
                processed_at=self.clock(),
                last_error=None,
            )

    async def mark_failed(self, event_id: str, error: str) -> None:
        with _database_errors("mark_failed", event_id):
            await self._update_status(
                event_id, status=WebhookEventStatus.FAILED.value, last_error=error
            )

    async def get(self, event_id: str) -> WebhookEventRecord | None:
        with _database_errors("get", event_id):
            async with self.session_factory() as session:
                stmt = select(WebhookEventRow).where(WebhookEventRow.event_id == event_id)
                row = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_record(row) if row is not None else None

    async def find_unprocessed(self, limit: int = 100) -> list[WebhookEventRecord]:
        """RECEIVED and FAILED records, oldest first (for retry and audit)."""
        with _database_errors("find_unprocessed", "*"):
            async with self.session_factory() as session:
                stmt = (
                    select(WebhookEventRow)
                    .where(WebhookEventRow.status != WebhookEventStatus.PROCESSED.value)
                    .order_by(WebhookEventRow.received_at)
                    .limit(limit)
                )
                rows = (await session.execute(stmt)).scalars().all()
        return [self._to_record(row) for row in rows]

    async def _insert(self, event_id: str, event_type: str, payload: str | None) -> None:
        async with self.session_factory() as session:
            session.add(
                WebhookEventRow(
                    event_id=event_id,
                    event_type=event_type,
                    raw_payload=payload,
                    status=WebhookEventStatus.RECEIVED.value,
                    attempts=1,
                    received_at=self.clock(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateEventError(event_id) from None

    async def _reclaim(self, event_id: str) -> bool:
        """Take over a FAILED or abandoned RECEIVED record in one conditional UPDATE."""
        now = self.clock()
        stmt = (
            update(WebhookEventRow)
            .where(WebhookEventRow.event_id == event_id)
            .where(
                or_(
                    WebhookEventRow.status == WebhookEventStatus.FAILED.value,
                    and_(
                        WebhookEventRow.status == WebhookEventStatus.RECEIVED.value,
                        WebhookEventRow.received_at < now - self.claim_ttl,
                    ),
                )
            )
            .values(
                status=WebhookEventStatus.RECEIVED.value,
                received_at=now,
                attempts=WebhookEventRow.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def _update_status(self, event_id: str, **values) -> None:
        stmt = (
            update(WebhookEventRow)
            .where(WebhookEventRow.event_id == event_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError(f"Webhook event {event_id} was never recorded")

    @staticmethod
    def _to_record(row: WebhookEventRow) -> WebhookEventRecord:
        return WebhookEventRecord(
            external_event_id=row.event_id,
            event_type=row.event_type,
            raw_payload=row.raw_payload,
            received_at=_as_utc(row.received_at),
            processed_at=_as_utc(row.processed_at),
            status=WebhookEventStatus(row.status),
            attempts=row.attempts,
            last_error=row.last_error,
        )
