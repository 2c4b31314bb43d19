"""
Trashcan Relay — Detection Store (SQLAlchemy async)

Durable log of classification events. Every operation runs under one lock and a
timeout, so callers never observe a half-applied write and never hang on a
stuck database.
"""
import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, case, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from errors import NotFound, StoreFailure
from log import get_logger
from models import DetectionRecord, DetectionStatus

logger = get_logger()


class Base(DeclarativeBase):
    pass


class Detection(Base):
    __tablename__ = "detections"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item: Mapped[str] = mapped_column(String)
    confidence: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(
        String, default=DetectionStatus.PENDING.value,
        server_default=DetectionStatus.PENDING.value,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.current_timestamp())


class DetectionStore:
    def __init__(self, database_url: str, timeout_s: float = 5.0, echo: bool = False):
        self.database_url = database_url
        self.timeout_s = timeout_s
        self._echo = echo
        self._engine = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()

    async def init(self):
        """Create the engine and the detections table."""
        async with self._lock:
            await self._connect()

    async def _connect(self):
        # Leaves the store unopened on failure; the next call retries.
        url = make_url(self.database_url)
        engine = None
        try:
            if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(self.database_url, echo=self._echo, pool_pre_ping=True)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            if engine is not None:
                await engine.dispose()
            raise StoreFailure(f"store init failed: {e}") from e
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("store.connected", backend=url.get_backend_name())

    async def close(self):
        self._session_factory = None
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            logger.info("store.disconnected")

    async def _run(self, op, *args):
        async with self._lock:
            try:
                if self._session_factory is None:
                    await asyncio.wait_for(self._connect(), timeout=self.timeout_s)
                return await asyncio.wait_for(op(*args), timeout=self.timeout_s)
            except asyncio.TimeoutError as e:
                raise StoreFailure("store call timed out") from e
            except SQLAlchemyError as e:
                raise StoreFailure(str(e)) from e
            except OverflowError as e:
                # driver rejects integers outside the signed 64-bit range
                raise StoreFailure(f"value out of range: {e}") from e

    # ─── Operations ─────────────────────────────────────────

    async def insert(self, item: str, confidence: float) -> int:
        """Append a pending detection and return its id."""
        return await self._run(self._insert, item, confidence)

    async def _insert(self, item: str, confidence: float) -> int:
        async with self._session_factory() as session:
            row = Detection(item=item, confidence=confidence, status=DetectionStatus.PENDING.value)
            session.add(row)
            await session.commit()
            return row.id

    async def set_status(self, detection_id: int, status: DetectionStatus) -> None:
        """Overwrite the status of an existing detection (last write wins)."""
        status = DetectionStatus(status)
        if status is DetectionStatus.PENDING:
            raise ValueError("status can only move to a terminal value")
        await self._run(self._set_status, detection_id, status)

    async def _set_status(self, detection_id: int, status: DetectionStatus) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Detection).where(Detection.id == detection_id).values(status=status.value)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFound(f"detection {detection_id} not found")
            await session.commit()

    async def get(self, detection_id: int) -> DetectionRecord:
        return await self._run(self._get, detection_id)

    async def _get(self, detection_id: int) -> DetectionRecord:
        async with self._session_factory() as session:
            row = await session.get(Detection, detection_id)
            if row is None:
                raise NotFound(f"detection {detection_id} not found")
            return DetectionRecord.model_validate(row)

    async def recent(self, limit: int = 50) -> list[DetectionRecord]:
        return await self._run(self._recent, limit)

    async def _recent(self, limit: int) -> list[DetectionRecord]:
        async with self._session_factory() as session:
            rows = await session.scalars(select(Detection).order_by(Detection.id.desc()).limit(limit))
            return [DetectionRecord.model_validate(r) for r in rows]

    async def compute_accuracy(self) -> float:
        """
        Percentage of reviewed detections marked correct.

        One aggregate statement over the whole table, so the result reflects a
        single point in time. 0.0 when nothing has been reviewed yet.
        """
        return await self._run(self._compute_accuracy)

    async def _compute_accuracy(self) -> float:
        reviewed = func.count(case((Detection.status != DetectionStatus.PENDING.value, 1)))
        correct = func.count(case((Detection.status == DetectionStatus.CORRECT.value, 1)))
        async with self._session_factory() as session:
            row = (await session.execute(select(correct, reviewed))).one()
        n_correct, n_reviewed = row
        if not n_reviewed:
            return 0.0
        return n_correct * 100.0 / n_reviewed
