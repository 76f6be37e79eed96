"""Async relational store for call records and usage logs.

Driver mapping follows the usual async equivalents:
  mysql://       -> mysql+aiomysql://
  sqlite://      -> sqlite+aiosqlite://

Writes on the voice path are never awaited by the caller: they go through
``CallStore.spawn`` which runs them as background tasks and only logs a
failure.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Awaitable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from helpline.errors import StoreWriteError
from helpline.models import Base, CallRow, ChargeRow, ErrorLogRow, SearchLogRow
from helpline.session import NOT_PROVIDED

logger = logging.getLogger(__name__)

SLOT_COLUMNS = {
    "name": "caller_name",
    "role": "caller_role",
    "department": "caller_department",
    "issue": "caller_issue",
    "severity": "severity",
}


def to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(db_url: str) -> dict:
    if "sqlite" in db_url:
        return {}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallStore:
    def __init__(self, database_url: str):
        url = to_async_url(database_url)
        self._engine = create_async_engine(url, **_engine_kwargs(url))
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self._pending: set[asyncio.Task] = set()

    async def init(self) -> None:
        """Create tables if they do not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Store initialized (%s)", self._engine.dialect.name)

    async def close(self) -> None:
        await self.drain()
        await self._engine.dispose()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreWriteError(str(e)) from e

    # ── Fire-and-forget ──

    def spawn(self, write: Awaitable, label: str) -> asyncio.Task:
        """Run a write in the background; failures are logged, never raised."""
        task = asyncio.ensure_future(self._guarded(write, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guarded(self, write: Awaitable, label: str) -> None:
        try:
            await write
        except (StoreWriteError, OSError) as e:
            logger.error("%s failed: %s", label, e)

    async def drain(self) -> None:
        """Wait for outstanding background writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── calls ──

    async def insert_call(self, call_id: str, from_number: str = "", to_number: str = "") -> None:
        async with self._session() as db:
            db.add(CallRow(
                unique_identifier=call_id,
                from_number=from_number,
                to_number=to_number,
                call_status="started",
            ))

    async def update_slots(self, call_id: str, slots: dict) -> None:
        values = {
            SLOT_COLUMNS[name]: value
            for name, value in slots.items()
            if name in SLOT_COLUMNS and value
        }
        if not values:
            return
        async with self._session() as db:
            await db.execute(
                update(CallRow).where(CallRow.unique_identifier == call_id).values(**values)
            )

    async def mark_stream_started(self, call_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(CallRow)
                .where(CallRow.unique_identifier == call_id)
                .values(start_time=_utcnow(), call_status="streaming")
            )

    async def mark_ended(self, call_id: str) -> None:
        async with self._session() as db:
            await db.execute(
                update(CallRow)
                .where(CallRow.unique_identifier == call_id)
                .values(call_status="ended", end_time=_utcnow())
            )

    async def get_call(self, call_id: str) -> dict | None:
        async with self._session() as db:
            result = await db.execute(select(CallRow).where(CallRow.unique_identifier == call_id))
            row = result.scalar_one_or_none()
            return row.to_dict() if row else None

    # ── append-only logs ──

    async def insert_charge(
        self,
        call_id: str,
        kind: str,
        amount: float,
        tokens: int,
        *,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        model: str = "",
        audio_duration: float = 0.0,
        detail: str = "",
        created_at: datetime | None = None,
    ) -> None:
        async with self._session() as db:
            db.add(ChargeRow(
                calls_id=call_id,
                kind=kind,
                amount=amount,
                tokens=tokens,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                ai_model=model,
                audio_duration=audio_duration,
                detail=detail,
                created_at=created_at or _utcnow(),
            ))

    async def insert_search_log(self, call_id: str, department: str, keywords: list, result_count: int) -> None:
        async with self._session() as db:
            db.add(SearchLogRow(
                calls_id=call_id,
                department=department or NOT_PROVIDED,
                keywords=list(keywords),
                result_count=result_count,
            ))

    async def insert_error_log(self, call_id: str, stage: str, error: str) -> None:
        async with self._session() as db:
            db.add(ErrorLogRow(calls_id=call_id, stage=stage, error=error[:2000]))

    async def list_charges(self, call_id: str) -> list[dict]:
        async with self._session() as db:
            result = await db.execute(
                select(ChargeRow).where(ChargeRow.calls_id == call_id).order_by(ChargeRow.id)
            )
            return [
                {"kind": r.kind, "amount": r.amount, "tokens": r.tokens, "model": r.ai_model}
                for r in result.scalars()
            ]
