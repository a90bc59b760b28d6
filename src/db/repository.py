"""Repository utilities for persisting call outcomes and telemetry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import desc, or_, select
from sqlalchemy.exc import SQLAlchemyError

from db.base import AsyncSessionFactory
from db.models import CallRecord, CallStatsRecord
from signaling.errors import PersistenceError
from signaling.messages import CallStatsMessage


@dataclass(frozen=True, slots=True)
class CallOutcome:
    call_id: str
    caller_id: str
    callee_id: str
    is_video: bool
    duration: float
    status: str
    start_time: float
    end_time: float


def _as_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class CallRepository:
    """Async repository encapsulating storage operations."""

    async def record_outcome(self, outcome: CallOutcome) -> CallRecord:
        record = CallRecord(
            call_id=outcome.call_id,
            caller_id=outcome.caller_id,
            callee_id=outcome.callee_id,
            is_video=outcome.is_video,
            status=outcome.status,
            duration_seconds=outcome.duration,
            start_time=_as_datetime(outcome.start_time),
            end_time=_as_datetime(outcome.end_time),
        )
        try:
            async with AsyncSessionFactory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not store outcome for call {outcome.call_id}: {exc}") from exc
        return record

    async def record_call_stats(self, stats: CallStatsMessage, *, reported_by: str | None = None) -> CallStatsRecord:
        record = CallStatsRecord(
            call_id=stats.call_id,
            reported_by=reported_by,
            caller_id=stats.caller,
            callee_id=stats.callee,
            is_video=stats.is_video,
            duration_seconds=stats.duration,
            total_samples=stats.total_samples,
            avg_send_bitrate_kbps=stats.avg_send_bitrate_kbps,
            avg_receive_bitrate_kbps=stats.avg_receive_bitrate_kbps,
            avg_packet_loss_percent=stats.avg_packet_loss_percent,
            avg_rtt_ms=stats.avg_rtt_ms,
            total_data_used_bytes=stats.total_data_used_bytes,
            quality_distribution=stats.quality_distribution.model_dump(),
            samples=list(stats.samples),
            rating=stats.rating,
        )
        try:
            async with AsyncSessionFactory() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not store stats for call {stats.call_id}: {exc}") from exc
        return record

    async def list_recent_calls(self, user_id: str | None = None, *, limit: int = 50) -> list[CallRecord]:
        query = select(CallRecord)
        if user_id:
            query = query.where(or_(CallRecord.caller_id == user_id, CallRecord.callee_id == user_id))
        query = query.order_by(desc(CallRecord.end_time), desc(CallRecord.id)).limit(limit)
        async with AsyncSessionFactory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_call_stats(self, call_id: str) -> list[CallStatsRecord]:
        query = (
            select(CallStatsRecord)
            .where(CallStatsRecord.call_id == call_id)
            .order_by(CallStatsRecord.id)
        )
        async with AsyncSessionFactory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
