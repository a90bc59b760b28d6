"""SQLAlchemy models for call outcomes and per-call telemetry."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class CallRecord(Base):
    """Finalized outcome of one call (missed, rejected or completed)."""

    __tablename__ = "calls"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    caller_id: Mapped[str] = mapped_column(String(128), index=True)
    callee_id: Mapped[str] = mapped_column(String(128), index=True)
    is_video: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(16))
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class CallStatsRecord(Base):
    """Telemetry aggregate reported by a client at the end of a call."""

    __tablename__ = "call_stats"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(64), index=True)
    reported_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    caller_id: Mapped[str] = mapped_column(String(128))
    callee_id: Mapped[str] = mapped_column(String(128))
    is_video: Mapped[bool] = mapped_column(Boolean, default=True)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    total_samples: Mapped[int] = mapped_column(Integer, default=0)
    avg_send_bitrate_kbps: Mapped[float] = mapped_column(Float, default=0.0)
    avg_receive_bitrate_kbps: Mapped[float] = mapped_column(Float, default=0.0)
    avg_packet_loss_percent: Mapped[float] = mapped_column(Float, default=0.0)
    avg_rtt_ms: Mapped[float] = mapped_column(Float, default=0.0)
    total_data_used_bytes: Mapped[int] = mapped_column(Integer, default=0)
    quality_distribution: Mapped[dict[str, int]] = mapped_column(JSON, default=dict)
    samples: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
