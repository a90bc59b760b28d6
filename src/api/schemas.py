"""API-facing Pydantic models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PresenceResponse(BaseModel):
    users: list[str]
    count: int


class CallRecordResponse(BaseModel):
    call_id: str
    caller_id: str
    callee_id: str
    is_video: bool
    status: str = Field(description="One of missed, rejected, completed.")
    duration_seconds: float
    start_time: datetime
    end_time: datetime


class CallStatsResponse(BaseModel):
    call_id: str
    reported_by: str | None
    caller_id: str
    callee_id: str
    is_video: bool
    duration_seconds: float
    total_samples: int
    avg_send_bitrate_kbps: float
    avg_receive_bitrate_kbps: float
    avg_packet_loss_percent: float
    avg_rtt_ms: float
    total_data_used_bytes: int
    quality_distribution: dict[str, int]
    samples: list[dict]
    rating: int | None = None
