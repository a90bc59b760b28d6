"""FastAPI routes exposing relay credentials, presence and call history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import get_relay, get_repository
from api.schemas import CallRecordResponse, CallStatsResponse, PresenceResponse
from config.settings import get_settings
from db.repository import CallRepository
from relay.credentials import TurnCredentials, issue_turn_credentials
from relay.server import RelayServer

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("/turn-credentials", response_model=TurnCredentials)
async def get_turn_credentials(user_id: str = Query(min_length=1)) -> TurnCredentials:
    settings = get_settings()
    if not settings.turn_uris:
        raise HTTPException(status_code=503, detail="No relay servers configured.")
    credentials = issue_turn_credentials(
        user_id,
        secret=settings.turn_secret,
        ttl=settings.turn_ttl_seconds,
        uris=settings.turn_uris,
    )
    LOGGER.info("Issued TURN credentials for %s", user_id)
    return credentials


@router.get("/presence", response_model=PresenceResponse)
async def get_presence(relay: RelayServer = Depends(get_relay)) -> PresenceResponse:
    users = relay.online_users()
    return PresenceResponse(users=users, count=len(users))


@router.get("/calls", response_model=list[CallRecordResponse])
async def list_calls(
    user_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    repo: CallRepository = Depends(get_repository),
) -> list[CallRecordResponse]:
    records = await repo.list_recent_calls(user_id, limit=limit)
    return [
        CallRecordResponse(
            call_id=record.call_id,
            caller_id=record.caller_id,
            callee_id=record.callee_id,
            is_video=record.is_video,
            status=record.status,
            duration_seconds=record.duration_seconds,
            start_time=record.start_time,
            end_time=record.end_time,
        )
        for record in records
    ]


@router.get("/calls/{call_id}/stats", response_model=list[CallStatsResponse])
async def get_call_stats(
    call_id: str,
    repo: CallRepository = Depends(get_repository),
) -> list[CallStatsResponse]:
    records = await repo.list_call_stats(call_id)
    if not records:
        raise HTTPException(status_code=404, detail=f"No stats for call {call_id}.")
    return [
        CallStatsResponse(
            call_id=record.call_id,
            reported_by=record.reported_by,
            caller_id=record.caller_id,
            callee_id=record.callee_id,
            is_video=record.is_video,
            duration_seconds=record.duration_seconds,
            total_samples=record.total_samples,
            avg_send_bitrate_kbps=record.avg_send_bitrate_kbps,
            avg_receive_bitrate_kbps=record.avg_receive_bitrate_kbps,
            avg_packet_loss_percent=record.avg_packet_loss_percent,
            avg_rtt_ms=record.avg_rtt_ms,
            total_data_used_bytes=record.total_data_used_bytes,
            quality_distribution=record.quality_distribution,
            samples=record.samples,
            rating=record.rating,
        )
        for record in records
    ]
