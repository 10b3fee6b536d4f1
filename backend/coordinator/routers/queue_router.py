"""Queue API routes."""

import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from coordinator.core.dependencies import get_coordinator
from coordinator.services.commands import UnknownCommand, dispatch, parse_button_id
from coordinator.services.coordinator import LeaveReason, QueueCoordinator
from coordinator.services.errors import Outcome, QueueErrorKind
from shared.models.queue import QueueEntry, UsageSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["queue"])

_ERROR_STATUS = {
    QueueErrorKind.QUEUE_FULL: 409,
    QueueErrorKind.NO_ACTIVE_RESERVATION: 409,
    QueueErrorKind.CONCURRENCY_CONFLICT: 409,
    QueueErrorKind.NOT_FOUND: 404,
    QueueErrorKind.RESOURCE_UNAVAILABLE: 422,
}


# ============================================
# Response / Request Models
# ============================================


class StationUserRequest(BaseModel):
    station_id: int = Field(..., ge=1)
    user_id: str = Field(..., min_length=1)


class LeaveRequest(StationUserRequest):
    reason: LeaveReason = LeaveReason.USER_CANCELLED


class ReserveRequest(StationUserRequest):
    ttl_minutes: float | None = Field(default=None, gt=0, le=240)


class SessionRequest(StationUserRequest):
    metrics: dict[str, Any] | None = None


class ForceStopRequest(BaseModel):
    reason: str = Field(default="emergency_stop", min_length=1, max_length=64)


class CommandRequest(BaseModel):
    button_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    extra: dict[str, Any] | None = None


class QueueEntryResponse(BaseModel):
    id: int
    user_id: str
    station_id: int
    status: str
    position: int | None = None
    estimated_wait_minutes: int | None = None
    reservation_expiry: datetime | None = None
    joined_at: datetime | None = None

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            station_id=entry.station_id,
            status=entry.status.value,
            position=entry.position,
            estimated_wait_minutes=entry.estimated_wait_minutes,
            reservation_expiry=entry.reservation_expiry,
            joined_at=entry.joined_at,
        )


class UsageSessionResponse(BaseModel):
    id: int
    queue_entry_id: int
    station_id: int
    user_id: str
    started_at: datetime
    ended_at: datetime | None = None
    start_metrics: dict[str, Any] = {}
    end_metrics: dict[str, Any] = {}

    @classmethod
    def from_session(cls, session: UsageSession) -> "UsageSessionResponse":
        return cls(
            id=session.id,
            queue_entry_id=session.queue_entry_id,
            station_id=session.station_id,
            user_id=session.user_id,
            started_at=session.started_at,
            ended_at=session.ended_at,
            start_metrics=session.start_metrics,
            end_metrics=session.end_metrics,
        )


class JoinResponse(BaseModel):
    entry_id: int
    position: int | None
    estimated_wait_minutes: int | None
    already_queued: bool = False


class OkResponse(BaseModel):
    ok: bool


class SessionStartedResponse(BaseModel):
    session_id: int
    entry_id: int
    started_at: datetime


class SessionStoppedResponse(BaseModel):
    session_id: int
    started_at: datetime
    ended_at: datetime
    duration_minutes: float
    start_metrics: dict[str, Any] = {}
    end_metrics: dict[str, Any] = {}


class ForceStopResponse(BaseModel):
    station_id: int
    stopped_sessions: int


class QueueStatsResponse(BaseModel):
    station_id: int
    total_in_queue: int
    average_wait_minutes: int
    peak_hours: list[str]
    user_position: int | None = None
    user_estimated_wait: int | None = None


class CommandResponse(BaseModel):
    command: str
    station_id: int
    result: Any = None


def _unwrap(outcome: Outcome[Any]) -> Any:
    """Return the value or raise the HTTP error for the failure kind."""
    if outcome.ok:
        return outcome.value
    raise HTTPException(
        status_code=_ERROR_STATUS.get(outcome.error, 400),
        detail={"error": outcome.error.value, "message": outcome.message},
    )


# ============================================
# Queue Endpoints
# ============================================


@router.post("/join", response_model=JoinResponse)
async def join_queue(
    body: StationUserRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> JoinResponse:
    try:
        result = _unwrap(await coordinator.join(body.user_id, body.station_id))
        return JoinResponse(
            entry_id=result.entry_id,
            position=result.position,
            estimated_wait_minutes=result.estimated_wait_minutes,
            already_queued=result.already_queued,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to join queue: {e}")
        raise HTTPException(status_code=500, detail="Failed to join queue") from None


@router.post("/leave", response_model=OkResponse)
async def leave_queue(
    body: LeaveRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> OkResponse:
    try:
        return OkResponse(ok=_unwrap(await coordinator.leave(body.user_id, body.station_id, body.reason)))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to leave queue: {e}")
        raise HTTPException(status_code=500, detail="Failed to leave queue") from None


@router.post("/reserve", response_model=OkResponse)
async def reserve_station(
    body: ReserveRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> OkResponse:
    """Hold the station for the head of the line."""
    try:
        return OkResponse(
            ok=_unwrap(await coordinator.reserve(body.user_id, body.station_id, body.ttl_minutes))
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to reserve station: {e}")
        raise HTTPException(status_code=500, detail="Failed to reserve station") from None


@router.get("/status/{station_id}/{user_id}", response_model=QueueEntryResponse)
async def get_status(
    station_id: int,
    user_id: str,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> QueueEntryResponse:
    try:
        entry = await coordinator.get_status(user_id, station_id)
    except Exception as e:
        logger.exception(f"Failed to get queue status: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch queue status") from None
    if entry is None:
        raise HTTPException(status_code=404, detail="No active queue entry")
    return QueueEntryResponse.from_entry(entry)


@router.get("/users/{user_id}", response_model=list[QueueEntryResponse])
async def get_user_entries(
    user_id: str,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> list[QueueEntryResponse]:
    """All active entries of a user across stations."""
    try:
        return [QueueEntryResponse.from_entry(e) for e in await coordinator.get_user_entries(user_id)]
    except Exception as e:
        logger.exception(f"Failed to get user entries: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch user entries") from None


@router.get("/stations/{station_id}/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    station_id: int,
    user_id: str | None = None,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> QueueStatsResponse:
    try:
        stats = await coordinator.get_queue_stats(station_id, user_id)
        return QueueStatsResponse(
            station_id=stats.station_id,
            total_in_queue=stats.total_in_queue,
            average_wait_minutes=stats.average_wait_minutes,
            peak_hours=stats.peak_hours,
            user_position=stats.user_position,
            user_estimated_wait=stats.user_estimated_wait,
        )
    except Exception as e:
        logger.exception(f"Failed to get queue stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch queue stats") from None


# ============================================
# Session Endpoints
# ============================================


@router.post("/sessions/start", response_model=SessionStartedResponse)
async def start_session(
    body: SessionRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> SessionStartedResponse:
    try:
        started = _unwrap(await coordinator.start_session(body.user_id, body.station_id, body.metrics))
        return SessionStartedResponse(
            session_id=started.session_id, entry_id=started.entry_id, started_at=started.started_at
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to start session: {e}")
        raise HTTPException(status_code=500, detail="Failed to start session") from None


@router.post("/sessions/stop", response_model=SessionStoppedResponse)
async def stop_session(
    body: SessionRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> SessionStoppedResponse:
    try:
        stopped = _unwrap(await coordinator.stop_session(body.user_id, body.station_id, body.metrics))
        return SessionStoppedResponse(
            session_id=stopped.session_id,
            started_at=stopped.started_at,
            ended_at=stopped.ended_at,
            duration_minutes=round(stopped.duration_minutes, 2),
            start_metrics=stopped.start_metrics,
            end_metrics=stopped.end_metrics,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to stop session: {e}")
        raise HTTPException(status_code=500, detail="Failed to stop session") from None


@router.get("/users/{user_id}/sessions", response_model=list[UsageSessionResponse])
async def get_session_history(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> list[UsageSessionResponse]:
    """A user's charging sessions, newest first."""
    try:
        sessions = await coordinator.get_session_history(user_id, limit)
        return [UsageSessionResponse.from_session(s) for s in sessions]
    except Exception as e:
        logger.exception(f"Failed to get session history: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch session history") from None


@router.get("/stations/{station_id}/sessions", response_model=list[UsageSessionResponse])
async def get_station_sessions(
    station_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> list[UsageSessionResponse]:
    try:
        sessions = await coordinator.get_station_sessions(station_id, limit)
        return [UsageSessionResponse.from_session(s) for s in sessions]
    except Exception as e:
        logger.exception(f"Failed to get station sessions: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch station sessions") from None


@router.post("/stations/{station_id}/force-stop", response_model=ForceStopResponse)
async def force_stop_station(
    station_id: int,
    body: ForceStopRequest | None = None,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> ForceStopResponse:
    """Stop every running session at a station."""
    reason = body.reason if body is not None else "emergency_stop"
    try:
        stopped = _unwrap(await coordinator.force_stop_station(station_id, reason))
        return ForceStopResponse(station_id=station_id, stopped_sessions=stopped)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to force stop station {station_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to force stop station") from None


# ============================================
# Chat Commands
# ============================================


@router.post("/commands", response_model=CommandResponse)
async def run_command(
    body: CommandRequest,
    coordinator: QueueCoordinator = Depends(get_coordinator),
) -> CommandResponse:
    """Decode a chat button id and run the matching operation."""
    try:
        command = parse_button_id(body.button_id, body.user_id, body.extra)
    except UnknownCommand as e:
        raise HTTPException(status_code=400, detail=str(e)) from None

    try:
        value = _unwrap(await dispatch(coordinator, command))
        if isinstance(value, QueueEntry):
            value = QueueEntryResponse.from_entry(value)
        elif is_dataclass(value):
            value = asdict(value)
        logger.info(f"Command {body.button_id} handled for {body.user_id}")
        return CommandResponse(command=type(command).__name__, station_id=command.station_id, result=value)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to run command {body.button_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to run command") from None
