"""Chat button ids decoded once into typed commands."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from coordinator.services.coordinator import LeaveReason, QueueCoordinator
from coordinator.services.errors import Outcome


class UnknownCommand(ValueError):
    """Raised when a button id does not map to any queue command."""


@dataclass(frozen=True)
class Command:
    station_id: int
    user_id: str
    extra: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Join(Command):
    pass


@dataclass(frozen=True)
class Leave(Command):
    pass


@dataclass(frozen=True)
class Reserve(Command):
    pass


@dataclass(frozen=True)
class StartSession(Command):
    pass


@dataclass(frozen=True)
class StopSession(Command):
    pass


@dataclass(frozen=True)
class Status(Command):
    pass


_BUTTON_PATTERN = re.compile(r"^(?P<action>[a-z_]+?)_(?P<station_id>\d+)$")

_ACTIONS: dict[str, type[Command]] = {
    "join_queue": Join,
    "book_station": Join,
    "cancel_queue": Leave,
    "confirm_cancel": Leave,
    "reserve_station": Reserve,
    "start_session": StartSession,
    "session_stop": StopSession,
    "queue_status": Status,
}


def parse_button_id(button_id: str, user_id: str, extra: dict[str, Any] | None = None) -> Command:
    """Decode ``<action>_<station_id>`` into a command.

    >>> parse_button_id("join_queue_12", "15551234567")
    Join(station_id=12, user_id='15551234567', extra={})
    """
    match = _BUTTON_PATTERN.match(button_id.strip())
    if not match:
        raise UnknownCommand(f"unrecognised button id: {button_id!r}")
    command_type = _ACTIONS.get(match.group("action"))
    if command_type is None:
        raise UnknownCommand(f"unknown action in button id: {button_id!r}")
    return command_type(int(match.group("station_id")), user_id, dict(extra or {}))


async def dispatch(coordinator: QueueCoordinator, command: Command) -> Outcome[Any]:
    """Run the coordinator operation a command stands for."""
    station_id, user_id, extra = command.station_id, command.user_id, command.extra

    if isinstance(command, Join):
        return await coordinator.join(user_id, station_id)
    if isinstance(command, Leave):
        return await coordinator.leave(user_id, station_id, extra.get("reason", LeaveReason.USER_CANCELLED))
    if isinstance(command, Reserve):
        return await coordinator.reserve(user_id, station_id, extra.get("ttl_minutes"))
    if isinstance(command, StartSession):
        return await coordinator.start_session(user_id, station_id, extra.get("metrics"))
    if isinstance(command, StopSession):
        return await coordinator.stop_session(user_id, station_id, extra.get("metrics"))
    if isinstance(command, Status):
        return Outcome.success(await coordinator.get_status(user_id, station_id))
    raise UnknownCommand(f"no handler for {type(command).__name__}")
