from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .utils import format_number

CODE_OK = 200
CODE_ERROR = 400
CODE_GONE = 410


class JobStatus(IntEnum):
    SPAWNING = 0
    RUNNING = 1
    ENDED = 2


class EventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class JobRecord:
    session_id: int
    description: str
    command: str
    process_id: int | None
    status: JobStatus
    started_at: str
    updated_at: str
    json_data: str | None
    channel: str | None = None

    def payload(self) -> StatusPayload | None:
        if not self.json_data:
            return None
        raw = json.loads(self.json_data)
        if not isinstance(raw, dict):
            return None
        return StatusPayload.from_dict(raw)


@dataclass(slots=True)
class StatusPayload:
    """What a worker reports about itself.

    Progress counters are typed; anything else a job wants to pass on to
    pollers and listeners travels in ``extra`` and is copied through verbatim.
    """

    code: int = CODE_OK
    message: str | None = None
    current: int | None = None
    total: int | None = None
    dialog_field: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = dict(self.extra)
        output["code"] = self.code
        output["status"] = "OK" if self.ok else "error"
        if self.message is not None:
            output["message"] = self.message
        if self.current is not None:
            output["cCurrent"] = self.current
        if self.total is not None:
            output["cTotal"] = self.total
        if self.dialog_field is not None:
            output["field"] = self.dialog_field
        return output

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StatusPayload:
        extra = dict(raw)
        code = extra.pop("code", CODE_OK)
        extra.pop("status", None)
        current = extra.pop("cCurrent", None)
        total = extra.pop("cTotal", None)
        return cls(
            code=int(code) if code is not None else CODE_OK,
            message=extra.pop("message", None),
            current=int(current) if current is not None else None,
            total=int(total) if total is not None else None,
            dialog_field=extra.pop("field", None),
            extra=extra,
        )


@dataclass(slots=True)
class JobHandle:
    session_id: int
    description: str
    command_line: list[str]


@dataclass(slots=True)
class ChannelEvent:
    event: EventType
    session_id: int | None = None
    data: Any = None
    event_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {"event": self.event.value}
        if self.session_id is not None:
            output["sessionId"] = self.session_id
        if self.data is not None:
            output["data"] = self.data
        if self.event_id is not None:
            output["eventId"] = self.event_id
        return output

    def to_response(self) -> tuple[dict[str, Any], int]:
        """Body and HTTP status for a listener; errors move status and message out of ``data``."""
        body = self.to_dict()
        if self.event != EventType.ERROR or not isinstance(self.data, dict):
            return body, CODE_OK
        data = dict(self.data)
        body["status"] = data.pop("status", "error")
        if "message" in data:
            body["message"] = data.pop("message")
        body["data"] = data
        return body, int(data.get("code", CODE_ERROR))

    @classmethod
    def from_payload(cls, raw: dict[str, Any], event_id: int | None = None) -> ChannelEvent:
        session_id = raw.get("sessionId")
        return cls(
            event=EventType(raw["event"]),
            session_id=int(session_id) if session_id is not None else None,
            data=raw.get("data"),
            event_id=event_id,
        )


@dataclass(slots=True)
class StatusView:
    code: int
    done: bool
    message: str | None = None
    current: int | None = None
    total: int | None = None
    progress: int | None = None
    seconds_passed: int | None = None
    seconds_remaining: int | None = None
    time_remaining: str | None = None
    dialog_field: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == CODE_OK

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = dict(self.extra)
        output["code"] = self.code
        output["status"] = "OK" if self.ok else "error"
        optional = {
            "message": self.message,
            "cCurrent": self.current,
            "cTotal": self.total,
            "progress": self.progress,
            "secondsPassed": self.seconds_passed,
            "secondsRemaining": self.seconds_remaining,
            "timeRemaining": self.time_remaining,
            "field": self.dialog_field,
        }
        for key, value in optional.items():
            if value is not None:
                output[key] = value
        if self.current is not None and self.total:
            output["cCurrentFormatted"] = format_number(self.current)
            output["cTotalFormatted"] = format_number(self.total)
        output["fDone"] = self.done
        return output
