"""Wire models for the HTTP surface.

Requests are JSON objects; streaming responses are NDJSON, one event per
line.  Byte payloads travel base64-encoded so arbitrary output survives JSON.
"""

from __future__ import annotations

import base64
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

NDJSON_MEDIA_TYPE = "application/x-ndjson"


# ── Requests ─────────────────────────────────────────────────────────────────


class RunRequest(BaseModel):
    """Body of ``POST /raw`` and ``POST /run``."""

    model_config = ConfigDict(extra="forbid")

    executable: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class ErrorBody(BaseModel):
    error: str
    kind: str


# ── Stream events ────────────────────────────────────────────────────────────


class StartEvent(BaseModel):
    event: Literal["start"] = "start"
    pid: int | None = None
    command: str | None = None


class StdoutEvent(BaseModel):
    event: Literal["stdout"] = "stdout"
    data_b64: str

    @classmethod
    def from_bytes(cls, data: bytes) -> "StdoutEvent":
        return cls(data_b64=base64.b64encode(data).decode("ascii"))


class StderrEvent(BaseModel):
    event: Literal["stderr"] = "stderr"
    data_b64: str

    @classmethod
    def from_bytes(cls, data: bytes) -> "StderrEvent":
        return cls(data_b64=base64.b64encode(data).decode("ascii"))


class ExitEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event: Literal["exit"] = "exit"
    exit_code: int | None = Field(default=None, alias="exitCode")


class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    StartEvent | StdoutEvent | StderrEvent | ExitEvent | ErrorEvent,
    Field(discriminator="event"),
]

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

TERMINAL_EVENTS = frozenset({"exit", "error"})


def encode_event(event: BaseModel) -> bytes:
    """Serialize one event as an NDJSON line."""
    return event.model_dump_json(by_alias=True).encode() + b"\n"


def decode_event(line: bytes | str) -> StreamEvent:
    """Parse one NDJSON line.  Raises pydantic.ValidationError on bad input."""
    return stream_event_adapter.validate_json(line)


def decode_payload(event: StdoutEvent | StderrEvent) -> bytes:
    """Strict base64 decode of an output event.  Raises binascii.Error."""
    return base64.b64decode(event.data_b64, validate=True)
