"""run-remote: execute a command on a gatedrun server as if it ran locally.

    run-remote [--server URL] [--keep-env NAMES]... -- <executable> [args...]

The remote stdout/stderr bytes are written to the local stdout/stderr as they
arrive and the remote exit code becomes the local one.  Anything that goes
wrong on this side (usage, missing env, rejection, transport, protocol)
exits with ``LOCAL_FAILURE_EXIT_CODE`` so it can be told apart from the
remote command's own status.
"""

from __future__ import annotations

import asyncio
import binascii
import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import BinaryIO

import httpx
from pydantic import ValidationError

from gatedrun.errors import (
    ClientError,
    ClientOutputError,
    ClientPreflightError,
    ClientProtocolError,
    ClientTransportError,
    RemoteRuntimeError,
    ServerRejected,
    UsageError,
)
from gatedrun.protocol import (
    TERMINAL_EVENTS,
    ErrorEvent,
    ExitEvent,
    StderrEvent,
    StdoutEvent,
    StreamEvent,
    decode_event,
    decode_payload,
)

logger = logging.getLogger(__name__)

LOCAL_FAILURE_EXIT_CODE = 125
# Used when the remote process ended without a numeric status (signal).
UNAVAILABLE_EXIT_CODE = 1
SERVER_ENV_VAR = "RUN_REMOTE_SERVER"
CONNECT_TIMEOUT = 10.0

USAGE = "usage: run-remote [--server URL] [--keep-env NAME[,NAME...]]... -- <executable> [args...]"


# ── Arguments ────────────────────────────────────────────────────────────────


@dataclass
class RemoteArgs:
    executable: str
    args: list[str] = field(default_factory=list)
    server: str | None = None
    keep_env: list[str] = field(default_factory=list)
    show_help: bool = False


def _split_names(value: str) -> list[str]:
    names = [n.strip() for n in value.split(",") if n.strip()]
    if not names:
        raise UsageError("--keep-env requires at least one variable name")
    return names


def parse_args(argv: list[str]) -> RemoteArgs:
    """Parse the option block before the mandatory ``--`` delimiter."""
    if "--" not in argv:
        if any(a in ("-h", "--help") for a in argv):
            return RemoteArgs(executable="", show_help=True)
        raise UsageError("missing '--' before the remote command")

    split = argv.index("--")
    options, command = argv[:split], argv[split + 1 :]

    server: str | None = None
    keep_env: list[str] = []
    i = 0
    while i < len(options):
        opt = options[i]
        if opt in ("-h", "--help"):
            return RemoteArgs(executable="", show_help=True)
        if opt in ("--server", "--keep-env"):
            if i + 1 >= len(options):
                raise UsageError(f"{opt} requires a value")
            value = options[i + 1]
            i += 2
        elif opt.startswith("--server=") or opt.startswith("--keep-env="):
            opt, value = opt.split("=", 1)
            i += 1
        else:
            raise UsageError(f"unknown option: {opt}")

        if opt == "--server":
            server = value
        else:
            for name in _split_names(value):
                if name not in keep_env:
                    keep_env.append(name)

    if not command or not command[0]:
        raise UsageError("missing executable after '--'")

    return RemoteArgs(
        executable=command[0],
        args=command[1:],
        server=server,
        keep_env=keep_env,
    )


def resolve_server_url(cli_value: str | None, environ: Mapping[str, str]) -> str:
    """The target must be a full http(s) URL; no shorthand is expanded."""
    raw = cli_value if cli_value is not None else environ.get(SERVER_ENV_VAR, "")
    raw = raw.strip()
    if not raw:
        raise UsageError(f"{SERVER_ENV_VAR} must be set (or pass --server)")
    try:
        url: httpx.URL | None = httpx.URL(raw)
    except httpx.InvalidURL:
        url = None
    if url is None or url.scheme not in ("http", "https") or not url.host:
        raise UsageError(
            f"{SERVER_ENV_VAR} must be a full URL (example: http://127.0.0.1:8000/raw), got {raw!r}"
        )
    return raw


def collect_forwarded_env(names: list[str], environ: Mapping[str, str]) -> dict[str, str]:
    """Return the named variables; every one of them must be set locally."""
    missing = sorted({name for name in names if name not in environ})
    if missing:
        raise ClientPreflightError(missing)
    return {name: environ[name] for name in names}


# ── Stream decoding ──────────────────────────────────────────────────────────


class EventStreamDecoder:
    """Incremental NDJSON decoder that enforces the event sequence.

    Lines may be split across network reads; partial lines are buffered until
    their newline arrives.  ``close()`` must be called at end of body.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.started = False
        self.finished = False

    def feed(self, data: bytes) -> list[StreamEvent]:
        self._buffer.extend(data)
        events = []
        while (idx := self._buffer.find(b"\n")) != -1:
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if line.strip():
                events.append(self._accept(line))
        return events

    def close(self) -> list[StreamEvent]:
        events = []
        if self._buffer.strip():
            events.append(self._accept(bytes(self._buffer)))
            self._buffer.clear()
        if not self.finished:
            raise ClientProtocolError("stream ended without an exit or error event")
        return events

    def _accept(self, line: bytes) -> StreamEvent:
        if self.finished:
            raise ClientProtocolError("event received after the terminal event")
        try:
            event = decode_event(line)
        except ValidationError as exc:
            raise ClientProtocolError(f"malformed event {line[:200]!r}: {exc}") from exc

        if event.event == "start":
            if self.started:
                raise ClientProtocolError("duplicate start event")
            self.started = True
        elif not self.started:
            raise ClientProtocolError(f"'{event.event}' event before start")

        if event.event in TERMINAL_EVENTS:
            self.finished = True
        return event


# ── Request ──────────────────────────────────────────────────────────────────


@dataclass
class RemoteRequest:
    url: str
    executable: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def to_body(self) -> dict:
        body = {"executable": self.executable, "args": self.args, "env": self.env}
        if self.cwd is not None:
            body["cwd"] = self.cwd
        return body


def _rejection(response: httpx.Response) -> ServerRejected:
    kind = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        message = payload["error"]
        kind = payload.get("kind")
    else:
        message = response.text.strip() or response.reason_phrase
    return ServerRejected(response.status_code, message, kind)


def _write(out: BinaryIO, event: StdoutEvent | StderrEvent) -> None:
    try:
        data = decode_payload(event)
    except (binascii.Error, ValueError) as exc:
        raise ClientProtocolError(f"invalid base64 in {event.event} event: {exc}") from exc
    try:
        out.write(data)
        out.flush()
    except OSError as exc:
        raise ClientOutputError(f"{event.event}: {exc}") from exc


def _handle(event: StreamEvent, stdout: BinaryIO, stderr: BinaryIO) -> int | None:
    """Apply one event locally; returns the exit code on a terminal event."""
    if isinstance(event, StdoutEvent):
        _write(stdout, event)
    elif isinstance(event, StderrEvent):
        _write(stderr, event)
    elif isinstance(event, ExitEvent):
        if event.exit_code is None:
            logger.debug("Remote exit code unavailable; using %d", UNAVAILABLE_EXIT_CODE)
            return UNAVAILABLE_EXIT_CODE
        return event.exit_code
    elif isinstance(event, ErrorEvent):
        raise RemoteRuntimeError(event.message)
    return None


async def run_remote_request(
    request: RemoteRequest,
    stdout: BinaryIO,
    stderr: BinaryIO,
    client: httpx.AsyncClient | None = None,
) -> int:
    """Send the request and replay the event stream; returns the remote exit code."""
    owns_client = client is None
    if client is None:
        # No read timeout: remote commands may run arbitrarily long.
        client = httpx.AsyncClient(timeout=httpx.Timeout(CONNECT_TIMEOUT, read=None))

    try:
        async with client.stream("POST", request.url, json=request.to_body()) as response:
            if not response.is_success:
                await response.aread()
                raise _rejection(response)

            decoder = EventStreamDecoder()
            async for chunk in response.aiter_bytes():
                for event in decoder.feed(chunk):
                    code = _handle(event, stdout, stderr)
                    if code is not None:
                        return code
            for event in decoder.close():
                code = _handle(event, stdout, stderr)
                if code is not None:
                    return code
            # close() raised unless a terminal event was seen
            raise ClientProtocolError("stream ended without an exit or error event")
    except httpx.HTTPError as exc:
        raise ClientTransportError(f"{type(exc).__name__}: {exc}") from exc
    finally:
        if owns_client:
            await client.aclose()


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if environ is None:
        environ = os.environ

    try:
        options = parse_args(argv)
        if options.show_help:
            print(USAGE)
            return 0
        url = resolve_server_url(options.server, environ)
        env = collect_forwarded_env(options.keep_env, environ)
        try:
            cwd = os.getcwd()
        except OSError as exc:
            raise UsageError(f"cannot determine the current directory: {exc}") from exc

        request = RemoteRequest(
            url=url,
            executable=options.executable,
            args=options.args,
            env=env,
            cwd=cwd,
        )
        return asyncio.run(
            run_remote_request(request, sys.stdout.buffer, sys.stderr.buffer)
        )
    except UsageError as exc:
        print(f"run-remote: {exc}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return LOCAL_FAILURE_EXIT_CODE
    except ClientError as exc:
        print(f"run-remote: {exc}", file=sys.stderr)
        return LOCAL_FAILURE_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())
