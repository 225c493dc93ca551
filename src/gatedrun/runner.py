"""Process runner: spawn an authorized invocation and collect its output.

Two modes share one spawn path:

* ``run_aggregate`` waits for exit and returns both streams, each capped at
  ``MAX_OUTPUT_BYTES`` with ``TRUNCATION_MARKER`` appended on overflow.
* ``ProcessStream`` hands out chunks as they are read, uncapped.  Reader
  tasks push into a bounded queue, so a consumer that stops pulling pauses
  the readers and, once the pipe fills, the child.

The child never goes through a shell and never inherits the server
environment wholesale; see ``build_command_env``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from gatedrun.errors import RuntimeStreamFailure, SpawnFailure
from gatedrun.gate import Invocation

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024
TRUNCATION_MARKER = "\n...truncated..."
STREAM_CHUNK_SIZE = 64 * 1024
DEFAULT_QUEUE_SIZE = 16

# Copied from the server unless the request sets them.
BASELINE_ENV_VARS = ("HOME", "LANG")

# Always taken from the server; request values are discarded.
SERVER_OWNED_ENV_VARS = (
    "PATH",
    "http_proxy",
    "https_proxy",
    "no_proxy",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
)


def build_command_env(
    request_env: Mapping[str, str],
    server_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the child environment from scratch.

    Order matters: baseline, then the (already policy-validated) request
    values, then the server-owned variables, which win.
    """
    if server_env is None:
        server_env = os.environ

    env: dict[str, str] = {}
    for key in BASELINE_ENV_VARS:
        if key in server_env:
            env[key] = server_env[key]

    env.update(request_env)

    for key in SERVER_OWNED_ENV_VARS:
        if key in server_env:
            env[key] = server_env[key]
        else:
            env.pop(key, None)
    return env


def exit_code_of(returncode: int | None) -> int | None:
    """Numeric exit status, or None when the child was killed by a signal."""
    if returncode is None or returncode < 0:
        return None
    return returncode


async def spawn(
    invocation: Invocation,
    default_cwd: Path | None = None,
) -> asyncio.subprocess.Process:
    """Start the child with piped stdout/stderr and no stdin."""
    cwd = invocation.cwd or default_cwd
    try:
        process = await asyncio.create_subprocess_exec(
            str(invocation.path),
            *invocation.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=build_command_env(invocation.env),
        )
    except OSError as exc:
        raise SpawnFailure(invocation.command, str(exc)) from exc
    logger.info("Spawned %s (pid=%d, cwd=%s)", invocation.command, process.pid, cwd)
    return process


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        else:
            logger.info("Killed child pid=%d", process.pid)
    await process.wait()


# ── Aggregate mode ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int | None
    stdout: str
    stderr: str

    def to_dict(self) -> dict:
        return {"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code}


class _CappedBuffer:
    """Keeps the first ``limit`` bytes and remembers whether more arrived."""

    def __init__(self, limit: int = MAX_OUTPUT_BYTES) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False

    def feed(self, chunk: bytes) -> None:
        room = self.limit - len(self.data)
        if len(chunk) > room:
            self.truncated = True
            chunk = chunk[: max(room, 0)]
        self.data.extend(chunk)

    def render(self) -> str:
        text = bytes(self.data).decode("utf-8", errors="replace")
        if self.truncated:
            text += TRUNCATION_MARKER
        return text


async def _drain_capped(reader: asyncio.StreamReader, buffer: _CappedBuffer) -> None:
    # Keep reading past the cap so the child never blocks on a full pipe.
    while chunk := await reader.read(STREAM_CHUNK_SIZE):
        buffer.feed(chunk)


async def run_aggregate(
    invocation: Invocation,
    default_cwd: Path | None = None,
) -> ExecutionResult:
    """Run to completion and return capped, decoded output."""
    process = await spawn(invocation, default_cwd)
    stdout = _CappedBuffer()
    stderr = _CappedBuffer()
    try:
        await asyncio.gather(
            _drain_capped(process.stdout, stdout),
            _drain_capped(process.stderr, stderr),
        )
        returncode = await process.wait()
    finally:
        await _terminate(process)

    return ExecutionResult(
        exit_code=exit_code_of(returncode),
        stdout=stdout.render(),
        stderr=stderr.render(),
    )


# ── Streaming mode ───────────────────────────────────────────────────────────

_EOF = object()


class ProcessStream:
    """Async iterator of ``(stream_name, chunk)`` pairs from a running child.

    Iteration ends once both pipes hit EOF; ``wait()`` then returns the exit
    code.  ``aclose()`` may be called at any point and is idempotent: it
    kills and reaps the child and cancels the readers.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str = "",
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.process = process
        self.command = command
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._open_streams = 2
        self._closed = False
        self._readers = [
            asyncio.create_task(self._read("stdout", process.stdout)),
            asyncio.create_task(self._read("stderr", process.stderr)),
        ]

    @classmethod
    async def start(
        cls,
        invocation: Invocation,
        default_cwd: Path | None = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> "ProcessStream":
        process = await spawn(invocation, default_cwd)
        return cls(process, invocation.command, queue_size)

    @property
    def pid(self) -> int:
        return self.process.pid

    async def _read(self, name: str, reader: asyncio.StreamReader) -> None:
        try:
            while chunk := await reader.read(STREAM_CHUNK_SIZE):
                await self._queue.put((name, chunk))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._queue.put((name, exc))
            return
        await self._queue.put((name, _EOF))

    def __aiter__(self) -> "ProcessStream":
        return self

    async def __anext__(self) -> tuple[str, bytes]:
        while self._open_streams:
            name, item = await self._queue.get()
            if item is _EOF:
                self._open_streams -= 1
                continue
            if isinstance(item, Exception):
                raise RuntimeStreamFailure(f"failed reading {name}: {item}") from item
            return name, item
        raise StopAsyncIteration

    async def wait(self) -> int | None:
        return exit_code_of(await self.process.wait())

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await _terminate(self.process)
        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
