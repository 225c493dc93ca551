"""gatedrun server: FastAPI application tying the components together.

Startup:
1. Load the policy sources into the store (deny-all on any failure)
2. Build the execution gate over the store
3. Start the policy watcher when a policy directory is configured

Shutdown:
1. Stop the watcher
2. In-flight streams are torn down by their responses (child killed)
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import anyio
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from gatedrun.config import ServerConfig
from gatedrun.errors import MalformedRequest, PreExecutionError
from gatedrun.gate import Deny, ExecutionGate, Invocation
from gatedrun.policy.store import PolicyStore, ValidPolicy
from gatedrun.policy.watcher import PolicyWatcher
from gatedrun.protocol import (
    NDJSON_MEDIA_TYPE,
    ErrorBody,
    ErrorEvent,
    ExitEvent,
    RunRequest,
    StartEvent,
    StderrEvent,
    StdoutEvent,
    encode_event,
)
from gatedrun.runner import ProcessStream, run_aggregate

logger = logging.getLogger(__name__)


class GatedRunServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, config: ServerConfig | None = None):
        self.config = config or ServerConfig.from_env()

        # Components (initialized in start())
        self.store: PolicyStore | None = None
        self.gate: ExecutionGate | None = None
        self.watcher: PolicyWatcher | None = None

    async def start(self) -> None:
        logger.info("gatedrun server starting (%s:%d)", self.config.host, self.config.port)

        self.store = PolicyStore.from_sources(self.config.policy_dir, self.config.policy_file)
        self.gate = ExecutionGate(self.store)

        if self.config.policy_dir is not None:
            self.watcher = PolicyWatcher(
                self.store,
                self.config.policy_dir,
                debounce=self.config.reload_debounce,
            )
            await self.watcher.start()
        elif self.config.policy_file is not None:
            logger.info("Legacy policy file in use; live reload is disabled")

    async def stop(self) -> None:
        logger.info("gatedrun server shutting down")
        if self.watcher:
            await self.watcher.stop()
            self.watcher = None

    async def authorize(self, request: RunRequest) -> Invocation:
        """Gate a request; raises the typed pre-execution error on Deny."""
        if self.gate is None:
            raise PreExecutionError("server is not started")
        cwd = Path(request.cwd) if request.cwd else None
        outcome = await self.gate.authorize(request.executable, request.args, request.env, cwd)
        if isinstance(outcome, Deny):
            raise outcome.error
        return outcome.invocation

    def health(self) -> dict:
        policy: dict = {"mode": "uninitialized"}
        if self.store is not None:
            state = self.store.state
            if isinstance(state, ValidPolicy):
                policy = {
                    "mode": state.mode,
                    "source": state.source,
                    "module_count": state.module_count,
                    "digest": state.digest,
                    "loaded_at": state.loaded_at.isoformat(),
                }
            else:
                policy = {
                    "mode": state.mode,
                    "reason": state.reason,
                    "since": state.since.isoformat(),
                }
        watcher = None
        if self.watcher is not None:
            watcher = {"status": self.watcher.status, "reloads": self.watcher.reload_count}
        return {"status": "ok", "policy": policy, "watcher": watcher}


# ── Streaming ────────────────────────────────────────────────────────────────


async def stream_events(stream: ProcessStream) -> AsyncIterator[bytes]:
    """Render a running child as NDJSON: start, output*, then one terminal event."""
    started = time.monotonic()
    yield encode_event(StartEvent(pid=stream.pid, command=stream.command))
    try:
        async for name, chunk in stream:
            if name == "stdout":
                yield encode_event(StdoutEvent.from_bytes(chunk))
            else:
                yield encode_event(StderrEvent.from_bytes(chunk))
        exit_code = await stream.wait()
    except Exception as exc:
        logger.exception("Stream for %s (pid=%d) failed", stream.command, stream.pid)
        yield encode_event(ErrorEvent(message=str(exc)))
        return

    logger.info(
        "Completed %s (pid=%d, exit=%s, %.2fs)",
        stream.command,
        stream.pid,
        exit_code,
        time.monotonic() - started,
    )
    yield encode_event(ExitEvent(exit_code=exit_code))


class ProcessStreamingResponse(StreamingResponse):
    """NDJSON response that owns a child process.

    However the response ends (finished, client gone, server shutting down),
    the child is killed and reaped before ``__call__`` returns.
    """

    def __init__(self, stream: ProcessStream):
        self.process_stream = stream
        super().__init__(
            stream_events(stream),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self.process_stream.process.returncode is None:
                logger.info(
                    "Client disconnected; terminating %s (pid=%d)",
                    self.process_stream.command,
                    self.process_stream.pid,
                )
            with anyio.CancelScope(shield=True):
                await self.process_stream.aclose()


# ── FastAPI App ──────────────────────────────────────────────────────────────


def _error_response(status_code: int, message: str, kind: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=message, kind=kind).model_dump(),
    )


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "invalid request body: " + "; ".join(parts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    server: GatedRunServer = app.state.gatedrun
    await server.start()
    yield
    await server.stop()


def create_app(config: ServerConfig | None = None) -> FastAPI:
    """Create the FastAPI application."""
    server = GatedRunServer(config)

    app = FastAPI(
        title="gatedrun",
        version="0.1.0",
        description="Policy-gated remote command execution",
        lifespan=lifespan,
    )
    app.state.gatedrun = server

    @app.exception_handler(RequestValidationError)
    async def _malformed(request: Request, exc: RequestValidationError):
        error = MalformedRequest(_describe_validation_error(exc))
        logger.info("Rejected malformed request to %s: %s", request.url.path, error)
        return _error_response(error.status_code, str(error), error.kind)

    @app.exception_handler(PreExecutionError)
    async def _pre_execution(request: Request, exc: PreExecutionError):
        if exc.status_code >= 500:
            logger.error("Request to %s failed before start: %s", request.url.path, exc)
        return _error_response(exc.status_code, str(exc), exc.kind)

    @app.post("/raw")
    async def raw(body: RunRequest):
        """Run a command and stream its output as NDJSON events."""
        invocation = await server.authorize(body)
        stream = await ProcessStream.start(invocation, server.config.default_cwd)
        return ProcessStreamingResponse(stream)

    @app.post("/run")
    async def run(body: RunRequest):
        """Run a command to completion and return capped output."""
        invocation = await server.authorize(body)
        started = time.monotonic()
        result = await run_aggregate(invocation, server.config.default_cwd)
        logger.info(
            "Completed %s (exit=%s, %.2fs)",
            invocation.command,
            result.exit_code,
            time.monotonic() - started,
        )
        return result.to_dict()

    @app.get("/health")
    async def health():
        """Health check with the live policy state."""
        return server.health()

    return app
