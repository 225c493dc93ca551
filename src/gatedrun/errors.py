"""Typed exceptions for gatedrun.

Server side, everything that can go wrong before a child process exists is a
``PreExecutionError``: it carries the failure class (``kind``) and the HTTP
status the adapters answer with, and it never leaves a partial side effect
behind.  Failures after a stream has started are ``RuntimeStreamFailure`` and
are rendered as a single terminal ``error`` event.

Client side, every failure is a ``ClientError`` and maps to the local failure
exit code.
"""

from __future__ import annotations

MALFORMED_REQUEST = "malformed_request"
POLICY_DENIED = "policy_denied"
INTERNAL_ERROR = "internal_error"


class GatedRunError(Exception):
    """Base class for all gatedrun errors."""


# ── Pre-execution (server) ───────────────────────────────────────────────────


class PreExecutionError(GatedRunError):
    kind: str = INTERNAL_ERROR
    status_code: int = 500


class MalformedRequest(PreExecutionError):
    kind = MALFORMED_REQUEST
    status_code = 400


class PathResolutionError(PreExecutionError):
    kind = POLICY_DENIED
    status_code = 403

    def __init__(self, command: str, details: str) -> None:
        super().__init__(f"Failed to resolve executable path for '{command}': {details}")
        self.command = command


class HashComputationError(PreExecutionError):
    kind = POLICY_DENIED
    status_code = 403

    def __init__(self, command: str, details: str) -> None:
        super().__init__(f"Failed to compute executable hash for '{command}': {details}")
        self.command = command


class PolicyDenied(PreExecutionError):
    kind = POLICY_DENIED
    status_code = 403

    def __init__(self, command: str) -> None:
        super().__init__(f"Command not allowed: {command}")
        self.command = command


class PolicyEvaluationError(PreExecutionError):
    """The decision query failed or did not produce a boolean."""

    kind = POLICY_DENIED
    status_code = 403


class PolicyDenyAll(PreExecutionError):
    kind = POLICY_DENIED
    status_code = 403

    def __init__(self, details: str) -> None:
        super().__init__(f"Policy deny-all is active: {details}")
        self.details = details


class SpawnFailure(PreExecutionError):
    def __init__(self, command: str, details: str) -> None:
        super().__init__(f"Failed to start subprocess '{command}': {details}")
        self.command = command


# ── After stream start (server) ──────────────────────────────────────────────


class RuntimeStreamFailure(GatedRunError):
    """Raised once a stream has started; rendered as one ``error`` event."""


# ── Remote client ────────────────────────────────────────────────────────────


class ClientError(GatedRunError):
    """Base class for remote client failures."""


class UsageError(ClientError):
    pass


class ClientPreflightError(ClientError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "local environment variable(s) are not set: " + ", ".join(missing)
        )
        self.missing = missing


class ServerRejected(ClientError):
    def __init__(self, status_code: int, message: str, kind: str | None = None) -> None:
        label = f"{status_code} {kind}" if kind else str(status_code)
        super().__init__(f"server rejected request ({label}): {message}")
        self.status_code = status_code
        self.message = message
        self.kind = kind


class ClientProtocolError(ClientError):
    def __init__(self, details: str) -> None:
        super().__init__(f"stream protocol error: {details}")


class ClientTransportError(ClientError):
    def __init__(self, details: str) -> None:
        super().__init__(f"request failed: {details}")


class ClientOutputError(ClientError):
    def __init__(self, details: str) -> None:
        super().__init__(f"failed writing remote output locally: {details}")


class RemoteRuntimeError(ClientError):
    def __init__(self, message: str) -> None:
        super().__init__(f"remote runtime error: {message}")
        self.message = message
