"""Execution gate: resolve, fingerprint and authorize one invocation.

The gate is the only place a request can become an ``Invocation``.  Every
step runs before a process exists, and any failure comes back as ``Deny``
carrying the typed error; nothing is spawned on that path.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from gatedrun.errors import (
    HashComputationError,
    PathResolutionError,
    PolicyDenied,
    PolicyDenyAll,
    PolicyEvaluationError,
    PreExecutionError,
)
from gatedrun.policy.store import (
    DENIED,
    DENY_ALL,
    PolicyDecisionInput,
    PolicyStore,
)

logger = logging.getLogger(__name__)

_HASH_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class Invocation:
    """An authorized command, ready for the runner."""

    command: str
    path: Path
    hash: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None


@dataclass(frozen=True)
class Allow:
    invocation: Invocation


@dataclass(frozen=True)
class Deny:
    error: PreExecutionError


Outcome = Allow | Deny


def resolve_executable(command: str, search_path: str | None = None) -> Path:
    """Resolve ``command`` the way a shell would, against the server PATH.

    Names containing a path separator are not searched; they must point at an
    executable file directly.
    """
    if not command:
        raise PathResolutionError(command, "empty executable name")

    if os.sep in command or (os.altsep and os.altsep in command):
        candidate = Path(command)
        if not candidate.is_file():
            raise PathResolutionError(command, "no such file")
        if not os.access(candidate, os.X_OK):
            raise PathResolutionError(command, "file is not executable")
        return Path(os.path.abspath(candidate))

    found = shutil.which(command, path=search_path)
    if found is None:
        raise PathResolutionError(command, "not found in PATH")
    return Path(os.path.abspath(found))


def sha256_file(path: Path) -> str:
    """Lowercase hex SHA-256 of the file at ``path``."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_HASH_CHUNK):
            h.update(chunk)
    return h.hexdigest()


class ExecutionGate:
    """Turns (executable, args, env, cwd) into Allow or Deny."""

    def __init__(self, store: PolicyStore, search_path: str | None = None) -> None:
        self.store = store
        # None means the server process PATH at call time.
        self.search_path = search_path

    async def authorize(
        self,
        executable: str,
        args: list[str],
        env: dict[str, str],
        cwd: Path | None = None,
    ) -> Outcome:
        # One snapshot per invocation; a concurrent reload does not affect it.
        state = self.store.snapshot()

        try:
            path = resolve_executable(executable, self.search_path)
        except PathResolutionError as exc:
            logger.info("Denied %s: %s", executable, exc)
            return Deny(exc)

        try:
            digest = await asyncio.to_thread(sha256_file, path)
        except OSError as exc:
            failure = HashComputationError(executable, str(exc))
            logger.info("Denied %s: %s", executable, failure)
            return Deny(failure)

        decision_input = PolicyDecisionInput(
            command=executable,
            path=str(path),
            hash=digest,
            args=list(args),
            env=dict(env),
        )
        decision = self.store.decide(decision_input, state=state)

        if decision.allowed:
            logger.info("Allowed %s (%s) args=%s", executable, path, args)
            return Allow(
                Invocation(
                    command=executable,
                    path=path,
                    hash=digest,
                    args=list(args),
                    env=dict(env),
                    cwd=cwd,
                )
            )

        if decision.category == DENY_ALL:
            error: PreExecutionError = PolicyDenyAll(decision.reason)
        elif decision.category == DENIED:
            error = PolicyDenied(executable)
        else:
            error = PolicyEvaluationError(decision.reason)
        logger.info("Denied %s: %s", executable, error)
        return Deny(error)
