"""Policy store: compiles policy sources into one live, swappable state.

A directory of ``.rego`` modules is compiled as a single unit: one bad file
invalidates the whole set.  Whatever goes wrong while loading, the result is
a ``DenyAll`` state rather than an exception, so the request path never has
to handle a load failure.

Exactly one ``PolicyState`` is live at a time.  States are immutable;
``PolicyStore.swap()`` replaces the reference wholesale and readers that
captured the previous reference keep evaluating against it.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from gatedrun.errors import PolicyEvaluationError
from gatedrun.policy.evaluator import (
    DECISION_QUERY,
    PolicyCompileError,
    PolicyEvaluator,
    RegoEvaluator,
)

logger = logging.getLogger(__name__)

# Deny categories reported by PolicyStore.decide().
DENIED = "policy_denied"
EVALUATION_ERROR = "policy_evaluation_error"
DENY_ALL = "policy_deny_all"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── States ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidPolicy:
    """A compiled module set and the identity of the sources it came from."""

    evaluator: PolicyEvaluator
    digest: str
    module_count: int
    source: str
    loaded_at: datetime = field(default_factory=_now)

    mode = "valid"


@dataclass(frozen=True)
class DenyAll:
    """Degraded state: every command is denied until a good reload."""

    reason: str
    since: datetime = field(default_factory=_now)

    mode = "deny_all"


PolicyState = ValidPolicy | DenyAll


@dataclass(frozen=True)
class PolicyDecisionInput:
    command: str
    path: str
    hash: str
    args: list[str]
    env: dict[str, str]

    def to_document(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "path": self.path,
            "hash": self.hash,
            "args": list(self.args),
            "env": dict(self.env),
        }


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    category: str | None = None
    reason: str = ""


# ── Loading ──────────────────────────────────────────────────────────────────


def collect_rego_files(directory: Path) -> list[Path]:
    """Return every ``.rego`` file under ``directory``, sorted by path."""
    return sorted(p for p in directory.rglob("*.rego") if p.is_file())


def _digest(modules: dict[str, str]) -> str:
    h = hashlib.sha256()
    for name in sorted(modules):
        h.update(name.encode())
        h.update(b"\0")
        h.update(modules[name].encode())
        h.update(b"\0")
    return h.hexdigest()


def compile_modules(
    modules: dict[str, str],
    source: str,
    evaluator_cls: type[PolicyEvaluator] = RegoEvaluator,
) -> PolicyState:
    """Compile already-read module sources into a state."""
    if not modules:
        return DenyAll(f"no .rego files found in {source}")
    try:
        evaluator = evaluator_cls.compile(modules)
    except PolicyCompileError as exc:
        return DenyAll(f"rego policy load failed: {exc}")
    return ValidPolicy(
        evaluator=evaluator,
        digest=_digest(modules),
        module_count=len(modules),
        source=source,
    )


def load_policy_dir(
    directory: Path,
    evaluator_cls: type[PolicyEvaluator] = RegoEvaluator,
) -> PolicyState:
    """Compile every policy module under ``directory`` as one unit."""
    directory = Path(directory)
    if not directory.is_dir():
        return DenyAll(f"policy directory '{directory}' does not exist or is not a directory")

    try:
        files = collect_rego_files(directory)
        modules = {
            str(path.relative_to(directory)): path.read_text(encoding="utf-8")
            for path in files
        }
    except (OSError, UnicodeDecodeError) as exc:
        return DenyAll(f"failed reading policy directory '{directory}': {exc}")

    return compile_modules(modules, f"policy directory '{directory}'", evaluator_cls)


def load_policy_file(
    path: Path,
    evaluator_cls: type[PolicyEvaluator] = RegoEvaluator,
) -> PolicyState:
    """Compile a single legacy policy file."""
    path = Path(path)
    try:
        source = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return DenyAll(f"failed reading policy file '{path}': {exc}")
    return compile_modules({path.name: source}, f"policy file '{path}'", evaluator_cls)


def load_policy_sources(
    policy_dir: Path | None,
    policy_file: Path | None,
    evaluator_cls: type[PolicyEvaluator] = RegoEvaluator,
) -> PolicyState:
    """Load from the configured source; the directory wins over the legacy file."""
    if policy_dir is not None:
        if policy_file is not None:
            logger.warning(
                "Both POLICY_DIR and POLICY_FILE are set; using %s, ignoring %s",
                policy_dir,
                policy_file,
            )
        return load_policy_dir(policy_dir, evaluator_cls)
    if policy_file is not None:
        return load_policy_file(policy_file, evaluator_cls)
    return DenyAll("no policy source configured (set POLICY_DIR)")


# ── Store ────────────────────────────────────────────────────────────────────


class PolicyStore:
    """Holds the live ``PolicyState`` reference.

    ``decide``/``query`` read the reference once and never mutate it; the
    watcher publishes new states with ``swap``.  Assigning an attribute is a
    single reference store, so readers see either the old or the new state.
    """

    def __init__(self, state: PolicyState) -> None:
        self._state: PolicyState = state

    @classmethod
    def from_sources(
        cls,
        policy_dir: Path | None,
        policy_file: Path | None = None,
    ) -> "PolicyStore":
        state = load_policy_sources(policy_dir, policy_file)
        if isinstance(state, ValidPolicy):
            logger.info(
                "Policy engine initialized (query=%s, modules=%d, digest=%s)",
                DECISION_QUERY,
                state.module_count,
                state.digest[:12],
            )
        else:
            logger.warning("Policy engine initialized in deny-all mode: %s", state.reason)
        return cls(state)

    @property
    def state(self) -> PolicyState:
        return self._state

    def snapshot(self) -> PolicyState:
        """Capture the current state for the duration of one invocation."""
        return self._state

    def swap(self, state: PolicyState) -> PolicyState:
        """Publish ``state`` and return the one it replaced."""
        previous = self._state
        self._state = state
        return previous

    def decide(
        self,
        decision_input: PolicyDecisionInput,
        state: PolicyState | None = None,
    ) -> PolicyDecision:
        if state is None:
            state = self.snapshot()

        if isinstance(state, DenyAll):
            return PolicyDecision(False, DENY_ALL, state.reason)

        try:
            allowed = state.evaluator.decide(decision_input.to_document())
        except PolicyEvaluationError as exc:
            logger.warning("Policy evaluation error: %s", exc)
            return PolicyDecision(False, EVALUATION_ERROR, str(exc))

        if allowed:
            return PolicyDecision(True)
        return PolicyDecision(False, DENIED, f"Command not allowed: {decision_input.command}")

    def query(self, decision_input: PolicyDecisionInput) -> bool:
        return self.decide(decision_input).allowed
