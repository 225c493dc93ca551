"""Policy decision engine.

- Rego modules compiled as one unit per directory (``store``)
- Evaluation through the embedded regorus interpreter (``evaluator``)
- Debounced live reload with deny-all on any failure (``watcher``)
"""

from .evaluator import DECISION_QUERY, PolicyCompileError, PolicyEvaluator, RegoEvaluator
from .store import (
    DenyAll,
    PolicyDecision,
    PolicyDecisionInput,
    PolicyState,
    PolicyStore,
    ValidPolicy,
    load_policy_dir,
    load_policy_file,
    load_policy_sources,
)
from .watcher import PolicyWatcher

__all__ = [
    "DECISION_QUERY",
    "DenyAll",
    "PolicyCompileError",
    "PolicyDecision",
    "PolicyDecisionInput",
    "PolicyEvaluator",
    "PolicyState",
    "PolicyStore",
    "PolicyWatcher",
    "RegoEvaluator",
    "ValidPolicy",
    "load_policy_dir",
    "load_policy_file",
    "load_policy_sources",
]
