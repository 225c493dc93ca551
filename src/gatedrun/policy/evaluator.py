"""Rego policy evaluation.

The store only needs two capabilities from an interpreter: compile a set of
modules into something evaluable, and answer the fixed decision query for one
input.  ``PolicyEvaluator`` is that seam; ``RegoEvaluator`` implements it on
top of the embedded ``regorus`` interpreter, so no OPA binary is required.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

import regorus

from gatedrun.errors import PolicyEvaluationError

logger = logging.getLogger(__name__)

# Router package exposing the boolean decision.
DECISION_QUERY = "data.sandbox.main.allow"


class PolicyCompileError(Exception):
    """A policy module failed to parse or compile."""


class PolicyEvaluator(ABC):
    """A compiled, immutable policy module set."""

    @classmethod
    @abstractmethod
    def compile(cls, modules: dict[str, str]) -> "PolicyEvaluator":
        """Compile ``{module name: source}`` as one unit.

        Raises PolicyCompileError if any module is invalid.
        """

    @abstractmethod
    def decide(self, input_doc: dict[str, Any]) -> bool:
        """Evaluate the decision query for ``input_doc``.

        Raises PolicyEvaluationError when evaluation fails or the query does
        not produce a boolean.
        """


class RegoEvaluator(PolicyEvaluator):
    def __init__(self, engine: Any, module_names: list[str]) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self.module_names = module_names

    @classmethod
    def compile(cls, modules: dict[str, str]) -> "RegoEvaluator":
        engine = regorus.Engine()
        for name in sorted(modules):
            try:
                engine.add_policy(name, modules[name])
            except Exception as exc:
                raise PolicyCompileError(f"failed compiling '{name}': {exc}") from exc
        # Some semantic errors (unsafe vars, unknown functions) only show up on
        # the first evaluation; surface them at load time instead of per request.
        try:
            engine.set_input_json("{}")
            engine.eval_query(DECISION_QUERY)
        except Exception as exc:
            raise PolicyCompileError(f"policy set failed its first evaluation: {exc}") from exc
        logger.debug("Compiled %d policy module(s): %s", len(modules), ", ".join(sorted(modules)))
        return cls(engine, sorted(modules))

    def decide(self, input_doc: dict[str, Any]) -> bool:
        # regorus keeps the input on the engine, so set + eval must not interleave.
        with self._lock:
            try:
                self._engine.set_input_json(json.dumps(input_doc))
                output = self._engine.eval_query(DECISION_QUERY)
            except Exception as exc:
                raise PolicyEvaluationError(
                    f"Policy evaluation failed for '{input_doc.get('command')}': {exc}"
                ) from exc

        value = _first_expression_value(output)
        if not isinstance(value, bool):
            raise PolicyEvaluationError(
                f"Policy evaluation failed for '{input_doc.get('command')}': "
                f"{DECISION_QUERY} did not produce a boolean (got {value!r})"
            )
        return value


def _first_expression_value(output: Any) -> Any:
    """Pull the value out of a ``{"result": [{"expressions": [{"value": ...}]}]}`` document."""
    if isinstance(output, str):
        output = json.loads(output)
    if not isinstance(output, dict):
        return None
    results = output.get("result") or []
    if not results:
        return None
    expressions = results[0].get("expressions") or []
    if not expressions:
        return None
    return expressions[0].get("value")
