"""Boolean condition trees gating task readiness.

A condition is a tagged union of frozen dataclasses:

- ``Leaf(prerequisite)``: true iff the label is in the satisfied set
- ``And(children)`` / ``Or(children)``: short-circuiting conjunction / disjunction
- ``Not(child)``: negation
- ``Threshold(children, k)``: at least *k* children true; *k* defaults to
  ``ceil(len(children) / 2)``

Identities for empty child lists: And → True, Or → False, Threshold with
k == 0 → True.  A negative *k*, a *k* larger than the child count, or an
unknown node type raises ``ConditionEvaluationError`` at evaluation time; the
evaluator never clamps or defaults silently.

Pure Python, no engine state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Set, Tuple, Union

from cogsched.exceptions import ConditionEvaluationError

logger = logging.getLogger(__name__)


# ── Expression nodes ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Leaf:
    prerequisite: str


@dataclass(frozen=True)
class And:
    children: Tuple["ConditionExpression", ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Or:
    children: Tuple["ConditionExpression", ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))


@dataclass(frozen=True)
class Not:
    child: "ConditionExpression"


@dataclass(frozen=True)
class Threshold:
    children: Tuple["ConditionExpression", ...] = ()
    k: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))

    @property
    def effective_k(self) -> int:
        """*k* as given, or the majority of children when omitted."""
        if self.k is None:
            return math.ceil(len(self.children) / 2)
        return self.k


ConditionExpression = Union[Leaf, And, Or, Not, Threshold]

_LEAF_TAGS = {"leaf", "deferred", "prerequisite"}


# ── Wire parsing ─────────────────────────────────────────────────────


def parse_condition(data: Any) -> ConditionExpression:
    """Build a condition tree from its wire representation.

    Accepts an already-built node, a bare string (shorthand for a leaf), or a
    mapping tagged by ``type`` or ``operator``.  Children may be given under
    ``children`` or ``conditions``; the negated node under ``child`` or
    ``condition``; the threshold under ``k`` or ``threshold``.

    Raises:
        ConditionEvaluationError: on an unknown tag or a missing field.
    """
    if isinstance(data, (Leaf, And, Or, Not, Threshold)):
        return data
    if isinstance(data, str):
        return _leaf(data)
    if not isinstance(data, Mapping):
        raise ConditionEvaluationError(
            f"Condition must be a mapping or string, got {type(data).__name__}"
        )

    tag = data.get("type", data.get("operator"))
    if tag is None and "prerequisite" in data:
        tag = "leaf"
    if not isinstance(tag, str):
        raise ConditionEvaluationError(f"Condition has no type tag: {dict(data)!r}")
    tag = tag.strip().lower()

    if tag in _LEAF_TAGS:
        return _leaf(data.get("prerequisite"))
    if tag == "and":
        return And(_parse_children(data))
    if tag == "or":
        return Or(_parse_children(data))
    if tag == "not":
        child = data.get("child", data.get("condition"))
        if child is None:
            raise ConditionEvaluationError("'not' condition requires a child")
        return Not(parse_condition(child))
    if tag == "threshold":
        k = data.get("k", data.get("threshold"))
        if k is not None and (isinstance(k, bool) or not isinstance(k, int)):
            raise ConditionEvaluationError(f"Threshold k must be an integer, got {k!r}")
        return Threshold(_parse_children(data), k)

    raise ConditionEvaluationError(f"Unknown condition type {tag!r}")


def condition_to_dict(expr: ConditionExpression) -> dict:
    """Inverse of ``parse_condition`` using the ``type`` tag form."""
    if isinstance(expr, Leaf):
        return {"type": "leaf", "prerequisite": expr.prerequisite}
    if isinstance(expr, (And, Or)):
        return {
            "type": "and" if isinstance(expr, And) else "or",
            "children": [condition_to_dict(c) for c in expr.children],
        }
    if isinstance(expr, Not):
        return {"type": "not", "child": condition_to_dict(expr.child)}
    if isinstance(expr, Threshold):
        out = {"type": "threshold", "children": [condition_to_dict(c) for c in expr.children]}
        if expr.k is not None:
            out["k"] = expr.k
        return out
    raise ConditionEvaluationError(f"Unknown condition node {type(expr).__name__}")


def _leaf(prerequisite: Any) -> Leaf:
    if not isinstance(prerequisite, str) or not prerequisite.strip():
        raise ConditionEvaluationError(
            f"Leaf condition requires a non-empty prerequisite, got {prerequisite!r}"
        )
    return Leaf(prerequisite)


def _parse_children(data: Mapping) -> Tuple[ConditionExpression, ...]:
    children = data.get("children", data.get("conditions", ()))
    if children is None:
        children = ()
    if isinstance(children, (str, Mapping)) or not isinstance(children, Iterable):
        raise ConditionEvaluationError("Condition children must be a list")
    return tuple(parse_condition(c) for c in children)


# ── Evaluator ────────────────────────────────────────────────────────


class ConditionEvaluator:
    """Recursive evaluator for condition trees.

    Stateless apart from the ``debug`` flag, which traces every node
    evaluation at DEBUG level.
    """

    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def evaluate(
        self,
        expr: ConditionExpression,
        satisfied: Iterable[str],
        task_id: Optional[int] = None,
    ) -> bool:
        """Evaluate *expr* against the set of satisfied labels.

        Raises:
            ConditionEvaluationError: malformed node anywhere on the
                evaluated path.
        """
        labels = satisfied if isinstance(satisfied, (set, frozenset)) else frozenset(satisfied)
        return self._eval(expr, labels, task_id)

    def validate(self, expr: ConditionExpression) -> None:
        """Check the whole tree for structural errors without evaluating it."""
        if isinstance(expr, Leaf):
            if not isinstance(expr.prerequisite, str) or not expr.prerequisite:
                raise ConditionEvaluationError("Leaf condition requires a non-empty prerequisite")
            return
        if isinstance(expr, (And, Or)):
            for child in expr.children:
                self.validate(child)
            return
        if isinstance(expr, Not):
            self.validate(expr.child)
            return
        if isinstance(expr, Threshold):
            self._check_threshold(expr)
            for child in expr.children:
                self.validate(child)
            return
        raise ConditionEvaluationError(f"Unknown condition node {type(expr).__name__}")

    def prerequisites(self, expr: ConditionExpression) -> FrozenSet[str]:
        """Every label referenced anywhere in *expr*."""
        found: Set[str] = set()
        stack = [expr]
        while stack:
            node = stack.pop()
            if isinstance(node, Leaf):
                found.add(node.prerequisite)
            elif isinstance(node, (And, Or, Threshold)):
                stack.extend(node.children)
            elif isinstance(node, Not):
                stack.append(node.child)
            else:
                raise ConditionEvaluationError(f"Unknown condition node {type(node).__name__}")
        return frozenset(found)

    # ── Internal ─────────────────────────────────────────────────────

    def _eval(self, node: ConditionExpression, labels: FrozenSet[str], task_id: Optional[int]) -> bool:
        if isinstance(node, Leaf):
            result = node.prerequisite in labels
        elif isinstance(node, And):
            result = all(self._eval(c, labels, task_id) for c in node.children)
        elif isinstance(node, Or):
            result = any(self._eval(c, labels, task_id) for c in node.children)
        elif isinstance(node, Not):
            result = not self._eval(node.child, labels, task_id)
        elif isinstance(node, Threshold):
            k = self._check_threshold(node)
            true_count = sum(1 for c in node.children if self._eval(c, labels, task_id))
            result = true_count >= k
        else:
            raise ConditionEvaluationError(f"Unknown condition node {type(node).__name__}")

        if self.debug:
            logger.debug("[task %s] %s evaluated to %s", task_id, type(node).__name__, result)
        return result

    @staticmethod
    def _check_threshold(node: Threshold) -> int:
        k = node.effective_k
        if isinstance(k, bool) or not isinstance(k, int):
            raise ConditionEvaluationError(f"Threshold k must be an integer, got {k!r}")
        if k < 0:
            raise ConditionEvaluationError(f"Threshold k must be non-negative, got {k}")
        if k > len(node.children):
            raise ConditionEvaluationError(
                f"Threshold k={k} exceeds child count {len(node.children)}"
            )
        return k
