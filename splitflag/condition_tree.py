"""Audience condition trees.

Datafiles encode conditions as nested JSON arrays whose first element may be
an operator::

    ["and", ["or", {"type": "custom_attribute", "name": "country", "value": "US"}], "1234"]

Children are nested arrays, leaf condition objects, or audience id strings.
A missing operator means ``or``.

Evaluation is three-valued: ``True``, ``False`` and ``None`` (unknown). A leaf
that cannot be evaluated (missing attribute, wrong type, unknown matcher)
yields ``None`` and ``None`` propagates through ``and``, ``or`` and ``not``
following Kleene logic. Only at the audience boundary is ``None`` treated as
a failed match.
"""

import json
import logging

from typing import Any, Callable, List, Mapping, Optional

from .common_types import UserContext
from .errors import ConditionEvaluationError
from .matchers import get_matcher

logger = logging.getLogger("splitflag.condition_tree")

AND = "and"
OR = "or"
NOT = "not"
OPERATORS = (AND, OR, NOT)

CONDITION_TYPES = ("custom_attribute", "third_party_dimension")
DEFAULT_MATCH = "exact"
QUALIFIED_MATCH = "qualified"


class TreeNode(object):
    def __init__(self, operator: Optional[str] = None, item: Any = None, children: List["TreeNode"] = None) -> None:
        self.operator = operator
        self.item = item
        self.children = children or []

    @property
    def is_leaf(self) -> bool:
        return self.operator is None

    def to_list(self):
        if self.is_leaf:
            return self.item
        return [self.operator] + [child.to_list() for child in self.children]

    def __eq__(self, other) -> bool:
        return isinstance(other, TreeNode) and self.to_list() == other.to_list()

    def __repr__(self) -> str:
        return f"TreeNode({self.to_list()!r})"


def _build(conditions: Any) -> Optional[TreeNode]:
    if isinstance(conditions, dict) or isinstance(conditions, str):
        return TreeNode(item=conditions)

    if not isinstance(conditions, list):
        logger.warning("Ignoring unsupported condition %r", conditions)
        return None

    operator = OR
    items = conditions
    if items and isinstance(items[0], str) and items[0] in OPERATORS:
        operator = items[0]
        items = items[1:]

    children = []
    for item in items:
        child = _build(item)
        if child is not None:
            children.append(child)
    return TreeNode(operator=operator, children=children)


def build_condition_tree(conditions: Any) -> Optional[TreeNode]:
    """Parse an audience's ``conditions`` into a tree.

    Plain (non-typed) audiences carry their conditions as a JSON string.
    """
    if conditions is None:
        return None
    if isinstance(conditions, str):
        try:
            conditions = json.loads(conditions)
        except ValueError:
            logger.warning("Audience conditions are not valid JSON: %s", conditions)
            return None

    if isinstance(conditions, dict):
        return TreeNode(operator=OR, children=[TreeNode(item=conditions)])
    return _build(conditions)


def build_audience_tree(audience_conditions: Any, audience_ids: List[str] = None) -> Optional[TreeNode]:
    """Tree for an experiment, rollout rule or holdout.

    ``audienceConditions`` wins when present; otherwise ``audienceIds`` are
    OR-ed together. No audiences at all means everyone qualifies.
    """
    if audience_conditions is None:
        if not audience_ids:
            return None
        return TreeNode(operator=OR, children=[TreeNode(item=audience_id) for audience_id in audience_ids])

    if isinstance(audience_conditions, str):
        if audience_conditions in OPERATORS or not audience_conditions:
            return None
        return TreeNode(operator=OR, children=[TreeNode(item=audience_conditions)])

    if isinstance(audience_conditions, list) and not audience_conditions:
        return None
    return _build(audience_conditions)


def extract_segments(tree: Optional[TreeNode]) -> List[str]:
    """Distinct values of ``qualified`` leaves, in first-seen order."""
    segments: List[str] = []

    def walk(node: TreeNode) -> None:
        if node.is_leaf:
            item = node.item
            if isinstance(item, dict) and item.get("match") == QUALIFIED_MATCH:
                value = item.get("value")
                if isinstance(value, str) and value not in segments:
                    segments.append(value)
            return
        for child in node.children:
            walk(child)

    if tree is not None:
        walk(tree)
    return segments


def evaluate_condition(condition: dict, user: UserContext) -> Optional[bool]:
    if condition.get("type") not in CONDITION_TYPES:
        logger.warning("Unknown condition type %r", condition.get("type"))
        return None

    match = condition.get("match") or DEFAULT_MATCH
    matcher = get_matcher(match)
    if matcher is None:
        logger.warning("Unknown match type %r", match)
        return None

    try:
        return matcher(condition, user)
    except ConditionEvaluationError as e:
        logger.debug("Condition %s evaluated to null: %s", json.dumps(condition), e)
        return None


def _evaluate(node: TreeNode, leaf: Callable[[Any], Optional[bool]]) -> Optional[bool]:
    if node.is_leaf:
        return leaf(node.item)

    if node.operator == NOT:
        if not node.children:
            return None
        result = _evaluate(node.children[0], leaf)
        return None if result is None else not result

    found_null = False
    if node.operator == AND:
        for child in node.children:
            result = _evaluate(child, leaf)
            if result is False:
                return False
            if result is None:
                found_null = True
        return None if found_null else True

    for child in node.children:
        result = _evaluate(child, leaf)
        if result is True:
            return True
        if result is None:
            found_null = True
    return None if found_null else False


def evaluate_tree(tree: Optional[TreeNode], user: UserContext) -> Optional[bool]:
    """Evaluate a tree of condition objects for ``user``."""
    if tree is None:
        return True

    def leaf(item: Any) -> Optional[bool]:
        if isinstance(item, dict):
            return evaluate_condition(item, user)
        return None

    return _evaluate(tree, leaf)


def evaluate_audience_tree(
    tree: Optional[TreeNode],
    user: UserContext,
    audiences: Mapping[str, Any],
) -> Optional[bool]:
    """Evaluate a tree whose leaves are audience ids.

    Each audience contributes the result of its own condition tree and
    unknown audience ids, like audiences whose conditions failed to parse,
    yield ``None``. Callers fold ``None`` to false.
    """
    if tree is None:
        return True

    def leaf(item: Any) -> Optional[bool]:
        if isinstance(item, dict):
            return evaluate_condition(item, user)
        audience = audiences.get(item)
        if audience is None:
            logger.debug("Audience %s not found", item)
            return None
        if audience.condition_tree is None:
            logger.debug("Audience %s has no usable conditions", item)
            return None
        result = evaluate_tree(audience.condition_tree, user)
        logger.debug('Audience "%s" evaluated to %s', item, result)
        return result

    return _evaluate(tree, leaf)
