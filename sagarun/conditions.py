"""
Condition evaluation for node ``when`` expressions.

Expressions are parsed with ``ast`` in eval mode and walked against a small
node allowlist. Nothing is ever passed to ``eval``.

Supported:
- payload paths: ``payload.line_type``, ``payload.cart.id`` or bare ``line_type``
- literals: strings, numbers, true/false, null/None, undefined, lists, tuples
- comparisons: ==, !=, <, <=, >, >=, in, not in
- boolean logic: and, or, not

Authored specs often use JavaScript-style ``===``, ``!==``, ``&&``, ``||``
and ``!`` operators; those spellings are rewritten outside string literals before
parsing, so ``payload.line_type === 'service'`` works unchanged.

Missing payload fields evaluate to ``UNDEFINED``, which is falsy and equal
only to itself. Any evaluation failure makes ``evaluate`` return False.
"""

import ast
import logging
import operator
import re
from collections.abc import Mapping, Sequence
from typing import Any

from sagarun.errors import ConditionEvalError

logger = logging.getLogger(__name__)

PAYLOAD_NAME = "payload"

_MAX_DEPTH = 50
_MAX_LENGTH = 2000


class _Undefined:
    """Value of a payload path that does not exist."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __eq__(self, other: object) -> bool:
        return other is self

    def __hash__(self) -> int:
        return hash("sagarun.undefined")

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_CONSTANT_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": UNDEFINED,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_STRING_LITERAL = re.compile(r"""('(?:\\.|[^'\\])*'|"(?:\\.|[^"\\])*")""")

# Applied in order to the code between string literals
_JS_REWRITES = [
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]


def translate(expression: str) -> str:
    """Rewrite JavaScript operator spellings into Python outside string literals."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _JS_REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


def _lookup(payload: Mapping[str, Any], path: list[str]) -> Any:
    value: Any = payload
    for part in path:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return UNDEFINED
    return value


def _dotted_path(node: ast.AST) -> list[str]:
    """Flatten ``a.b.c`` into ['a', 'b', 'c']; anything else is rejected."""
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        raise ValueError("attribute access is only allowed on payload paths")
    parts.append(node.id)
    return list(reversed(parts))


def _resolve_name(path: list[str], payload: Mapping[str, Any]) -> Any:
    if len(path) == 1 and path[0] in _CONSTANT_NAMES:
        return _CONSTANT_NAMES[path[0]]
    if path[0] == PAYLOAD_NAME:
        return _lookup(payload, path[1:])
    return _lookup(payload, path)


def _eval_node(node: ast.AST, payload: Mapping[str, Any], _depth: int = 0) -> Any:
    if _depth > _MAX_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, payload, _depth + 1)

    if isinstance(node, ast.Constant):
        if node.value is not None and not isinstance(node.value, (str, int, float, bool)):
            raise ValueError(f"unsupported literal {node.value!r}")
        return node.value

    if isinstance(node, (ast.Name, ast.Attribute)):
        return _resolve_name(_dotted_path(node), payload)

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = bool(_eval_node(value, payload, _depth + 1))
                if not result:
                    break
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = bool(_eval_node(value, payload, _depth + 1))
                if result:
                    break
            return result
        raise ValueError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            return not bool(_eval_node(node.operand, payload, _depth + 1))
        if isinstance(node.op, ast.USub) and isinstance(node.operand, ast.Constant):
            return -_eval_node(node.operand, payload, _depth + 1)
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, payload, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError(f"unsupported comparator {type(op_node).__name__}")
            right = _eval_node(comparator, payload, _depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, payload, _depth + 1)
        index = _eval_node(node.slice, payload, _depth + 1)
        if isinstance(target, Mapping):
            return target.get(index, UNDEFINED)
        if isinstance(target, Sequence) and not isinstance(target, str) and isinstance(index, int):
            return target[index] if -len(target) <= index < len(target) else UNDEFINED
        raise ValueError("subscripts are only allowed on payload mappings and lists")

    if isinstance(node, ast.List):
        return [_eval_node(elt, payload, _depth + 1) for elt in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, payload, _depth + 1) for elt in node.elts)

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def evaluate_strict(expression: str, payload: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition, raising on any problem.

    Raises:
        ConditionEvalError: If the expression cannot be parsed or evaluated
    """
    if not isinstance(expression, str):
        raise ConditionEvalError(repr(expression), f"expected a string, got {type(expression).__name__}")
    if len(expression) > _MAX_LENGTH:
        raise ConditionEvalError(expression[:40] + "...", f"longer than {_MAX_LENGTH} characters")

    source = translate(expression)
    if not source:
        raise ConditionEvalError(expression, "empty expression")
    try:
        parsed = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionEvalError(expression, f"invalid syntax: {e.msg}")
    except (MemoryError, RecursionError):
        raise ConditionEvalError(expression, "expression too deeply nested")

    try:
        return bool(_eval_node(parsed, payload))
    except (ValueError, TypeError) as e:
        raise ConditionEvalError(expression, str(e))
    except RecursionError:
        raise ConditionEvalError(expression, "expression too deeply nested")


def evaluate(expression: str, payload: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition against a payload.

    Returns False (and logs a warning) if the expression cannot be evaluated.
    """
    try:
        return evaluate_strict(expression, payload)
    except ConditionEvalError as e:
        logger.warning(f"{e}; treating condition as false")
        return False
