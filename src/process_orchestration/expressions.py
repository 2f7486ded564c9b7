"""Safe ``${...}`` interpolation and expression evaluation.

Uses Python's ast module to evaluate a restricted subset of Python against a
context mapping. This is NOT eval(): every node type has to be explicitly
handled by the evaluator, anything else is rejected.

Allowed:
- Literals: numbers, strings, booleans, None
- Names resolved from the context, dotted attribute access and constant
  subscripts on context data (mappings, lists/tuples, pydantic models)
- Arithmetic: +, -, *, /, //, %, **
- Unary -, +, not; boolean and/or; comparisons; ``x if cond else y``
- Functions: abs, ceil, floor, round, sqrt, min, max

Evaluation failures of any kind yield ``None``; callers never see an exception.
"""

from __future__ import annotations

import ast
import logging
import math
import operator
import re
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_INTERPOLATION = re.compile(r"^\$\{(.+)\}$", re.DOTALL)
_DOTTED_PATH = re.compile(r"^[\w-]+(?:\.[\w-]+)*$")

_MAX_EXPONENT = 1000


class ExpressionError(Exception):
    """Raised internally when an expression cannot be evaluated."""


def _power(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, int | float) and abs(exponent) > _MAX_EXPONENT:
        raise ExpressionError(f"Exponent too large: {exponent}")
    return operator.pow(base, exponent)


_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARISON_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": round,
    "sqrt": math.sqrt,
    "min": min,
    "max": max,
}


def _lookup(value: Any, key: Any) -> Any:
    if isinstance(key, str) and key.startswith("_"):
        raise ExpressionError(f"Forbidden attribute access: {key!r}")
    if isinstance(value, Mapping):
        if key not in value:
            raise ExpressionError(f"Field {key!r} not found")
        return value[key]
    if isinstance(value, BaseModel) and isinstance(key, str):
        if key in type(value).model_fields or key in (value.model_extra or {}):
            return getattr(value, key)
        raise ExpressionError(f"Field {key!r} not found on {type(value).__name__}")
    if isinstance(value, Sequence) and not isinstance(value, str) and isinstance(key, int):
        try:
            return value[key]
        except IndexError as e:
            raise ExpressionError(f"Index {key} out of range") from e
    raise ExpressionError(f"Cannot access {key!r} on {type(value).__name__}")


class _Evaluator(ast.NodeVisitor):
    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def generic_visit(self, node: ast.AST) -> Any:
        raise ExpressionError(f"Forbidden construct: {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if node.value is None or isinstance(node.value, str | int | float | bool):
            return node.value
        raise ExpressionError(f"Forbidden constant type: {type(node.value).__name__}")

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        if not isinstance(node.slice, ast.Constant):
            raise ExpressionError("Only constant subscripts are allowed")
        return _lookup(self.visit(node.value), node.slice.value)

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ExpressionError(f"Forbidden function call: {ast.dump(node.func)}")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        return _FUNCTIONS[node.func.id](*(self.visit(arg) for arg in node.args))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op_func = _BINARY_OPS.get(type(node.op))
        if op_func is None:
            raise ExpressionError(f"Forbidden binary operator: {type(node.op).__name__}")
        return op_func(self.visit(node.left), self.visit(node.right))

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op_func = _UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise ExpressionError(f"Forbidden unary operator: {type(node.op).__name__}")
        return op_func(self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            op_func = _COMPARISON_OPS.get(type(op))
            if op_func is None:
                raise ExpressionError(f"Forbidden comparison operator: {type(op).__name__}")
            right = self.visit(comparator)
            if not op_func(left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)


def evaluate_expression(expression: str, context: Mapping[str, Any] | None = None) -> Any:
    """Evaluate ``expression`` against ``context``.

    Returns ``None`` when the expression is empty, malformed, uses a forbidden
    construct, or fails at runtime (unknown name, division by zero, ...).
    """
    if not isinstance(expression, str) or not expression.strip():
        logger.warning(
            "Invalid expression: must be a non-empty string", extra={"expression": expression}
        )
        return None

    context = context or {}
    try:
        tree = ast.parse(expression.strip(), mode="eval")
        result = _Evaluator(context).visit(tree)
    except (
        SyntaxError,
        ExpressionError,
        ArithmeticError,
        LookupError,
        AttributeError,
        TypeError,
        ValueError,
        RecursionError,
        MemoryError,
    ) as e:
        logger.warning(
            "Failed to evaluate expression",
            extra={
                "expression": expression,
                "error": str(e),
                "context_keys": sorted(context),
            },
        )
        return None

    logger.debug(
        "Expression evaluated",
        extra={"expression": expression, "context_keys": sorted(context)},
    )
    return result


def match_interpolation(value: Any, prefix: str | None = None) -> str | None:
    """Return the inner text of ``"${...}"``, or ``None`` if ``value`` is not one.

    With ``prefix``, the inner text must start with ``"<prefix>."`` and the
    remainder is returned (``"${result.a.b}"`` with prefix ``"result"`` gives
    ``"a.b"``).
    """
    if not isinstance(value, str):
        return None
    match = _INTERPOLATION.match(value)
    if match is None:
        return None
    inner = match.group(1).strip()
    if prefix is None:
        return inner
    head = f"{prefix}."
    if inner.startswith(head) and len(inner) > len(head):
        return inner[len(head):]
    return None


def is_dotted_path(text: str) -> bool:
    return bool(_DOTTED_PATH.match(text))


def resolve_path(source: Any, dotted_path: str) -> Any:
    """Walk ``dotted_path`` through mappings, sequences and models.

    A missing segment resolves to ``None``; values are returned as stored so
    numbers stay numbers.
    """
    current = source
    for segment in dotted_path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, BaseModel):
            fields = type(current).model_fields
            extra = current.model_extra or {}
            if segment not in fields and segment not in extra:
                return None
            current = getattr(current, segment)
        elif isinstance(current, Sequence) and not isinstance(current, str) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current
