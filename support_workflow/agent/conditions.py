"""Safe evaluation of edge conditions.

Conditions are small boolean expressions over the variable bag, for example
``handoffRequired === true`` or ``sentiment in ['ANGRY', 'ABUSIVE'] && !proposeEscalation``.
They are parsed with :mod:`ast` and interpreted over an allowlist of node types;
nothing is executed and no function can be called.
"""
import ast
import operator
import re
from collections.abc import Mapping, Sequence
from typing import Any, Callable, Dict, Optional

import structlog

from support_workflow.exceptions import ConditionError

logger = structlog.get_logger(__name__)

MAX_DEPTH = 50

_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")

_JS_OPERATORS = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(null|undefined)\b"), "None"),
]

_CMP_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_BIN_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators and literals outside string literals."""
    parts = _STRING_LITERAL.split(expression.strip())
    for index in range(0, len(parts), 2):
        code = parts[index]
        for pattern, replacement in _JS_OPERATORS:
            code = pattern.sub(replacement, code)
        parts[index] = code
    return "".join(parts).strip()


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if key == "length" and isinstance(container, (str, Sequence)):
        return len(container)
    if isinstance(container, (str, Sequence)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else None
    raise ConditionError(f"cannot read {key!r} from {type(container).__name__}")


def _eval(node: ast.AST, names: Mapping[str, Any], depth: int = 0) -> Any:
    if depth > MAX_DEPTH:
        raise ConditionError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval(node.body, names, depth + 1)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        raise ConditionError(f"unknown variable {node.id}")

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval(item, names, depth + 1) for item in node.elts]

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            for value in node.values:
                if not _eval(value, names, depth + 1):
                    return False
            return True
        for value in node.values:
            if _eval(value, names, depth + 1):
                return True
        return False

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, names, depth + 1)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ConditionError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ConditionError("unsupported binary operator")
        return op(_eval(node.left, names, depth + 1), _eval(node.right, names, depth + 1))

    if isinstance(node, ast.Compare):
        left = _eval(node.left, names, depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ConditionError("unsupported comparison")
            right = _eval(comparator, names, depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Attribute):
        return _lookup(_eval(node.value, names, depth + 1), node.attr)

    if isinstance(node, ast.Subscript):
        return _lookup(_eval(node.value, names, depth + 1), _eval(node.slice, names, depth + 1))

    raise ConditionError(f"unsupported syntax: {type(node).__name__}")


def parse_condition(expression: str) -> ast.Expression:
    """
    Parse a condition into an AST.

    Raises:
        ConditionError: invalid syntax or a call/lambda/comprehension
    """
    source = normalize_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"invalid condition: {expression}") from e
    for node in ast.walk(tree):
        if isinstance(node, (ast.Call, ast.Lambda, ast.comprehension, ast.NamedExpr, ast.Starred)):
            raise ConditionError(f"disallowed syntax in condition: {expression}")
    return tree


class Condition:
    """A parsed edge condition. Any parse or evaluation error makes it false."""

    def __init__(self, expression: str):
        self.expression = expression
        self.error: Optional[str] = None
        self.tree: Optional[ast.Expression] = None
        try:
            self.tree = parse_condition(expression)
        except ConditionError as e:
            self.error = e.message
            logger.warning("condition_parse_failed", expression=expression, error=e.message)

    def evaluate(self, variables: Mapping[str, Any]) -> bool:
        if self.tree is None:
            return False
        try:
            return bool(_eval(self.tree, variables))
        except ConditionError as e:
            logger.warning("condition_eval_failed", expression=self.expression, error=e.message)
        except (TypeError, ValueError, ZeroDivisionError) as e:
            logger.warning("condition_eval_failed", expression=self.expression, error=str(e))
        return False

    def __repr__(self) -> str:
        return f"Condition({self.expression!r})"


def evaluate_condition(expression: str, variables: Mapping[str, Any]) -> bool:
    return Condition(expression).evaluate(variables)
