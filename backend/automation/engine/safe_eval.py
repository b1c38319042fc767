"""Safe Expression Evaluator for advanced-mode filters

Uses Python's ast module to parse and evaluate a single expression in a
restricted sandbox. Only allows comparisons, boolean logic, literals,
dict-like field access, arithmetic, and a short list of pure helper calls.
No imports, lambdas, comprehensions, or attribute access on arbitrary objects.

Supported expressions:
- Comparisons: item.age > 18, item["status"] == "active", x in [1, 2]
- Boolean logic: item.age > 0 and not item.banned
- Literals: "string", 42, 3.14, True/true, False/false, None/null
- Field access: item["field"], item.profile.city (dict dot access)
- Arithmetic: item.price * item.qty > 100, index % 2 == 0
- Helpers: len(x), str(x), int(x), float(x), abs(x), min(...), max(...),
  round(x), lower(s), upper(s); string methods .lower() .upper() .strip()
  .startswith() .endswith()
"""

from __future__ import annotations

import ast
import logging
import operator
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

# Maximum expression length to prevent abuse
MAX_EXPRESSION_LENGTH = 500

# Largest string or sequence a repetition may build
MAX_REPEAT_LENGTH = 100_000

_SAFE_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


def _repeat_checked(left: Any, right: Any) -> Any:
    """Multiply, refusing sequence repetition beyond MAX_REPEAT_LENGTH."""
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, bytes, list, tuple)) and isinstance(count, int) and not isinstance(count, bool):
            if len(seq) * max(count, 0) > MAX_REPEAT_LENGTH:
                raise SafeEvalError(
                    f"Repetition result too large (max {MAX_REPEAT_LENGTH} elements)"
                )
    return operator.mul(left, right)


_SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _repeat_checked,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_SAFE_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
}

_SAFE_STR_METHODS = {"lower", "upper", "strip", "startswith", "endswith"}

_NAME_CONSTANTS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "none": None,
    "None": None,
    "null": None,
}


class SafeEvalError(Exception):
    """Raised when expression evaluation fails."""
    pass


def safe_eval(expression: str, context: Dict[str, Any]) -> Any:
    """Safely evaluate an expression against a context dictionary.

    Args:
        expression: The expression string to evaluate
        context: Dictionary of variable names to values

    Returns:
        The result of evaluating the expression

    Raises:
        SafeEvalError: If expression is invalid or uses unsupported constructs
    """
    if not expression or not expression.strip():
        raise SafeEvalError("Expression cannot be empty")

    expression = expression.strip()

    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise SafeEvalError(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise SafeEvalError(f"Invalid expression syntax: {e}") from e

    try:
        return _eval_node(tree.body, context)
    except SafeEvalError:
        raise
    except MemoryError as e:
        raise SafeEvalError("Expression exhausted memory") from e
    except Exception as e:
        raise SafeEvalError(f"Evaluation error: {e}") from e


def _eval_node(node: ast.AST, context: Dict[str, Any]) -> Any:
    """Recursively evaluate an AST node."""

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        name = node.id
        if name in context:
            return context[name]
        if name in _NAME_CONSTANTS:
            return _NAME_CONSTANTS[name]
        raise SafeEvalError(f"Unknown variable: '{name}'")

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            op_func = _SAFE_COMPARE_OPS.get(type(op))
            if op_func is None:
                raise SafeEvalError(f"Unsupported comparison: {type(op).__name__}")
            right = _eval_node(comparator, context)
            if not op_func(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval_node(v, context) for v in node.values)
        if isinstance(node.op, ast.Or):
            return any(_eval_node(v, context) for v in node.values)
        raise SafeEvalError(f"Unsupported boolean op: {type(node.op).__name__}")

    if isinstance(node, ast.UnaryOp):
        op_func = _SAFE_UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise SafeEvalError(f"Unsupported unary op: {type(node.op).__name__}")
        return op_func(_eval_node(node.operand, context))

    if isinstance(node, ast.BinOp):
        op_func = _SAFE_BIN_OPS.get(type(node.op))
        if op_func is None:
            raise SafeEvalError(f"Unsupported binary op: {type(node.op).__name__}")
        left = _eval_node(node.left, context)
        right = _eval_node(node.right, context)
        return op_func(left, right)

    if isinstance(node, ast.Subscript):
        value = _eval_node(node.value, context)
        key = _eval_node(node.slice, context)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise SafeEvalError(f"Subscript access failed: {e}") from e

    # Attribute access: item.status (only on dicts)
    if isinstance(node, ast.Attribute):
        value = _eval_node(node.value, context)
        if isinstance(value, dict):
            if node.attr in value:
                return value[node.attr]
            raise SafeEvalError(f"Key '{node.attr}' not found in dict")
        raise SafeEvalError("Attribute access only supported on dict-like objects")

    if isinstance(node, ast.Call):
        return _eval_call(node, context)

    if isinstance(node, ast.List):
        return [_eval_node(elt, context) for elt in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, context) for elt in node.elts)

    if isinstance(node, ast.Dict):
        return {
            _eval_node(k, context): _eval_node(v, context)
            for k, v in zip(node.keys, node.values)
        }

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, context):
            return _eval_node(node.body, context)
        return _eval_node(node.orelse, context)

    raise SafeEvalError(f"Unsupported expression type: {type(node).__name__}")


def _eval_call(node: ast.Call, context: Dict[str, Any]) -> Any:
    if node.keywords:
        raise SafeEvalError("Keyword arguments are not allowed")
    args = [_eval_node(arg, context) for arg in node.args]

    if isinstance(node.func, ast.Name):
        func = _SAFE_FUNCTIONS.get(node.func.id)
        if func is None:
            raise SafeEvalError(f"Function '{node.func.id}' is not allowed")
        return func(*args)

    if isinstance(node.func, ast.Attribute) and node.func.attr in _SAFE_STR_METHODS:
        target = _eval_node(node.func.value, context)
        if not isinstance(target, str):
            raise SafeEvalError(f"'.{node.func.attr}()' is only supported on strings")
        return getattr(target, node.func.attr)(*args)

    raise SafeEvalError("Only whitelisted helper calls are allowed")


def validate_expression(expression: str) -> List[str]:
    """Validate an expression without evaluating it.

    Args:
        expression: The expression string to validate

    Returns:
        List of validation error strings. Empty if valid.
    """
    errors = []

    if not expression or not expression.strip():
        errors.append("Expression cannot be empty")
        return errors

    expression = expression.strip()

    if len(expression) > MAX_EXPRESSION_LENGTH:
        errors.append(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )
        return errors

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        errors.append(f"Invalid syntax: {e}")
        return errors

    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            func = node.func
            if isinstance(func, ast.Name) and func.id in _SAFE_FUNCTIONS:
                continue
            if isinstance(func, ast.Attribute) and func.attr in _SAFE_STR_METHODS:
                continue
            errors.append("Only whitelisted helper calls are allowed")
        elif isinstance(node, ast.Lambda):
            errors.append("Lambda expressions are not allowed")
        elif isinstance(node, ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp):
            errors.append("Comprehensions are not allowed")
        elif isinstance(node, ast.Await):
            errors.append("Await expressions are not allowed")
        elif isinstance(node, ast.Starred):
            errors.append("Star expressions are not allowed")
        elif isinstance(node, ast.NamedExpr):
            errors.append("Assignment expressions are not allowed")

    return errors
