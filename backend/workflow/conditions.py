"""
Condition evaluation.

``ConditionEvaluator`` walks a ``WorkflowCondition`` tree against an
evaluation scope (the execution's variables plus a ``steps`` namespace of
step outputs). Structured leaves (``variable`` + operator + ``value``) are
evaluated here; expression/script leaves go to a pluggable expression
evaluator. The default one, ``SafeExpressionEvaluator``, parses the
expression with ``ast`` and only allows comparisons, boolean logic,
literals, arithmetic, dict access and a few whitelisted builtins.

Supported expressions:
- Comparisons: amount > 1000, status == "approved"
- Boolean logic: approved and amount < 5000, not rejected
- Dotted access: steps.review.decision, customer["tier"]
- Templates: {{ amount * 2 }} (markers are stripped)
"""

import ast
import operator
import re
from typing import Any, Dict, Iterable, List, Optional

import structlog

from core.constants import STEPS_NAMESPACE, ConditionOperator
from core.exceptions import ConditionEvaluationError
from workflow.capabilities import ExpressionEvaluator

logger = structlog.get_logger(__name__)

MAX_EXPRESSION_LENGTH = 500

SUPPORTED_LANGUAGES = frozenset({"", "python", "expression", "expr"})

_TEMPLATE_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

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

_SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_SAFE_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_SAFE_CALLS = {
    "len": len,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
}

_LITERAL_NAMES = {
    "true": True, "True": True,
    "false": False, "False": False,
    "none": None, "None": None, "null": None,
}


def strip_template(expression: str) -> str:
    """Remove surrounding ``{{ }}`` markers."""
    expr = expression.strip()
    if expr.startswith("{{") and expr.endswith("}}"):
        expr = expr[2:-2].strip()
    return expr


def resolve_path(path: str, scope: Dict[str, Any], default: Any = None) -> Any:
    """Resolve a dot-notation path like ``steps.review.decision``.

    Missing segments yield ``default``. List segments accept integer indexes.
    """
    current: Any = scope
    for part in path.strip().split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


class SafeExpressionEvaluator(ExpressionEvaluator):
    """Default expression capability: a restricted Python expression subset."""

    def evaluate(self, expression: str, language: str, scope: Dict[str, Any]) -> Any:
        """Evaluate ``expression`` against ``scope``.

        Raises:
            ConditionEvaluationError: On syntax errors, unsupported constructs,
                unknown names or unsupported languages.
        """
        if (language or "").lower() not in SUPPORTED_LANGUAGES:
            raise ConditionEvaluationError(f"Unsupported expression language: {language}")
        if not expression or not expression.strip():
            raise ConditionEvaluationError("Expression cannot be empty")

        expr = strip_template(expression)
        if len(expr) > MAX_EXPRESSION_LENGTH:
            raise ConditionEvaluationError(
                f"Expression too long ({len(expr)} chars, max {MAX_EXPRESSION_LENGTH})"
            )

        try:
            tree = ast.parse(expr, mode="eval")
        except SyntaxError as e:
            raise ConditionEvaluationError(f"Invalid expression syntax: {e}") from e

        try:
            return self._eval_node(tree.body, scope)
        except ConditionEvaluationError:
            raise
        except Exception as e:
            raise ConditionEvaluationError(f"Evaluation error in {expr!r}: {e}") from e

    def _eval_node(self, node: ast.AST, scope: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in scope:
                return scope[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            raise ConditionEvaluationError(f"Unknown variable: '{node.id}'")

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                op_func = _SAFE_COMPARE_OPS.get(type(op))
                if op_func is None:
                    raise ConditionEvaluationError(f"Unsupported comparison: {type(op).__name__}")
                right = self._eval_node(comparator, scope)
                if not op_func(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval_node(value, scope)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval_node(value, scope)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            op_func = _SAFE_UNARY_OPS.get(type(node.op))
            if op_func is None:
                raise ConditionEvaluationError(f"Unsupported unary op: {type(node.op).__name__}")
            return op_func(self._eval_node(node.operand, scope))

        if isinstance(node, ast.BinOp):
            op_func = _SAFE_BIN_OPS.get(type(node.op))
            if op_func is None:
                raise ConditionEvaluationError(f"Unsupported binary op: {type(node.op).__name__}")
            return op_func(self._eval_node(node.left, scope), self._eval_node(node.right, scope))

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value, scope)
            key = self._eval_node(node.slice, scope)
            try:
                return value[key]
            except (KeyError, IndexError, TypeError) as e:
                raise ConditionEvaluationError(f"Subscript access failed: {e}") from e

        if isinstance(node, ast.Attribute):
            value = self._eval_node(node.value, scope)
            if isinstance(value, dict):
                if node.attr in value:
                    return value[node.attr]
                raise ConditionEvaluationError(f"Key '{node.attr}' not found")
            raise ConditionEvaluationError("Attribute access only supported on mappings")

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _SAFE_CALLS or node.keywords:
                raise ConditionEvaluationError("Only len/int/float/str/bool/abs/min/max calls are allowed")
            args = [self._eval_node(arg, scope) for arg in node.args]
            return _SAFE_CALLS[node.func.id](*args)

        if isinstance(node, (ast.List, ast.Tuple)):
            items = [self._eval_node(elt, scope) for elt in node.elts]
            return items if isinstance(node, ast.List) else tuple(items)

        if isinstance(node, ast.Dict):
            return {
                self._eval_node(k, scope): self._eval_node(v, scope)
                for k, v in zip(node.keys, node.values)
            }

        if isinstance(node, ast.IfExp):
            if self._eval_node(node.test, scope):
                return self._eval_node(node.body, scope)
            return self._eval_node(node.orelse, scope)

        raise ConditionEvaluationError(f"Unsupported expression type: {type(node).__name__}")


def validate_expression(expression: str) -> List[str]:
    """Static syntax check used by the definition validator."""
    expr = strip_template(expression or "")
    if not expr:
        return ["Expression cannot be empty"]
    if len(expr) > MAX_EXPRESSION_LENGTH:
        return [f"Expression too long ({len(expr)} chars, max {MAX_EXPRESSION_LENGTH})"]
    try:
        ast.parse(expr, mode="eval")
    except SyntaxError as e:
        return [f"Invalid syntax: {e.msg}"]
    return []


def resolve_templates(value: Any, scope: Dict[str, Any], evaluator: ExpressionEvaluator) -> Any:
    """Recursively resolve ``{{ expr }}`` templates inside parameter values.

    A value that is a single template keeps the native result type; a
    template embedded in a longer string is substituted as text. Failures
    leave the original text in place.
    """
    if isinstance(value, dict):
        return {k: resolve_templates(v, scope, evaluator) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_templates(v, scope, evaluator) for v in value]
    if not isinstance(value, str) or "{{" not in value:
        return value

    stripped = value.strip()
    whole = _TEMPLATE_RE.fullmatch(stripped)
    try:
        if whole:
            return evaluator.evaluate(whole.group(1), "expression", scope)
        return _TEMPLATE_RE.sub(
            lambda m: str(evaluator.evaluate(m.group(1), "expression", scope)), value
        )
    except ConditionEvaluationError as e:
        logger.warning("template_resolution_failed", template=value, error=e.message)
        return value


def _coerce_pair(left: Any, right: Any) -> tuple:
    """Make numeric strings comparable with numbers."""
    def as_number(v: Any) -> Any:
        if isinstance(v, str):
            try:
                return float(v) if any(c in v for c in ".eE") else int(v)
            except ValueError:
                return v
        return v

    left_num = isinstance(left, (int, float)) and not isinstance(left, bool)
    right_num = isinstance(right, (int, float)) and not isinstance(right, bool)
    if left_num and isinstance(right, str):
        return left, as_number(right)
    if right_num and isinstance(left, str):
        return as_number(left), right
    return left, right


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if hasattr(value, "__len__"):
        return len(value) == 0
    return False


UNARY_OPERATORS = frozenset({
    ConditionOperator.IS_NULL,
    ConditionOperator.IS_NOT_NULL,
    ConditionOperator.IS_EMPTY,
    ConditionOperator.IS_NOT_EMPTY,
})


class ConditionEvaluator:
    """
    Evaluates ``WorkflowCondition`` trees.

    Pure with respect to the scope: nothing is written back. Any evaluation
    error makes the whole tree evaluate to False and is logged.
    """

    def __init__(self, expression_evaluator: Optional[ExpressionEvaluator] = None):
        self.expression_evaluator = expression_evaluator or SafeExpressionEvaluator()

    def evaluate(self, condition: Any, scope: Dict[str, Any]) -> bool:
        if condition is None:
            return True
        try:
            return self._evaluate(condition, scope)
        except ConditionEvaluationError as e:
            logger.warning("condition_evaluation_failed", condition_id=condition.id, error=e.message)
            return False
        except (TypeError, ValueError) as e:
            logger.warning("condition_evaluation_failed", condition_id=condition.id, error=str(e))
            return False

    def evaluate_all(self, conditions: Iterable[Any], scope: Dict[str, Any]) -> bool:
        return all(self.evaluate(c, scope) for c in conditions)

    def _evaluate(self, condition: Any, scope: Dict[str, Any]) -> bool:
        if condition.variables:
            scope = {**scope, **condition.variables}

        op = condition.operator
        if op in (ConditionOperator.AND, ConditionOperator.OR, ConditionOperator.NOT):
            return self._evaluate_composite(condition, scope)
        if op == ConditionOperator.CUSTOM:
            if not self._has_expression(condition):
                raise ConditionEvaluationError("Custom condition requires an expression or script")
            return self._evaluate_expression(condition, scope)
        return self._evaluate_comparison(condition, scope)

    def _evaluate_composite(self, condition: Any, scope: Dict[str, Any]) -> bool:
        op = condition.operator

        # Expression/script on a composite node counts as its first operand
        operands: List[Any] = []
        if self._has_expression(condition):
            operands.append(lambda: self._evaluate_expression(condition, scope))
        for sub in condition.sub_conditions:
            operands.append(lambda sub=sub: self._evaluate(sub, scope))

        if op == ConditionOperator.NOT:
            if len(operands) != 1:
                raise ConditionEvaluationError("Not requires exactly one operand")
            return not operands[0]()
        if not operands:
            return True
        if op == ConditionOperator.AND:
            return all(operand() for operand in operands)
        return any(operand() for operand in operands)

    def _evaluate_comparison(self, condition: Any, scope: Dict[str, Any]) -> bool:
        op = condition.operator
        if condition.variable:
            left = resolve_path(condition.variable, scope)
        elif self._has_expression(condition):
            left = self._raw_expression(condition, scope)
        else:
            raise ConditionEvaluationError(f"{op.value} condition needs a variable or expression")

        if op == ConditionOperator.IS_NULL:
            return left is None
        if op == ConditionOperator.IS_NOT_NULL:
            return left is not None
        if op == ConditionOperator.IS_EMPTY:
            return _is_empty(left)
        if op == ConditionOperator.IS_NOT_EMPTY:
            return not _is_empty(left)

        if condition.value_variable:
            right = resolve_path(condition.value_variable, scope)
        else:
            right = resolve_templates(condition.value, scope, self.expression_evaluator)

        if op in (ConditionOperator.CONTAINS, ConditionOperator.STARTS_WITH, ConditionOperator.ENDS_WITH):
            if left is None or right is None:
                return False
            if op == ConditionOperator.CONTAINS:
                if isinstance(left, str):
                    return str(right) in left
                return right in left
            if op == ConditionOperator.STARTS_WITH:
                return str(left).startswith(str(right))
            return str(left).endswith(str(right))

        left, right = _coerce_pair(left, right)
        if op == ConditionOperator.EQUALS:
            return left == right
        if op == ConditionOperator.NOT_EQUALS:
            return left != right
        if left is None or right is None:
            return False
        if op == ConditionOperator.GREATER_THAN:
            return left > right
        if op == ConditionOperator.LESS_THAN:
            return left < right
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL:
            return left >= right
        if op == ConditionOperator.LESS_THAN_OR_EQUAL:
            return left <= right
        raise ConditionEvaluationError(f"Unsupported operator: {op}")

    @staticmethod
    def _has_expression(condition: Any) -> bool:
        return bool((condition.expression or "").strip() or (condition.script or "").strip())

    def _raw_expression(self, condition: Any, scope: Dict[str, Any]) -> Any:
        if (condition.script or "").strip():
            return self.expression_evaluator.evaluate(condition.script, condition.script_language, scope)
        return self.expression_evaluator.evaluate(condition.expression, "expression", scope)

    def _evaluate_expression(self, condition: Any, scope: Dict[str, Any]) -> bool:
        return bool(self._raw_expression(condition, scope))


def build_scope(variables: Dict[str, Any], step_outputs: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Evaluation scope: variables at top level plus ``steps.<id>`` outputs."""
    scope = dict(variables)
    scope[STEPS_NAMESPACE] = step_outputs
    scope.setdefault("variables", variables)
    return scope
