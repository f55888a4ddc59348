"""
Evaluation of formula trees.

An Evaluator computes the value of a tree against a rule engine and a
situation (the user's answers to input rules). Besides the value it
reports which inputs the result depends on and were left unanswered: a
result with no missing variables is the same for every situation, which
is what constant folding relies on.

Values are Python scalars: int/float numbers, bool, str, datetime.date,
or None for "no value" (rule not applicable, unanswered input without
default). None propagates through arithmetic.

Operators are looked up in tables of handler builders:

    ARITHMETIC_OPS = {"+": additive(operator.add), "*": ratio_operands(numeric_only(...)), ...}

and every node kind has exactly one handler in EVALUATORS.
"""

import datetime
import logging
import operator
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, FrozenSet, List, Mapping, NamedTuple, Optional, Tuple

from .errors import CyclicReference, EvaluationError, UnknownReference
from .rewriter import references
from .tree import Node

logger = logging.getLogger(__name__)

EMPTY = frozenset()


class Evaluation(NamedTuple):
    """Result of evaluating a rule or a tree."""
    value: object
    unit: Optional[str] = None
    missing_variables: FrozenSet[str] = EMPTY
    parent_missing_variables: FrozenSet[str] = EMPTY


def _missing(*evaluations: Evaluation) -> FrozenSet[str]:
    result = set()
    for evaluation in evaluations:
        result |= evaluation.missing_variables
    return frozenset(result)


# ============================================================
# Numbers and units
# ============================================================

def is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def normalize_number(x):
    """Preserve integer type and drop binary noise: 3.0 -> 3, 0.1 + 0.2 -> 0.3."""
    if isinstance(x, float):
        if x.is_integer():
            return int(x)
        return round(x, 12)
    return x


def split_unit(unit: Optional[str]) -> Tuple[List[str], List[str]]:
    """
    Split a unit into numerator and denominator factors.

    Examples:
        split_unit("kgCO2e/kg")   # => (["kgCO2e"], ["kg"])
        split_unit("€.h/month")   # => (["€", "h"], ["month"])
        split_unit("1/kg")        # => ([], ["kg"])
    """
    if not unit:
        return [], []
    parts = unit.split("/")
    numerator = [f for f in parts[0].split(".") if f and f != "1"]
    denominator = [f for part in parts[1:] for f in part.split(".") if f]
    return numerator, denominator


def join_unit(numerator: List[str], denominator: List[str]) -> Optional[str]:
    numerator, denominator = list(numerator), list(denominator)
    for factor in list(numerator):
        if factor in denominator:
            numerator.remove(factor)
            denominator.remove(factor)
    if not numerator and not denominator:
        return None
    text = ".".join(numerator) or "1"
    if denominator:
        text += "/" + ".".join(denominator)
    return text


def multiply_units(a: Optional[str], b: Optional[str]) -> Optional[str]:
    num_a, den_a = split_unit(a)
    num_b, den_b = split_unit(b)
    return join_unit(num_a + num_b, den_a + den_b)


def divide_units(a: Optional[str], b: Optional[str]) -> Optional[str]:
    num_a, den_a = split_unit(a)
    num_b, den_b = split_unit(b)
    return join_unit(num_a + den_b, den_a + num_b)


def as_ratio(value, unit: Optional[str]):
    """Turn a percentage into a plain ratio: (24, "%") -> (0.24, None)."""
    if unit == "%" and is_number(value):
        return normalize_number(value / 100), None
    return value, unit


# ============================================================
# Operator tables
# ============================================================

OpHandler = Callable[[Evaluation, Evaluation], Tuple[object, Optional[str]]]


def numeric_only(f: Callable, combine_units: Callable) -> OpHandler:
    """Create a handler for an arithmetic operator on two numbers."""
    def handler(a: Evaluation, b: Evaluation):
        if not (is_number(a.value) and is_number(b.value)):
            raise TypeError(f"cannot apply to {a.value!r} and {b.value!r}")
        return normalize_number(f(a.value, b.value)), combine_units(a.unit, b.unit)
    return handler


def additive(f: Callable) -> OpHandler:
    """Create a handler for + and -: percentages add up, other units must agree."""
    def handler(a: Evaluation, b: Evaluation):
        if not (is_number(a.value) and is_number(b.value)):
            raise TypeError(f"cannot apply to {a.value!r} and {b.value!r}")
        a_value, a_unit = a.value, a.unit
        b_value, b_unit = b.value, b.unit
        if a_unit != b_unit and "%" in (a_unit, b_unit):
            a_value, a_unit = as_ratio(a_value, a_unit)
            b_value, b_unit = as_ratio(b_value, b_unit)
        if a_unit and b_unit and a_unit != b_unit:
            logger.warning("Adding values with different units: %s and %s", a_unit, b_unit)
        return normalize_number(f(a_value, b_value)), a_unit or b_unit
    return handler


def ratio_operands(handler: OpHandler) -> OpHandler:
    """Convert percentage operands to ratios before calling handler."""
    def wrapped(a: Evaluation, b: Evaluation):
        a_value, a_unit = as_ratio(a.value, a.unit)
        b_value, b_unit = as_ratio(b.value, b.unit)
        return handler(a._replace(value=a_value, unit=a_unit), b._replace(value=b_value, unit=b_unit))
    return wrapped


def safe_div(a, b):
    if b == 0:
        raise ZeroDivisionError("division by zero")
    return a / b


def comparison(f: Callable) -> OpHandler:
    """Create a handler for an ordering comparison between values of the same type."""
    def handler(a: Evaluation, b: Evaluation):
        a_value, _ = as_ratio(a.value, a.unit)
        b_value, _ = as_ratio(b.value, b.unit)
        if is_number(a_value) != is_number(b_value):
            raise TypeError(f"cannot compare {a_value!r} and {b_value!r}")
        return f(a_value, b_value), None
    return handler


def equality(negate: bool) -> OpHandler:
    def handler(a: Evaluation, b: Evaluation):
        a_value, _ = as_ratio(a.value, a.unit)
        b_value, _ = as_ratio(b.value, b.unit)
        return (a_value != b_value) if negate else (a_value == b_value), None
    return handler


ARITHMETIC_OPS: Dict[str, OpHandler] = {
    "+": additive(operator.add),
    "-": additive(operator.sub),
    "*": ratio_operands(numeric_only(operator.mul, multiply_units)),
    "/": ratio_operands(numeric_only(safe_div, divide_units)),
    "**": ratio_operands(numeric_only(operator.pow, lambda a, b: a)),
}

COMPARISON_OPS: Dict[str, OpHandler] = {
    "<": comparison(operator.lt),
    ">": comparison(operator.gt),
    "<=": comparison(operator.le),
    ">=": comparison(operator.ge),
    "=": equality(negate=False),
    "!=": equality(negate=True),
}

OPERATORS: Dict[str, OpHandler] = {**ARITHMETIC_OPS, **COMPARISON_OPS}


def truth(evaluation: Evaluation) -> Optional[bool]:
    """
    Three-valued truth of an evaluation.

    None without missing variables (not applicable) counts as false; None
    with missing variables is unknown. Any value other than None and
    False is true.
    """
    if evaluation.value is None:
        return None if evaluation.missing_variables else False
    return evaluation.value is not False


def round_half_up(value, decimals: int):
    quantum = Decimal(1).scaleb(-decimals)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return normalize_number(float(rounded))


# ============================================================
# Node handlers
# ============================================================

def _evaluate_reference(ev: "Evaluator", node: Node) -> Evaluation:
    result = ev.evaluate_rule(node[2])
    # A reader depends on everything the referenced rule depends on,
    # including the inputs gating its ancestors.
    return Evaluation(
        result.value, result.unit,
        result.missing_variables | result.parent_missing_variables,
    )


def _evaluate_constant(ev: "Evaluator", node: Node) -> Evaluation:
    return Evaluation(node[1], node[2])


def _apply_operator(ev: "Evaluator", op: str, a: Evaluation, b: Evaluation) -> Evaluation:
    missing = _missing(a, b)
    if a.value is None or b.value is None:
        return Evaluation(None, None, missing)
    handler = OPERATORS.get(op)
    if handler is None:
        raise ev.error(f"unknown operator '{op}'")
    try:
        value, unit = handler(a, b)
    except (TypeError, ZeroDivisionError) as e:
        raise ev.error(f"'{op}': {e}") from None
    return Evaluation(value, unit, missing)


def _evaluate_operation(ev: "Evaluator", node: Node) -> Evaluation:
    # a + b + c + ... nests one operation per operator on the left; walk
    # down that side in a loop and apply the operators on the way back up.
    chain = []
    while node[0] == "operation":
        chain.append(node)
        node = node[2]
    result = ev.evaluate(node)
    for op_node in reversed(chain):
        result = _apply_operator(ev, op_node[1], result, ev.evaluate(op_node[3]))
    return result


def _sum(values):
    return normalize_number(sum(values)) if values else 0


def _product(values):
    result = 1
    for value in values:
        result = normalize_number(result * value)
    return result


def _average(values):
    return normalize_number(sum(values) / len(values)) if values else None


NARY_FOLDS: Dict[str, Callable] = {
    "sum": _sum,
    "product": _product,
    "average": _average,
    "min of": lambda values: min(values) if values else None,
    "max of": lambda values: max(values) if values else None,
}


def _evaluate_nary(ev: "Evaluator", node: Node) -> Evaluation:
    mechanism = node[1]
    items = [ev.evaluate(item) for item in node[2]]
    missing = _missing(*items)

    if mechanism in ("all of", "any of"):
        truths = [truth(item) for item in items]
        decisive = mechanism == "any of"
        if decisive in truths:
            return Evaluation(decisive, None, missing)
        if None in truths:
            return Evaluation(None, None, missing)
        return Evaluation(not decisive, None, missing)

    values = []
    unit = None
    for item in items:
        if item.value is None:
            if item.missing_variables or mechanism == "product":
                # value depends on an unanswered input without default
                return Evaluation(None, None, missing)
            continue
        if not is_number(item.value):
            raise ev.error(f"'{mechanism}' expects numbers, got {item.value!r}")
        value, item_unit = item.value, item.unit
        if mechanism == "product":
            value, item_unit = as_ratio(value, item_unit)
            unit = multiply_units(unit, item_unit)
        elif unit is None:
            unit = item_unit
        values.append(value)
    return Evaluation(NARY_FOLDS[mechanism](values), unit, missing)


def _evaluate_variations(ev: "Evaluator", node: Node) -> Evaluation:
    missing = set()
    for condition, value in node[1]:
        test = ev.evaluate(condition)
        missing |= test.missing_variables
        result = truth(test)
        if result is None:
            return Evaluation(None, None, frozenset(missing))
        if result:
            chosen = ev.evaluate(value)
            return chosen._replace(missing_variables=frozenset(missing | chosen.missing_variables))
    if node[2] is None:
        return Evaluation(None, None, frozenset(missing))
    chosen = ev.evaluate(node[2])
    return chosen._replace(missing_variables=frozenset(missing | chosen.missing_variables))


def _evaluate_condition(ev: "Evaluator", node: Node) -> Evaluation:
    mode = node[1]
    test = ev.evaluate(node[2])
    result = truth(test)
    if mode == "not applicable if" and result is not None:
        result = not result
    if result is False:
        return Evaluation(None, None, test.missing_variables)
    inner = ev.evaluate(node[3])
    missing = _missing(test, inner)
    if result is None:
        return Evaluation(None, None, missing)
    return inner._replace(missing_variables=missing)


def _evaluate_limit(ev: "Evaluator", node: Node) -> Evaluation:
    mechanism = node[1]
    inner = ev.evaluate(node[2])
    bound = ev.evaluate(node[3])
    missing = _missing(inner, bound)
    if inner.value is None or bound.value is None:
        return inner._replace(missing_variables=missing)
    value, limit = inner.value, as_ratio(bound.value, bound.unit)[0]
    if not (is_number(value) and is_number(limit)):
        raise ev.error(f"'{mechanism}' expects numbers")
    if mechanism == "floor":
        value = max(value, limit)
    elif mechanism == "ceiling":
        value = min(value, limit)
    else:
        value = max(normalize_number(value - limit), 0)
    return Evaluation(value, inner.unit, missing)


def _evaluate_rounding(ev: "Evaluator", node: Node) -> Evaluation:
    inner = ev.evaluate(node[1])
    if not is_number(inner.value):
        return inner
    return inner._replace(value=round_half_up(inner.value, node[2]))


def _evaluate_unit(ev: "Evaluator", node: Node) -> Evaluation:
    inner = ev.evaluate(node[1])
    if not is_number(inner.value):
        return inner
    return inner._replace(unit=node[2])


def _evaluate_context(ev: "Evaluator", node: Node) -> Evaluation:
    overrides = {}
    missing = set()
    for key, expr in node[2]:
        bound = ev.evaluate(expr)
        missing |= bound.missing_variables
        overrides[key[2]] = Evaluation(bound.value, bound.unit, bound.missing_variables)
    inner = ev.child(overrides).evaluate(node[1])
    return inner._replace(missing_variables=frozenset(missing | inner.missing_variables))


def _evaluate_scale(ev: "Evaluator", node: Node) -> Evaluation:
    mechanism, base_node, brackets, multiplier_node = node[1], node[2], node[3], node[4]
    base = ev.evaluate(base_node)
    evaluations = [base]
    multiplier = 1
    if multiplier_node is not None:
        factor = ev.evaluate(multiplier_node)
        evaluations.append(factor)
        multiplier = factor.value
    bracket_values = []
    for amount_node, ceiling_node in brackets:
        amount = ev.evaluate(amount_node)
        evaluations.append(amount)
        ceiling = None
        if ceiling_node is not None:
            limit = ev.evaluate(ceiling_node)
            evaluations.append(limit)
            ceiling = limit.value
        bracket_values.append((amount, ceiling))
    missing = _missing(*evaluations)

    if base.value is None or multiplier is None:
        return Evaluation(None, None, missing)
    if not is_number(base.value) or not is_number(multiplier):
        raise ev.error(f"'{mechanism}' expects a numeric base")

    value = base.value
    if mechanism == "grid":
        for amount, ceiling in bracket_values:
            if ceiling is None or value < ceiling * multiplier:
                return Evaluation(amount.value, amount.unit, missing)
        return Evaluation(None, None, missing)

    total = 0
    lower = 0
    for rate, ceiling in bracket_values:
        upper = None if ceiling is None else ceiling * multiplier
        if rate.value is None:
            return Evaluation(None, None, missing)
        ratio = as_ratio(rate.value, rate.unit)[0]
        portion = (value if upper is None else min(value, upper)) - lower
        if portion > 0:
            total += portion * ratio
        if upper is None or value <= upper:
            break
        lower = upper
    return Evaluation(normalize_number(total), base.unit, missing)


def _format_part(evaluation: Evaluation) -> str:
    value = evaluation.value
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        value = normalize_number(value)
    if isinstance(value, datetime.date):
        return value.strftime("%d/%m/%Y")
    text = str(value)
    if evaluation.unit:
        text += "%" if evaluation.unit == "%" else f" {evaluation.unit}"
    return text


def _evaluate_text(ev: "Evaluator", node: Node) -> Evaluation:
    pieces = []
    evaluations = []
    for part in node[1]:
        if isinstance(part, str):
            pieces.append(part)
            continue
        evaluation = ev.evaluate(part)
        evaluations.append(evaluation)
        if evaluation.value is None:
            return Evaluation(None, None, _missing(*evaluations))
        pieces.append(_format_part(evaluation))
    return Evaluation("".join(pieces), None, _missing(*evaluations))


def _evaluate_duration(ev: "Evaluator", node: Node) -> Evaluation:
    start = ev.evaluate(node[1])
    end = ev.evaluate(node[2])
    missing = _missing(start, end)
    if start.value is None or end.value is None:
        return Evaluation(None, None, missing)
    if not (isinstance(start.value, datetime.date) and isinstance(end.value, datetime.date)):
        raise ev.error("'duration' expects two dates")
    return Evaluation((end.value - start.value).days, "day", missing)


def _evaluate_choice(ev: "Evaluator", node: Node) -> Evaluation:
    inner = ev.evaluate(node[1])
    choices = node[2]
    if inner.value is not None and inner.value not in choices:
        raise ev.error(f"{inner.value!r} is not one of {', '.join(choices)}")
    return inner


def _evaluate_defined(ev: "Evaluator", node: Node) -> Evaluation:
    mechanism = node[1]
    inner = ev.evaluate(node[2])
    if mechanism in ("is defined", "is undefined"):
        value = not inner.missing_variables
    else:
        value = inner.value is not None
    if mechanism in ("is undefined", "is not applicable"):
        value = not value
    return Evaluation(value, None, inner.missing_variables)


def _evaluate_input(ev: "Evaluator", node: Node) -> Evaluation:
    rule_id, default = node[1], node[2]
    answer = ev.situation.get(rule_id)
    if answer is not None:
        return ev.evaluate(answer)
    fallback = ev.evaluate(default)
    return fallback._replace(missing_variables=fallback.missing_variables | {rule_id})


EVALUATORS: Dict[str, Callable[["Evaluator", Node], Evaluation]] = {
    "reference": _evaluate_reference,
    "constant": _evaluate_constant,
    "operation": _evaluate_operation,
    "nary": _evaluate_nary,
    "variations": _evaluate_variations,
    "condition": _evaluate_condition,
    "limit": _evaluate_limit,
    "rounding": _evaluate_rounding,
    "unit": _evaluate_unit,
    "context": _evaluate_context,
    "scale": _evaluate_scale,
    "text": _evaluate_text,
    "duration": _evaluate_duration,
    "choice": _evaluate_choice,
    "defined": _evaluate_defined,
    "input": _evaluate_input,
}


# ============================================================
# Evaluator
# ============================================================

class Evaluator:
    """
    Evaluates trees and rules of one engine under one situation.

    The situation maps input rule ids to parsed answers; without one every
    input reads as unanswered. Rule results are cached for the lifetime of
    the evaluator. A context node evaluates its body in a child evaluator
    carrying the overridden rule values and a fresh cache.
    """

    def __init__(self, engine, situation: Optional[Mapping[str, Node]] = None,
                 overrides: Optional[Dict[str, Evaluation]] = None):
        self.engine = engine
        self.situation = situation if situation is not None else {}
        self.overrides = overrides or {}
        self.cache: Dict[str, Evaluation] = {}
        self.stack: List[str] = []

    def child(self, overrides: Dict[str, Evaluation]) -> "Evaluator":
        """A new evaluator seeing overrides on top of this one's."""
        child = Evaluator(self.engine, self.situation, {**self.overrides, **overrides})
        child.stack = list(self.stack)
        return child

    @property
    def current_rule(self) -> Optional[str]:
        return self.stack[-1] if self.stack else None

    def error(self, reason: str) -> EvaluationError:
        return EvaluationError(self.current_rule, reason)

    def evaluate(self, node: Node) -> Evaluation:
        handler = EVALUATORS.get(node[0])
        if handler is None:
            raise self.error(f"unknown node kind {node[0]!r}")
        return handler(self, node)

    def evaluate_rule(self, rule_id: str) -> Evaluation:
        """Evaluate a rule, applying the applicability of its ancestors."""
        if rule_id in self.overrides:
            return self.overrides[rule_id]
        if rule_id in self.cache:
            return self.cache[rule_id]
        if rule_id in self.stack:
            cycle = " -> ".join(self.stack[self.stack.index(rule_id):] + [rule_id])
            raise CyclicReference(rule_id, f"cyclic reference: {cycle}")
        rule = self.engine.get_rule(rule_id)
        if rule is None:
            raise UnknownReference(self.current_rule, rule_id)

        self.stack.append(rule_id)
        try:
            disabled, parent_missing = self._ancestor_gate(rule_id)
            if disabled:
                result = Evaluation(None, None, EMPTY, parent_missing)
            else:
                inner = self.evaluate(rule.value)
                result = Evaluation(inner.value, inner.unit, inner.missing_variables, parent_missing)
        finally:
            self.stack.pop()
        self.cache[rule_id] = result
        return result

    def _ancestor_gate(self, rule_id: str) -> Tuple[bool, FrozenSet[str]]:
        """
        Check whether an enclosing namespace disables rule_id.

        A namespace disables its descendants when one of its applicability
        conditions fails, or when it is an input answered with no. Returns
        the verdict and the inputs the verdict depends on. A condition that
        reads rule_id itself does not gate it.
        """
        disabled = False
        missing = set()
        for ancestor in self.engine.ancestors(rule_id):
            for mode, condition in self.engine.applicability(ancestor):
                if rule_id in references(condition):
                    continue
                test = self.evaluate(condition)
                missing |= test.missing_variables
                result = truth(test)
                if (mode == "applicable if" and result is False) or \
                        (mode == "not applicable if" and result is True):
                    disabled = True
            input_node = self.engine.input_node(ancestor)
            if input_node is not None and rule_id not in references(input_node):
                answer = self.evaluate(input_node)
                missing |= answer.missing_variables
                if answer.value is False:
                    disabled = True
        return disabled, frozenset(missing)
