"""
Raw rule parsing.

Turns the source-level rule map (as loaded from YAML or JSON) into
formula trees. A raw rule is None (an empty namespace), a scalar (same as
{"value": scalar}) or a mapping:

    ruleA:
      title: Rule A              # metadata, copied verbatim
      formula: B . C * D         # or "value", or a mechanism key
      unit: kgCO2e
      applicable if: enabled

Names inside a rule are resolved against its enclosing namespaces first:
in rule "ruleA", "B . C" designates "ruleA . B . C" if it exists, then
"B . C" at the top level.
"""

import datetime
from typing import Any, Dict, Iterable, NamedTuple, Optional, Tuple

from .errors import ExpressionSyntaxError, ParseError, UnknownMechanism, UnknownReference
from .expression import normalize_name, parse_expression, parse_template
from .tree import (
    CONDITION_MODES, DEFINED_MECHANISMS, LIMIT_MECHANISMS, NARY_MECHANISMS,
    NOTHING, SCALE_MECHANISMS, Node, constant, reference,
)

VALUE_KEYS = ("value", "formula")
INPUT_KEYS = ("question", "default")
MECHANISM_KEYS = NARY_MECHANISMS + SCALE_MECHANISMS + DEFINED_MECHANISMS + (
    "variations", "text", "duration",
)
WRAPPER_KEYS = ("one of", "unit", "round") + LIMIT_MECHANISMS + ("context",) + CONDITION_MODES

# Keys carrying semantics; everything else in a rule mapping is metadata.
SEMANTIC_KEYS = frozenset(VALUE_KEYS + ("default",) + MECHANISM_KEYS + WRAPPER_KEYS)


class ParsedRule(NamedTuple):
    """Tree of a rule plus what its descendants need to know about it."""
    tree: Node
    applicability: Tuple[Tuple[str, Node], ...]
    input_node: Optional[Node]


def split_name(rule_id: str) -> Tuple[str, ...]:
    return tuple(segment.strip() for segment in rule_id.split(" . "))


def ancestors(rule_id: str) -> Tuple[str, ...]:
    """Enclosing namespaces of a rule, nearest first: "a . b . c" -> ("a . b", "a")."""
    segments = split_name(rule_id)
    return tuple(" . ".join(segments[:i]) for i in range(len(segments) - 1, 0, -1))


def is_input(raw: Any) -> bool:
    return isinstance(raw, dict) and any(key in raw for key in INPUT_KEYS)


class RuleParser:
    """
    Parses raw rules of one model.

    All names must be known up front so references can be resolved while
    parsing; construct the parser with the full set of rule ids.
    """

    def __init__(self, rule_ids: Iterable[str]):
        self.rule_ids = frozenset(rule_ids)

    # ------------------------------------------------------------
    # Names
    # ------------------------------------------------------------

    def resolve(self, name: str, rule_id: Optional[str]) -> str:
        """
        Resolve a name as written in rule_id to the rule it designates.

        Raises:
            UnknownReference: if no candidate exists
        """
        name = normalize_name(name)
        if rule_id is not None:
            segments = split_name(rule_id)
            for i in range(len(segments), 0, -1):
                candidate = " . ".join(segments[:i] + (name,))
                if candidate in self.rule_ids:
                    return candidate
        if name in self.rule_ids:
            return name
        raise UnknownReference(rule_id, name)

    def reference(self, name: str, rule_id: str) -> Node:
        return reference(normalize_name(name), self.resolve(name, rule_id))

    # ------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------

    def parse_rule(self, rule_id: str, raw: Any) -> ParsedRule:
        if raw is None:
            return ParsedRule(NOTHING, (), None)
        if not isinstance(raw, dict):
            return ParsedRule(self.parse_value(raw, rule_id), (), None)

        input_node = None
        if is_input(raw):
            default = self.parse_value(raw["default"], rule_id) if "default" in raw else NOTHING
            input_node = ("input", rule_id, default)
        tree = self._parse_body(raw, rule_id, core=input_node)
        applicability = tuple(
            (mode, self.parse_value(raw[mode], rule_id)) for mode in CONDITION_MODES if mode in raw
        )
        return ParsedRule(tree, applicability, input_node)

    def parse_value(self, value: Any, rule_id: str) -> Node:
        """Parse anything that can stand in a value position."""
        if value is None:
            return NOTHING
        if isinstance(value, (bool, int, float)):
            return constant(value)
        if isinstance(value, datetime.date):
            return constant(value)
        if isinstance(value, str):
            try:
                return parse_expression(value, lambda name: self.resolve(name, rule_id))
            except ExpressionSyntaxError as e:
                raise ExpressionSyntaxError(rule_id, e.reason) from None
        if isinstance(value, dict):
            return self._parse_body(value, rule_id)
        raise ParseError(rule_id, f"cannot parse value {value!r}")

    def _parse_body(self, body: Dict[str, Any], rule_id: str, core: Optional[Node] = None) -> Node:
        if core is None:
            core = self._parse_core(body, rule_id)

        if "one of" in body:
            options = body["one of"] or {}
            choices = tuple(str(choice) for choice in options.get("choices", ()))
            core = ("choice", core, choices, bool(options.get("required", False)))
        if "unit" in body:
            core = ("unit", core, str(body["unit"]))
        if "round" in body:
            decimals = body["round"]
            if decimals is True:
                core = ("rounding", core, 0)
            elif decimals is not False:
                if not isinstance(decimals, int):
                    raise ParseError(rule_id, "'round' expects yes, no or a number of decimals")
                core = ("rounding", core, decimals)
        for mechanism in LIMIT_MECHANISMS:
            if mechanism in body:
                core = ("limit", mechanism, core, self.parse_value(body[mechanism], rule_id))
        if "context" in body:
            core = ("context", core, self._parse_context(body["context"], rule_id))
        # applicable if ends up outermost
        for mode in reversed(CONDITION_MODES):
            if mode in body:
                core = ("condition", mode, self.parse_value(body[mode], rule_id), core)
        return core

    def _parse_core(self, body: Dict[str, Any], rule_id: str) -> Node:
        for key in VALUE_KEYS:
            if key in body:
                return self.parse_value(body[key], rule_id)
        mechanisms = [key for key in body if key in MECHANISM_KEYS]
        if len(mechanisms) > 1:
            raise UnknownMechanism(rule_id, f"several mechanisms in one mapping: {', '.join(mechanisms)}")
        if mechanisms:
            return self._parse_mechanism(mechanisms[0], body[mechanisms[0]], rule_id)
        return NOTHING

    # ------------------------------------------------------------
    # Mechanisms
    # ------------------------------------------------------------

    def _parse_mechanism(self, key: str, value: Any, rule_id: str) -> Node:
        if key in NARY_MECHANISMS:
            if not isinstance(value, list):
                raise ParseError(rule_id, f"'{key}' expects a list")
            return ("nary", key, tuple(self.parse_value(item, rule_id) for item in value))
        if key in DEFINED_MECHANISMS:
            return ("defined", key, self.parse_value(value, rule_id))
        if key in SCALE_MECHANISMS:
            return self._parse_scale(key, value, rule_id)
        if key == "variations":
            return self._parse_variations(value, rule_id)
        if key == "text":
            return ("text", parse_template(str(value), lambda name: self.resolve(name, rule_id)))
        if key == "duration":
            if not isinstance(value, dict) or "from" not in value or "to" not in value:
                raise ParseError(rule_id, "'duration' expects 'from' and 'to'")
            return ("duration", self.parse_value(value["from"], rule_id),
                    self.parse_value(value["to"], rule_id))
        raise UnknownMechanism(rule_id, f"unknown mechanism '{key}'")

    def _parse_variations(self, value: Any, rule_id: str) -> Node:
        if not isinstance(value, list):
            raise ParseError(rule_id, "'variations' expects a list")
        branches = []
        otherwise = None
        for branch in value:
            if not isinstance(branch, dict):
                raise ParseError(rule_id, f"invalid variation {branch!r}")
            if "else" in branch:
                otherwise = self.parse_value(branch["else"], rule_id)
            elif "if" in branch and "then" in branch:
                branches.append((self.parse_value(branch["if"], rule_id),
                                 self.parse_value(branch["then"], rule_id)))
            else:
                raise ParseError(rule_id, "a variation needs 'if' and 'then', or 'else'")
        return ("variations", tuple(branches), otherwise)

    def _parse_context(self, value: Any, rule_id: str) -> Tuple:
        if not isinstance(value, dict):
            raise ParseError(rule_id, "'context' expects a mapping")
        return tuple(
            (self.reference(name, rule_id), self.parse_value(expr, rule_id))
            for name, expr in value.items()
        )

    def _parse_scale(self, key: str, value: Any, rule_id: str) -> Node:
        if not isinstance(value, dict) or "base" not in value or "brackets" not in value:
            raise ParseError(rule_id, f"'{key}' expects 'base' and 'brackets'")
        amount_key = "rate" if key == "scale" else "amount"
        brackets = []
        for bracket in value["brackets"]:
            if not isinstance(bracket, dict) or amount_key not in bracket:
                raise ParseError(rule_id, f"each '{key}' bracket needs a '{amount_key}'")
            ceiling = bracket.get("ceiling")
            brackets.append((
                self.parse_value(bracket[amount_key], rule_id),
                None if ceiling is None else self.parse_value(ceiling, rule_id),
            ))
        multiplier = value.get("multiplier")
        return (
            "scale", key, self.parse_value(value["base"], rule_id), tuple(brackets),
            None if multiplier is None else self.parse_value(multiplier, rule_id),
        )
