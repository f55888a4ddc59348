"""
Rule engine for rulefold.

A RuleEngine parses a model (a mapping of rule ids to raw rules) once and
evaluates its rules under a situation, the mapping of input rules to the
values a user answered.

Example:
    engine = RuleEngine({
        "price": {"formula": "quantity * unit price", "unit": "€"},
        "price . quantity": {"question": "How many?", "default": 2},
        "price . unit price": {"value": 10},
    })

    engine.evaluate("price")
    # => Evaluation(value=20, unit='€', missing_variables=frozenset({'price . quantity'}), ...)

    engine.set_situation({"price . quantity": 3}).evaluate("price").value  # => 30
"""

import json
import logging
from copy import deepcopy
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple, Union

import yaml

from .errors import ModelError, UnknownReference
from .evaluator import Evaluation, Evaluator
from .expression import normalize_name
from .parser import RuleParser, ancestors
from .tree import Node

logger = logging.getLogger(__name__)

RawRules = Mapping[str, Any]

FOLD_STATUSES = ("none", "partially", "fully")


class RuleNode(NamedTuple):
    """
    A parsed rule.

    Attributes:
        dotted_name: Rule id, e.g. "ruleA . B . C"
        value: Current formula tree
        raw: Source-level rule, kept to write the rule back
        optimized: Fold status: "none", "partially" or "fully"
    """
    dotted_name: str
    value: Node
    raw: Any
    optimized: str = "none"


def load_rules_from_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a raw rule map from a YAML or JSON file.

    .json files are read with json, anything else (.yaml, .yml,
    .publicodes) with yaml.safe_load. An empty file is an empty model.

    Raises:
        FileNotFoundError: if path does not exist
        ModelError: if the file does not hold a mapping
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ModelError(None, f"{path}: expected a mapping of rules, got {type(data).__name__}")
    logger.debug("Loaded %d rules from %s", len(data), path)
    return data


class RuleEngine:
    """
    Parses a model and evaluates its rules.

    The engine never changes the raw rules it was given. Evaluations are
    cached until the situation changes.
    """

    def __init__(self, rules: Optional[RawRules] = None, situation: Optional[Mapping[str, Any]] = None):
        """
        Args:
            rules: Mapping of rule id to raw rule
            situation: Optional initial answers to input rules

        Raises:
            ParseError: if a rule cannot be parsed
        """
        raw_rules = {normalize_name(str(name)): deepcopy(raw) for name, raw in (rules or {}).items()}
        self._parser = RuleParser(raw_rules)
        self._rules: Dict[str, RuleNode] = {}
        self._applicability: Dict[str, Tuple] = {}
        self._inputs: Dict[str, Node] = {}
        for rule_id, raw in raw_rules.items():
            parsed = self._parser.parse_rule(rule_id, raw)
            self._rules[rule_id] = RuleNode(rule_id, parsed.tree, raw)
            if parsed.applicability:
                self._applicability[rule_id] = parsed.applicability
            if parsed.input_node is not None:
                self._inputs[rule_id] = parsed.input_node
        self._situation: Dict[str, Node] = {}
        self._evaluator = Evaluator(self, self._situation)
        if situation:
            self.set_situation(situation)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'RuleEngine':
        """Create an engine from a YAML or JSON model file."""
        return cls(load_rules_from_file(path))

    # ------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------

    def get_rule(self, rule_id: str) -> Optional[RuleNode]:
        """Get a parsed rule by id, or None."""
        return self._rules.get(rule_id)

    def get_parsed_rules(self) -> Mapping[str, RuleNode]:
        """Read-only view of every parsed rule, in model order."""
        return MappingProxyType(self._rules)

    def applicability(self, rule_id: str) -> Tuple[Tuple[str, Node], ...]:
        """Top-level (mode, condition) pairs of a rule."""
        return self._applicability.get(rule_id, ())

    def input_node(self, rule_id: str) -> Optional[Node]:
        """Situation lookup node of an input rule, None for other rules."""
        return self._inputs.get(rule_id)

    def ancestors(self, rule_id: str) -> Tuple[str, ...]:
        """Enclosing namespaces of rule_id that are rules of this model."""
        return tuple(name for name in ancestors(rule_id) if name in self._rules)

    # ------------------------------------------------------------
    # Situation
    # ------------------------------------------------------------

    def set_situation(self, situation: Optional[Mapping[str, Any]] = None) -> 'RuleEngine':
        """
        Replace the situation.

        Values are raw values (numbers, booleans) or expressions, parsed
        in the namespace of the rule they answer: "'option'" for a text,
        "10 €" for a number with a unit.

        Raises:
            UnknownReference: if a key is not a rule of the model
        """
        parsed = {}
        for name, value in (situation or {}).items():
            rule_id = normalize_name(name)
            if rule_id not in self._rules:
                raise UnknownReference(None, rule_id)
            if value is None:
                continue
            parsed[rule_id] = self._parser.parse_value(value, rule_id)
        self._situation = parsed
        self._evaluator = Evaluator(self, self._situation)
        return self

    # ------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------

    def evaluate(self, rule_id: str) -> Evaluation:
        """
        Evaluate a rule under the current situation.

        Raises:
            UnknownReference: if rule_id is not a rule of the model
            EvaluationError: if the value cannot be computed
        """
        rule_id = normalize_name(rule_id)
        if rule_id not in self._rules:
            raise UnknownReference(None, rule_id)
        return self._evaluator.evaluate_rule(rule_id)

    def evaluate_node(self, node: Node) -> Evaluation:
        """Evaluate a standalone tree under the current situation."""
        return self._evaluator.evaluate(node)

    def evaluate_expression(self, text: str, rule_id: Optional[str] = None) -> Evaluation:
        """Parse an expression in the namespace of rule_id and evaluate it."""
        return self.evaluate_node(self._parser.parse_value(text, rule_id))

    # ------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules

    def __iter__(self):
        return iter(self._rules)

    def __getitem__(self, rule_id: str) -> RuleNode:
        """Get a parsed rule by id: engine["ruleA"]. Raises KeyError if absent."""
        if rule_id not in self._rules:
            raise KeyError(f"Rule not found: {rule_id}")
        return self._rules[rule_id]

    def __repr__(self) -> str:
        return f"RuleEngine({len(self._rules)} rules)"
