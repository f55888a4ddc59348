"""
Writing parsed rules back to the raw rule format.

The output of serialize_parsed_rules can be dumped to YAML or JSON and
loaded again by RuleEngine. Metadata (title, description, question...)
is copied from the raw rule; the semantic part is rebuilt from the
current tree, so folded values show up in place of the formulas they
replaced:

    {"ruleB": {"value": 100, "optimized": "fully"}}
    {"ruleA": {"title": "Rule A", "formula": "10 * D", "optimized": "partially"}}
"""

import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .engine import RuleNode
from .expression import format_expression, format_value, is_expression
from .parser import MECHANISM_KEYS, SEMANTIC_KEYS
from .tree import NOTHING, Node


# ============================================================
# Values
# ============================================================

def _serialize_expression(node: Node) -> Any:
    return format_expression(node)


def _serialize_constant(node: Node) -> Any:
    value, unit = node[1], node[2]
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not unit:
        return value
    return format_value(value, unit)


def _serialize_nary(node: Node) -> Any:
    return {node[1]: [serialize_node(item) for item in node[2]]}


def _serialize_variations(node: Node) -> Any:
    branches = [{"if": serialize_node(condition), "then": serialize_node(value)}
                for condition, value in node[1]]
    if node[2] is not None:
        branches.append({"else": serialize_node(node[2])})
    return {"variations": branches}


def _serialize_condition(node: Node) -> Any:
    return {node[1]: serialize_node(node[2]), "value": serialize_node(node[3])}


def _serialize_limit(node: Node) -> Any:
    return {"value": serialize_node(node[2]), node[1]: serialize_node(node[3])}


def _round_attribute(decimals: int) -> Any:
    return True if decimals == 0 else decimals


def _serialize_rounding(node: Node) -> Any:
    return {"value": serialize_node(node[1]), "round": _round_attribute(node[2])}


def _serialize_unit(node: Node) -> Any:
    return {"value": serialize_node(node[1]), "unit": node[2]}


def _context_attribute(bindings) -> Dict[str, Any]:
    return {key[1]: serialize_node(expr) for key, expr in bindings}


def _serialize_context(node: Node) -> Any:
    return {"value": serialize_node(node[1]), "context": _context_attribute(node[2])}


def _serialize_scale(node: Node) -> Any:
    mechanism, base, brackets, multiplier = node[1], node[2], node[3], node[4]
    amount_key = "rate" if mechanism == "scale" else "amount"
    body = {"base": serialize_node(base)}
    if multiplier is not None:
        body["multiplier"] = serialize_node(multiplier)
    body["brackets"] = []
    for amount, ceiling in brackets:
        bracket = {amount_key: serialize_node(amount)}
        if ceiling is not None:
            bracket["ceiling"] = serialize_node(ceiling)
        body["brackets"].append(bracket)
    return {mechanism: body}


def _serialize_text(node: Node) -> Any:
    text = "".join(
        part if isinstance(part, str) else "{{ " + format_expression(part) + " }}"
        for part in node[1]
    )
    return {"text": text}


def _serialize_duration(node: Node) -> Any:
    return {"duration": {"from": serialize_node(node[1]), "to": serialize_node(node[2])}}


def _choice_attribute(node: Node) -> Dict[str, Any]:
    return {"choices": list(node[2]), "required": node[3]}


def _serialize_choice(node: Node) -> Any:
    return {"value": serialize_node(node[1]), "one of": _choice_attribute(node)}


def _serialize_defined(node: Node) -> Any:
    return {node[1]: serialize_node(node[2])}


def _serialize_input(node: Node) -> Any:
    if node[2] == NOTHING:
        return {}
    return {"default": serialize_node(node[2])}


SERIALIZERS: Dict[str, Callable[[Node], Any]] = {
    "reference": _serialize_expression,
    "constant": _serialize_constant,
    "operation": _serialize_expression,
    "nary": _serialize_nary,
    "variations": _serialize_variations,
    "condition": _serialize_condition,
    "limit": _serialize_limit,
    "rounding": _serialize_rounding,
    "unit": _serialize_unit,
    "context": _serialize_context,
    "scale": _serialize_scale,
    "text": _serialize_text,
    "duration": _serialize_duration,
    "choice": _serialize_choice,
    "defined": _serialize_defined,
    "input": _serialize_input,
}


def serialize_node(node: Node) -> Any:
    """
    Serialize a tree in value position.

    Plain numbers stay numbers, expressions become strings, mechanisms
    become mappings.

    Raises:
        ValueError: if node is not of a known kind
    """
    if node[0] == "operation" and not is_expression(node):
        raise ValueError("An operation operand cannot be written back as an expression")
    serializer = SERIALIZERS.get(node[0])
    if serializer is None:
        raise ValueError(f"Unknown node kind: {node[0]!r}")
    return serializer(node)


# ============================================================
# Rules
# ============================================================

def _peel(tree: Node, raw: Dict[str, Any], attributes: Dict[str, Any]) -> Node:
    """Move the wrappers declared at the top of raw into attributes, return the core."""
    node = tree
    while True:
        kind = node[0]
        if kind == "condition" and node[1] in raw:
            attributes[node[1]] = serialize_node(node[2])
            node = node[3]
        elif kind == "context" and "context" in raw:
            attributes["context"] = _context_attribute(node[2])
            node = node[1]
        elif kind == "limit" and node[1] in raw:
            attributes[node[1]] = serialize_node(node[3])
            node = node[2]
        elif kind == "rounding" and "round" in raw:
            attributes["round"] = _round_attribute(node[2])
            node = node[1]
        elif kind == "unit" and "unit" in raw:
            attributes["unit"] = node[2]
            node = node[1]
        elif kind == "choice" and "one of" in raw:
            attributes["one of"] = _choice_attribute(node)
            node = node[1]
        else:
            return node


def _literal_attributes(node: Node) -> Dict[str, Any]:
    value, unit = node[1], node[2]
    if isinstance(value, (int, float)) and not isinstance(value, bool) and unit and unit != "%":
        return {"value": value, "unit": unit}
    return {"value": _serialize_constant(node)}


def serialize_rule(rule: RuleNode, fold_attribute: str = "optimized") -> Optional[Dict[str, Any]]:
    """
    Serialize one rule.

    Returns:
        The raw rule mapping, or None for an untouched empty rule
    """
    raw = rule.raw
    if rule.optimized == "none" and raw is None:
        return None
    raw_mapping = raw if isinstance(raw, dict) else {}
    result = {key: value for key, value in raw_mapping.items() if key not in SEMANTIC_KEYS}

    if rule.optimized == "fully":
        result.update(_literal_attributes(rule.value))
    else:
        attributes: Dict[str, Any] = {}
        core = _peel(rule.value, raw_mapping, attributes)
        if core[0] == "input":
            result.update(_serialize_input(core))
        elif core != NOTHING:
            value = serialize_node(core)
            if rule.optimized == "partially":
                result["formula"] = value
            elif "formula" in raw_mapping:
                result["formula"] = value
            elif "value" in raw_mapping or not isinstance(value, dict) or \
                    not any(key in raw_mapping for key in MECHANISM_KEYS):
                result["value"] = value
            else:
                result.update(value)
        result.update(attributes)

    if rule.optimized != "none":
        result[fold_attribute] = rule.optimized
    return result


def serialize_parsed_rules(rules: Mapping[str, RuleNode],
                           fold_attribute: str = "optimized") -> Dict[str, Any]:
    """
    Serialize every rule of a parsed or folded model.

    Args:
        rules: Mapping of rule id to RuleNode, e.g. engine.get_parsed_rules()
            or the result of constant_folding()
        fold_attribute: Key receiving the fold status of rewritten rules

    Returns:
        Mapping of rule id to raw rule, ready for yaml or json dumping
    """
    return {rule_id: serialize_rule(rule, fold_attribute) for rule_id, rule in rules.items()}


def to_plain(value: Any) -> Any:
    """Replace dates by their dd/mm/yyyy text so the model can be dumped as JSON."""
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    if isinstance(value, datetime.date):
        return value.strftime("%d/%m/%Y")
    return value
