"""
rulefold - constant folding for declarative rule models

Shrinks a model of named, interdependent rules before it is shipped:
rules whose value is the same in every situation are replaced by that
value wherever they are read, and rules nothing reads any more are
removed.

Quick Start:
    from rulefold import RuleEngine, constant_folding, serialize_parsed_rules

    engine = RuleEngine({
        "ruleA": {"formula": "B . C * D"},
        "ruleA . B . C": {"value": 10},
        "ruleA . D": {"question": "What's the value of D?"},
    })

    folded = constant_folding(engine, lambda rule_id, _: rule_id == "ruleA")
    serialize_parsed_rules(folded)
    # => {"ruleA": {"formula": "10 * D", "optimized": "partially"},
    #     "ruleA . D": {"question": "What's the value of D?"}}

Rule Syntax (YAML):
    price:
      title: Price
      formula: quantity * unit price
      unit: €
    price . quantity:
      question: How many?
      default: 2
    price . unit price: 10

Rules that are never folded:
    - inputs (question, default)
    - rules with applicable if / not applicable if
    - rules whose value depends on a context override
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    RuleError,
    ParseError,
    ExpressionSyntaxError,
    UnknownReference,
    UnknownMechanism,
    EvaluationError,
    CyclicReference,
    SubstitutionMismatch,
    ModelError,
)

# Trees
from .tree import (
    KINDS,
    NOTHING,
    Node,
    reference,
    constant,
    operation,
    map_children,
    iter_children,
    walk,
)

# Expressions
from .expression import (
    parse_expression,
    format_expression,
    format_value,
    normalize_name,
)

# Rewriting
from .rewriter import (
    references,
    substitute,
    transform,
)

# Engine
from .evaluator import Evaluation, Evaluator
from .engine import RuleEngine, RuleNode, load_rules_from_file

# Folding
from .folding import (
    FoldingParams,
    References,
    ConstantFolder,
    build_references,
    constant_folding,
)

# Serialization and loading
from .serialize import serialize_parsed_rules, serialize_rule, serialize_node
from .loader import Session, resolve_imports, get_model_from_source

# Migration
from .migration import Migration, migrate_situation

__all__ = [
    # Errors
    "RuleError",
    "ParseError",
    "ExpressionSyntaxError",
    "UnknownReference",
    "UnknownMechanism",
    "EvaluationError",
    "CyclicReference",
    "SubstitutionMismatch",
    "ModelError",
    # Trees
    "KINDS",
    "NOTHING",
    "Node",
    "reference",
    "constant",
    "operation",
    "map_children",
    "iter_children",
    "walk",
    # Expressions
    "parse_expression",
    "format_expression",
    "format_value",
    "normalize_name",
    # Rewriting
    "references",
    "substitute",
    "transform",
    # Engine
    "Evaluation",
    "Evaluator",
    "RuleEngine",
    "RuleNode",
    "load_rules_from_file",
    # Folding
    "FoldingParams",
    "References",
    "ConstantFolder",
    "build_references",
    "constant_folding",
    # Serialization and loading
    "serialize_parsed_rules",
    "serialize_rule",
    "serialize_node",
    "Session",
    "resolve_imports",
    "get_model_from_source",
    # Migration
    "Migration",
    "migrate_situation",
]
