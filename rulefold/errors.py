"""
Exceptions raised by rulefold.

All errors derive from RuleError, itself a ValueError, so callers that
only care about "bad model" can catch a single type. Each error names the
rule it was raised for.
"""

from typing import Optional


class RuleError(ValueError):
    """Base class for every error raised while loading, evaluating or folding rules."""

    def __init__(self, rule_id: Optional[str], reason: str):
        self.rule_id = rule_id
        self.reason = reason
        if rule_id is None:
            super().__init__(reason)
        else:
            super().__init__(f"[{rule_id}] {reason}")


# ============================================================
# Parsing
# ============================================================

class ParseError(RuleError):
    """A raw rule could not be turned into a formula tree."""


class ExpressionSyntaxError(ParseError):
    """An infix expression is malformed."""


class UnknownReference(ParseError):
    """A name does not resolve to any rule of the model."""

    def __init__(self, rule_id: Optional[str], name: str):
        self.name = name
        super().__init__(rule_id, f"unknown reference '{name}'")


class UnknownMechanism(ParseError):
    """A mapping uses a key that is neither a mechanism nor a known attribute."""


# ============================================================
# Evaluation
# ============================================================

class EvaluationError(RuleError):
    """The evaluator could not compute a value (type mismatch, division by zero...)."""


class CyclicReference(EvaluationError):
    """A rule depends on itself, directly or through other rules."""


# ============================================================
# Folding and loading
# ============================================================

class SubstitutionMismatch(RuleError):
    """A reference recorded in the graph is absent from the parent's tree."""

    def __init__(self, rule_id: Optional[str], target: str):
        self.target = target
        super().__init__(rule_id, f"no reference to '{target}' to substitute")


class ModelError(RuleError):
    """A model could not be assembled from its sources (duplicates, bad imports...)."""
