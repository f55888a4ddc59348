"""
Constant folding and dead-rule elimination.

Finds the rules whose value is the same in every situation, inlines that
value in every rule that reads them, and removes the rules nothing reads
any more. The result is a smaller model that evaluates exactly like the
original for every rule it keeps.

Example:
    engine = RuleEngine({
        "ruleA": {"formula": "B . C * D"},
        "ruleA . B . C": {"value": 10},
        "ruleA . D": {"question": "What's the value of D?"},
    })
    folded = constant_folding(engine, lambda rule_id, _: rule_id == "ruleA")
    serialize_parsed_rules(folded)
    # => {"ruleA": {"formula": "10 * D", "optimized": "partially"},
    #     "ruleA . D": {"question": "What's the value of D?"}}

A rule is never folded when its value can change at runtime:

    - it is an input (question or default),
    - it carries "applicable if" / "not applicable if",
    - it is read inside a context scope, or owns or is overridden by a
      context scope whose overrides are not constant, or is read
      (transitively) by such a rule.
"""

import logging
from types import MappingProxyType
from typing import Callable, Dict, Mapping, NamedTuple, Optional, Set

from .engine import RuleEngine, RuleNode
from .evaluator import Evaluator
from .parser import CONDITION_MODES
from .rewriter import context_nodes, references, substitute
from .tree import constant

logger = logging.getLogger(__name__)

KeepFunc = Callable[[str, RuleNode], bool]


class FoldingParams:
    """
    Options of the folding pass.

    Args:
        fold_attribute: Key under which the serializer writes the fold
            status ("partially" or "fully") of a rewritten rule
        fold_defaults_without_question: When True, a rule with a default
            value but no question is folded like any other rule. By
            default such a rule is treated as an input.
    """

    def __init__(self, fold_attribute: str = "optimized",
                 fold_defaults_without_question: bool = False):
        self.fold_attribute = fold_attribute
        self.fold_defaults_without_question = fold_defaults_without_question

    def __repr__(self) -> str:
        return (f"FoldingParams(fold_attribute={self.fold_attribute!r}, "
                f"fold_defaults_without_question={self.fold_defaults_without_question})")


# ============================================================
# Reference graph
# ============================================================

class References(NamedTuple):
    """Dependency edges between rules, and the rules that must stay symbolic."""
    parents: Dict[str, Set[str]]
    children: Dict[str, Set[str]]
    unfoldable: Set[str]


def build_references(rules: Mapping[str, RuleNode], engine: RuleEngine) -> References:
    """
    Scan every rule tree once.

    Records a child edge rule -> target for every rule a tree reads (self
    references excepted) and the mirrored parent edge. Rules read inside a
    context scope are unfoldable: their value there differs from their
    value outside. Overrides are evaluated without the engine's
    situation. When a scope overrides a rule with a non-constant
    expression, the scope owner and the overridden rules are unfoldable
    too. Finally everything an unfoldable rule reads, transitively, is
    unfoldable.
    """
    parents: Dict[str, Set[str]] = {rule_id: set() for rule_id in rules}
    children: Dict[str, Set[str]] = {rule_id: set() for rule_id in rules}
    unfoldable: Set[str] = set()
    evaluator = Evaluator(engine)

    for rule_id, rule in rules.items():
        for target in references(rule.value):
            if target == rule_id:
                continue
            children[rule_id].add(target)
            parents.setdefault(target, set()).add(rule_id)

        for scope in context_nodes(rule.value):
            inner, bindings = scope[1], scope[2]
            overridden = {key[2] for key, _ in bindings}
            unfoldable |= references(inner) - overridden - {rule_id}
            if any(not _is_constant_expression(evaluator, expr) for _, expr in bindings):
                logger.debug("%s: context with non-constant overrides", rule_id)
                unfoldable.add(rule_id)
                unfoldable |= overridden

    queue = list(unfoldable)
    while queue:
        rule_id = queue.pop()
        for child in children.get(rule_id, ()):
            if child not in unfoldable:
                unfoldable.add(child)
                queue.append(child)

    return References(parents, children, unfoldable)


def _is_constant_expression(evaluator: Evaluator, expr) -> bool:
    evaluation = evaluator.evaluate(expr)
    return not evaluation.missing_variables and not evaluation.parent_missing_variables


# ============================================================
# Folding
# ============================================================

class ConstantFolder:
    """
    Folds the rules of an engine.

    Works on a private copy of the engine's rules; the engine itself is
    only used to evaluate. Evaluation ignores the engine's situation: an
    answered input is still an input. Use constant_folding() unless you
    need to inspect the graph afterwards.
    """

    def __init__(self, engine: RuleEngine, to_keep: Optional[KeepFunc] = None,
                 params: Optional[FoldingParams] = None):
        self.engine = engine
        self.evaluator = Evaluator(engine)
        self.to_keep = to_keep
        self.params = params or FoldingParams()
        self.rules: Dict[str, RuleNode] = dict(engine.get_parsed_rules())
        refs = build_references(self.rules, engine)
        self.parents = refs.parents
        self.children = refs.children
        self.unfoldable = refs.unfoldable
        # Inputs answered only by their default, read as constants when allowed
        self.assumed: Set[str] = set()
        if self.params.fold_defaults_without_question:
            self.assumed = {
                rule_id for rule_id, rule in self.rules.items()
                if isinstance(rule.raw, dict) and "default" in rule.raw and "question" not in rule.raw
            }
        self.changed = False
        self.passes = 0

    # ------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------

    def is_protected(self, rule_id: str) -> bool:
        """True if the rule's value may change at runtime, whatever its current status."""
        raw = self.rules[rule_id].raw
        if isinstance(raw, dict):
            if "question" in raw:
                return True
            if "default" in raw and not self.params.fold_defaults_without_question:
                return True
            if any(mode in raw for mode in CONDITION_MODES):
                return True
        return rule_id in self.unfoldable

    def is_foldable(self, rule_id: str) -> bool:
        """True if the rule can be replaced by its value right now."""
        return (rule_id in self.rules
                and self.rules[rule_id].optimized != "fully"
                and not self.is_protected(rule_id))

    def is_retained(self, rule_id: str) -> bool:
        return self.to_keep is not None and self.to_keep(rule_id, self.rules[rule_id])

    def is_constant(self, evaluation) -> bool:
        """True if an evaluation holds a value that no situation can change."""
        if evaluation.value is None:
            return False
        missing = evaluation.missing_variables | evaluation.parent_missing_variables
        return not (missing - self.assumed)

    @staticmethod
    def is_empty(rule: RuleNode) -> bool:
        return rule.raw is None or rule.raw == {}

    # ------------------------------------------------------------
    # Graph updates
    # ------------------------------------------------------------

    def delete_rule(self, rule_id: str) -> bool:
        """
        Remove a rule and every edge touching it.

        Children left without parents are removed as well. Rules matched
        by the retention predicate and protected rules are never removed.

        Returns:
            True if the rule was removed
        """
        if rule_id not in self.rules or self.is_retained(rule_id) or self.is_protected(rule_id):
            return False
        logger.debug("Deleting %s", rule_id)
        del self.rules[rule_id]
        for parent in self.parents.pop(rule_id, set()):
            self.children.get(parent, set()).discard(rule_id)
        self.changed = True
        self._detach_children(rule_id)
        self.children.pop(rule_id, None)
        return True

    def _detach_children(self, rule_id: str) -> None:
        """Drop the child edges of rule_id, deleting children orphaned by it."""
        for child in sorted(self.children.get(rule_id, ())):
            child_parents = self.parents.get(child)
            if child_parents is None:
                continue
            child_parents.discard(rule_id)
            if not child_parents:
                self.delete_rule(child)
        if rule_id in self.children:
            self.children[rule_id] = set()

    def _inline(self, rule_id: str, literal) -> None:
        """Substitute the value of rule_id into every parent that can be rewritten."""
        for parent in sorted(self.parents.get(rule_id, ())):
            if not self.is_foldable(parent):
                continue
            node = self.rules[parent]
            new_tree = substitute(node.value, rule_id, literal, rule_id=parent)
            if new_tree is node.value:
                # only read through a context override key
                continue
            self.rules[parent] = node._replace(value=new_tree, optimized="partially")
            self.changed = True
            logger.debug("Inlined %s into %s", rule_id, parent)
            if rule_id not in references(new_tree):
                self.parents[rule_id].discard(parent)
                self.children[parent].discard(rule_id)

    # ------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------

    def try_to_fold(self, rule_id: str) -> None:
        """
        Fold one rule if its value is constant, else fold what it reads.
        """
        if not self.is_foldable(rule_id):
            return
        rule = self.rules[rule_id]
        had_parents = bool(self.parents.get(rule_id))

        if self.is_empty(rule) and not had_parents:
            self.delete_rule(rule_id)
            return

        evaluation = self.evaluator.evaluate_rule(rule_id)
        if self.is_constant(evaluation):
            literal = constant(evaluation.value, evaluation.unit)
            self.rules[rule_id] = rule._replace(value=literal, optimized="fully")
            self.changed = True
            logger.debug("Folded %s to %r", rule_id, evaluation.value)
            self._inline(rule_id, literal)
            self._detach_children(rule_id)
            if had_parents and not self.parents.get(rule_id):
                self.delete_rule(rule_id)
            return

        for child in sorted(self.children.get(rule_id, ())):
            if self.is_foldable(child):
                self.try_to_fold(child)

    def prune(self) -> None:
        """Remove every rule neither protected, retained nor read by another rule."""
        for rule_id in list(self.rules):
            if rule_id in self.rules and not self.parents.get(rule_id):
                self.delete_rule(rule_id)

    def run(self) -> Mapping[str, RuleNode]:
        """
        Fold until a full pass changes nothing, then prune if a retention
        predicate was given.

        Raises:
            EvaluationError: propagated from the evaluator; nothing is returned
            SubstitutionMismatch: if the reference graph and a tree disagree
        """
        count = len(self.rules)
        self.changed = True
        while self.changed:
            self.changed = False
            self.passes += 1
            for rule_id in list(self.rules):
                self.try_to_fold(rule_id)
        if self.to_keep is not None:
            self.prune()
        logger.info("Constant folding: %d rules -> %d rules in %d passes",
                    count, len(self.rules), self.passes)
        return MappingProxyType(self.rules)


def constant_folding(engine: RuleEngine, to_keep: Optional[KeepFunc] = None,
                     params: Optional[FoldingParams] = None) -> Mapping[str, RuleNode]:
    """
    Fold the rules of engine.

    Args:
        engine: Engine holding the model; it is not modified
        to_keep: Optional predicate (rule_id, rule) -> bool. When given,
            every rule that is neither matched, protected, nor read by a
            remaining rule is removed after folding.
        params: FoldingParams, defaults apply when None

    Returns:
        Read-only mapping of the surviving rules

    Example:
        folded = constant_folding(engine, lambda rule_id, _: rule_id == "ruleA")
    """
    return ConstantFolder(engine, to_keep, params).run()

