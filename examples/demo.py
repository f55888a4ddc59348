#!/usr/bin/env python3
"""
rulefold Feature Demonstration

This script walks through evaluating and folding the example model.
"""

from pathlib import Path

import yaml
from rulefold import (
    FoldingParams,
    RuleEngine,
    build_references,
    constant_folding,
    serialize_parsed_rules,
)

MODEL = Path(__file__).parent / "model.yaml"


def section(title: str):
    """Print a section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print('='*60)


def show(model):
    print("  " + yaml.safe_dump(model, allow_unicode=True, sort_keys=False).replace("\n", "\n  "))


def demo_evaluation():
    """Demonstrate evaluating rules under a situation."""
    section("Evaluation")

    engine = RuleEngine.from_file(MODEL)
    print(f"  Loaded {len(engine)} rules from {MODEL.name}")

    situations = [
        ({}, "defaults only"),
        ({"voiture . distance": 5000}, "5000 km"),
        ({"voiture": False}, "no car"),
    ]

    for situation, desc in situations:
        engine.set_situation(situation)
        result = engine.evaluate("empreinte")
        missing = ", ".join(sorted(result.missing_variables)) or "-"
        print(f"  empreinte ({desc}) => {result.value} {result.unit}  [missing: {missing}]")


def demo_references():
    """Demonstrate the reference graph."""
    section("Reference Graph")

    engine = RuleEngine.from_file(MODEL)
    refs = build_references(engine.get_parsed_rules(), engine)

    for rule_id in ("empreinte", "transport", "alimentation"):
        print(f"  {rule_id} reads: {', '.join(sorted(refs.children[rule_id]))}")
    print(f"  read by alimentation . repas: {', '.join(sorted(refs.parents['alimentation . repas']))}")


def demo_folding():
    """Demonstrate constant folding with a retention predicate."""
    section("Constant Folding")

    engine = RuleEngine.from_file(MODEL)
    folded = constant_folding(engine, lambda rule_id, _: rule_id == "empreinte")

    print(f"  {len(engine)} rules -> {len(folded)} rules\n")
    show(serialize_parsed_rules(folded))


def demo_equivalence():
    """Demonstrate that folding keeps values unchanged."""
    section("Equivalence")

    engine = RuleEngine.from_file(MODEL)
    folded = serialize_parsed_rules(
        constant_folding(engine, lambda rule_id, _: rule_id == "empreinte")
    )

    for distance in (0, 5000, 20000):
        situation = {"voiture . distance": distance}
        before = RuleEngine.from_file(MODEL).set_situation(situation).evaluate("empreinte")
        after = RuleEngine(folded, situation).evaluate("empreinte")
        print(f"  {distance:>6} km: original {before.value}, folded {after.value}")


def demo_policy():
    """Demonstrate folding defaults without question."""
    section("Defaults Without Question")

    rules = {
        "boisson": {"formula": "tasse de café * nombre"},
        "boisson . tasse de café": {"value": 20},
        "boisson . nombre": {"default": 10},
    }
    keep = lambda rule_id, _: rule_id == "boisson"

    print("  Default policy (defaults are inputs):")
    show(serialize_parsed_rules(constant_folding(RuleEngine(rules), keep)))

    print("  fold_defaults_without_question=True:")
    params = FoldingParams(fold_defaults_without_question=True)
    show(serialize_parsed_rules(constant_folding(RuleEngine(rules), keep, params)))


def demo_context():
    """Demonstrate folding around a context scope."""
    section("Context Scopes")

    rules = {
        "root": {"value": "rule to recompute", "context": {"constant": 20}},
        "rule to recompute": {"formula": "constant * 2"},
        "rule to fold": {"formula": "constant * 4"},
        "constant": {"value": 10},
    }
    show(serialize_parsed_rules(constant_folding(RuleEngine(rules))))


def main():
    """Run all demonstrations."""
    print("rulefold - constant folding for declarative rule models")
    print("Feature Demonstration")

    demo_evaluation()
    demo_references()
    demo_folding()
    demo_equivalence()
    demo_policy()
    demo_context()

    print("\n" + "="*60)
    print(" Demo complete!")
    print("="*60)


if __name__ == "__main__":
    main()
