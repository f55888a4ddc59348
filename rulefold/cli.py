"""
Command-line interface for rulefold.

Usage:
    rulefold model/                       Fold a model, print JSON
    rulefold model/ -o build/model.json   Write the folded model
    rulefold model/ -k '^price$'          Keep only what "price" needs
    rulefold model/ -e price --set 'price . quantity=3'
                                          Evaluate one rule
    rulefold model/ -e price --set 'age=27' --migrate migration.yaml
                                          Evaluate with answers saved for
                                          an older version of the model
"""

import argparse
import json
import logging
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from . import __version__
from .engine import RuleEngine
from .errors import RuleError
from .expression import format_value
from .folding import FoldingParams, constant_folding
from .loader import Session, get_model_from_source
from .migration import Migration, migrate_situation
from .serialize import serialize_parsed_rules, to_plain

logger = logging.getLogger(__name__)


def keep_predicate(patterns: List[str]):
    """Retention predicate matching rule ids against any of the regular expressions."""
    if not patterns:
        return None
    compiled = [re.compile(pattern) for pattern in patterns]
    return lambda rule_id, _rule: any(regex.search(rule_id) for regex in compiled)


def parse_assignments(assignments: List[str]) -> Dict[str, str]:
    """Turn ["a . b=3", "c='x'"] into {"a . b": "3", "c": "'x'"}."""
    situation = {}
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        if not sep:
            raise RuleError(None, f"expected NAME=VALUE, got '{assignment}'")
        situation[name.strip()] = value.strip()
    return situation


def compile_model(sources: List[str], ignore: Optional[List[str]] = None,
                  keep: Optional[List[str]] = None, params: Optional[FoldingParams] = None,
                  session: Optional[Session] = None, fold: bool = True) -> Dict:
    """
    Load, fold and serialize a model.

    Args:
        sources: Files, directories or glob patterns
        ignore: Patterns of files to leave out
        keep: Regular expressions of rule ids to retain; when empty every
            rule not removed by folding is kept
        params: Folding options
        session: Package cache for imports
        fold: When False, only resolve imports

    Returns:
        The compiled raw rule map
    """
    params = params or FoldingParams()
    model = get_model_from_source(sources, ignore or [], session)
    if not fold:
        return model
    engine = RuleEngine(model)
    folded = constant_folding(engine, keep_predicate(keep or []), params)
    return serialize_parsed_rules(folded, params.fold_attribute)


def dump(model: Dict, output: Optional[str]) -> str:
    """Serialize as YAML when writing a .yaml/.yml file, as JSON otherwise."""
    model = to_plain(model)
    if output and Path(output).suffix in (".yaml", ".yml"):
        return yaml.safe_dump(model, allow_unicode=True, sort_keys=False)
    return json.dumps(model, ensure_ascii=False, indent=2) + "\n"


def evaluate_rule(model: Dict, rule_id: str, situation: Dict[str, str]) -> str:
    engine = RuleEngine(model, situation)
    evaluation = engine.evaluate(rule_id)
    if evaluation.value is None:
        text = "not applicable"
    else:
        text = format_value(evaluation.value, evaluation.unit)
    missing = sorted(evaluation.missing_variables | evaluation.parent_missing_variables)
    if missing:
        text += "\nmissing: " + ", ".join(missing)
    return text


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="rulefold",
        description="rulefold - constant folding for declarative rule models",
        epilog="Examples:\n"
               "  rulefold model/                      Fold, print JSON\n"
               "  rulefold model/ -o out.yaml          Fold, write YAML\n"
               "  rulefold 'rules/**/*.yaml' -k '^total$'\n"
               "                                       Keep what 'total' needs\n"
               "  rulefold model/ -e total --set 'x=3' Evaluate a rule\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "sources",
        nargs="+",
        help="Model files, directories or glob patterns"
    )

    parser.add_argument(
        "-o", "--output",
        help="Output file (.json, .yaml or .yml); stdout when omitted"
    )

    parser.add_argument(
        "-i", "--ignore",
        action="append",
        default=[],
        help="Pattern of source files to ignore (can be specified multiple times)"
    )

    parser.add_argument(
        "-k", "--keep",
        action="append",
        default=[],
        help="Regular expression of rule ids to keep (can be specified multiple times)"
    )

    parser.add_argument(
        "--attr",
        default="optimized",
        help="Attribute marking folded rules (default: optimized)"
    )

    parser.add_argument(
        "--fold-defaults",
        action="store_true",
        help="Fold rules that have a default value but no question"
    )

    parser.add_argument(
        "--no-fold",
        action="store_true",
        help="Only merge sources and resolve imports"
    )

    parser.add_argument(
        "--packages",
        default="node_modules",
        help="Directory holding imported package models (default: node_modules)"
    )

    parser.add_argument(
        "-e", "--evaluate",
        metavar="RULE",
        help="Evaluate a single rule instead of compiling"
    )

    parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Situation value for --evaluate (can be specified multiple times)"
    )

    parser.add_argument(
        "--migrate",
        metavar="FILE",
        help="Migration instructions (YAML or JSON) applied to the --set situation"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log folding details"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    session = Session(args.packages)
    params = FoldingParams(fold_attribute=args.attr,
                           fold_defaults_without_question=args.fold_defaults)

    try:
        if args.evaluate:
            model = get_model_from_source(args.sources, args.ignore, session)
            situation = parse_assignments(args.set)
            if args.migrate:
                situation, _ = migrate_situation(situation, instructions=Migration.from_file(args.migrate))
            print(evaluate_rule(model, args.evaluate, situation))
            sys.exit(0)

        compiled = compile_model(args.sources, args.ignore, args.keep, params,
                                 session, fold=not args.no_fold)
        text = dump(compiled, args.output)
    except (RuleError, FileNotFoundError, re.error) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info("Wrote %d rules to %s", len(compiled), args.output)
    else:
        sys.stdout.write(text)
    sys.exit(0)


if __name__ == "__main__":
    main()
