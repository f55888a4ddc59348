"""
Situation migration.

Answers saved against an older version of a model may name rules that
have since been renamed or removed, or hold values a rule no longer
accepts. migrate_situation rewrites such a situation, along with the
list of questions already answered (the folded steps of a form), from
migration instructions:

    keysToMigrate:
      age: âge                   # answer moves to the renamed rule
      année de naissance: ''     # answer dropped, the question is asked again
    valuesToMigrate:
      prénom:
        jean: Jean avec un J     # value renamed
        michel: ''               # answer dropped

Example:
    situation, steps = migrate_situation({"age": 27}, ["age"], instructions)
    # => ({"âge": 27}, ["âge"])
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .engine import load_rules_from_file
from .errors import ModelError
from .evaluator import normalize_number
from .expression import format_string, normalize_name

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

# Keys under which older versions stored the number of an answer
LEGACY_VALUE_KEYS = ("valeur", "nodeValue")


class Migration:
    """
    Migration instructions.

    Args:
        keys_to_migrate: Old rule id -> new rule id; an empty new id drops
            the answer
        values_to_migrate: Rule id -> {old value: new value}; an empty new
            value drops the answer
    """

    def __init__(self, keys_to_migrate: Optional[Mapping[str, Optional[str]]] = None,
                 values_to_migrate: Optional[Mapping[str, Optional[Mapping]]] = None):
        self.keys_to_migrate: Dict[str, str] = {
            normalize_name(old): normalize_name(new) if new else ""
            for old, new in (keys_to_migrate or {}).items()
        }
        self.values_to_migrate: Dict[str, Dict[Any, Any]] = {
            normalize_name(rule): dict(values or {})
            for rule, values in (values_to_migrate or {}).items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Migration':
        """
        Read instructions from a mapping.

        Accepts keysToMigrate (or rulesToMigrate) and valuesToMigrate,
        spelled in camelCase or snake_case.

        Raises:
            ModelError: on any other key, or a section that is not a mapping
        """
        aliases = {
            "keysToMigrate": "keys", "keys_to_migrate": "keys",
            "rulesToMigrate": "keys", "rules_to_migrate": "keys",
            "valuesToMigrate": "values", "values_to_migrate": "values",
        }
        sections: Dict[str, Mapping] = {}
        for key, section in data.items():
            if key not in aliases:
                raise ModelError(None, f"unknown migration section '{key}'")
            if section is not None and not isinstance(section, Mapping):
                raise ModelError(None, f"migration section '{key}' must be a mapping")
            sections[aliases[key]] = section
        return cls(sections.get("keys"), sections.get("values"))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'Migration':
        """Read instructions from a YAML or JSON file."""
        return cls.from_dict(load_rules_from_file(path))

    def __repr__(self) -> str:
        return (f"Migration({len(self.keys_to_migrate)} keys, "
                f"{len(self.values_to_migrate)} value maps)")


# ============================================================
# Values
# ============================================================

def _number_or_value(value: Any) -> Any:
    if isinstance(value, str) and _NUMBER_RE.fullmatch(value.strip()):
        return normalize_number(float(value))
    return value


def legacy_value(value: Any) -> Any:
    """
    Bring an answer saved by an older version to the current format.

    Numbers saved as text become numbers, and {"valeur": 27, "unité": "an"}
    or {"nodeValue": 27, ...} objects become their number.

    Examples:
        legacy_value("2.5")                             # => 2.5
        legacy_value({"valeur": "27", "unité": "an"})   # => 27
        legacy_value("'car'")                           # => "'car'"
    """
    if isinstance(value, Mapping):
        for key in LEGACY_VALUE_KEYS:
            if key in value:
                return _number_or_value(value[key])
        return value
    return _number_or_value(value)


def unquoted(value: Any) -> Any:
    """The text of a quoted string answer ("'jean'" -> "jean"), other values as is."""
    if isinstance(value, str) and len(value) >= 2 and value[0] in "'\"" and value[-1] == value[0]:
        return value[1:-1]
    return value


def _new_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        for key in ("value",) + LEGACY_VALUE_KEYS:
            if key in value:
                return value[key]
    if isinstance(value, str) and value not in ("yes", "no"):
        return format_string(value)
    return value


def _is_dropped(value: Any) -> bool:
    return value is None or value == ""


# ============================================================
# Migration
# ============================================================

def migrate_situation(situation: Mapping[str, Any], folded_steps: Optional[Sequence[str]] = None,
                      instructions: Union[Migration, Mapping[str, Any], None] = None
                      ) -> Tuple[Dict[str, Any], List[str]]:
    """
    Migrate a situation to a newer version of its model.

    Every answer is first brought to the current format (see
    legacy_value). A renamed rule's answer moves to its new id, and the
    folded step is renamed in place; a dropped rule loses its answer and
    its step. Then, if the rule (under its new id, else its old one) has
    value migrations, a matching answer is renamed or dropped. Answers
    are matched without their quotes, and a renamed text answer is
    written back quoted.

    Args:
        situation: Rule id -> answer
        folded_steps: Ids of the questions already answered, in order
        instructions: A Migration, or a mapping for Migration.from_dict

    Returns:
        (migrated situation, migrated folded steps); the inputs are not
        modified
    """
    if instructions is None:
        instructions = Migration()
    elif not isinstance(instructions, Migration):
        instructions = Migration.from_dict(instructions)

    migrated = dict(situation)
    steps = list(folded_steps or ())

    for rule_name, raw_value in situation.items():
        value = legacy_value(raw_value)
        migrated[rule_name] = value
        old_id = normalize_name(rule_name)

        if old_id in instructions.keys_to_migrate:
            new_name = instructions.keys_to_migrate[old_id]
            del migrated[rule_name]
            if not new_name:
                logger.debug("Dropped the answer to %s", rule_name)
                steps = [step for step in steps if step != rule_name]
                continue
            logger.debug("Moved the answer to %s to %s", rule_name, new_name)
            migrated[new_name] = value
            steps = [new_name if step == rule_name else step for step in steps]
            rule_name = new_name

        values = instructions.values_to_migrate.get(normalize_name(rule_name))
        if values is None:
            values = instructions.values_to_migrate.get(old_id)
        old_value = unquoted(value)
        if not values or isinstance(old_value, (Mapping, list)) or old_value not in values:
            continue
        new_value = values[old_value]
        if _is_dropped(new_value):
            logger.debug("Dropped the answer %r to %s", old_value, rule_name)
            del migrated[rule_name]
            steps = [step for step in steps if step != rule_name]
        else:
            migrated[rule_name] = _new_value(new_value)

    return migrated, steps
