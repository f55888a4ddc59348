"""
Model assembly from source files.

A model is spread over several YAML files; get_model_from_source merges
them into one rule map and resolves "import!" entries, which copy rules
from a published package model:

    import!:
      from:
        name: '@scope/co2-model'
        source: ../vendor/co2-model.model.json   # optional, relative to the file
        url: https://example.org/co2-model       # optional, shown in descriptions
      into: co2                                  # optional, default: "co2-model"
      rules:
        - transport . car
        - food . meat:
            title: Meat

Each listed rule lands under the namespace ("co2 . transport . car")
together with every rule it depends on. Package models are read from
<packages_dir>/<package>/<package>.model.json unless "source" is given,
and are loaded once per Session.
"""

import fnmatch
import glob
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from .engine import RuleEngine, load_rules_from_file
from .errors import ModelError
from .expression import normalize_name
from .parser import ancestors
from .rewriter import references

logger = logging.getLogger(__name__)

IMPORT_KEYWORD = "import!"
MODEL_SUFFIXES = (".publicodes", ".yaml", ".yml")


# ============================================================
# Packages
# ============================================================

def package_model_path(packages_dir: Path, package: str) -> Path:
    """
    Location of a package's compiled model.

    Examples:
        package_model_path(Path("node_modules"), "co2")
        # => node_modules/co2/co2.model.json
        package_model_path(Path("node_modules"), "@scope/co2")
        # => node_modules/@scope/co2/co2.model.json
    """
    short_name = package.split("/")[-1]
    return packages_dir.joinpath(*package.split("/")) / f"{short_name}.model.json"


class Session:
    """
    Cache of package engines for one model build.

    Every import of the same package within a session shares one engine.
    Create a new Session to pick up changed package files.
    """

    def __init__(self, packages_dir: Union[str, Path] = "node_modules"):
        self.packages_dir = Path(packages_dir)
        self._engines: Dict[str, RuleEngine] = {}

    def get_engine(self, package: str, source: Optional[str] = None,
                   base_path: Optional[Path] = None) -> RuleEngine:
        """
        Engine of a package model, loaded on first use.

        Args:
            package: Package name
            source: Optional model path, relative to base_path
            base_path: Directory of the file holding the import

        Raises:
            ModelError: if the package model cannot be found
        """
        if package in self._engines:
            return self._engines[package]
        if source is not None:
            path = Path(base_path or ".") / source
        else:
            path = package_model_path(self.packages_dir, package)
        if not path.exists():
            raise ModelError(None, f"model of package '{package}' not found at {path}")
        engine = RuleEngine(load_rules_from_file(path))
        logger.debug("Loaded package %s (%d rules) from %s", package, len(engine), path)
        self._engines[package] = engine
        return engine

    def __contains__(self, package: str) -> bool:
        return package in self._engines

    def __len__(self) -> int:
        return len(self._engines)


# ============================================================
# Imports
# ============================================================

def _import_source(macro: Dict[str, Any]) -> Dict[str, Any]:
    origin = macro.get("from")
    if isinstance(origin, str):
        origin = {"name": origin}
    if not isinstance(origin, dict) or not origin.get("name"):
        raise ModelError(None, f"'{IMPORT_KEYWORD}' needs a package name in 'from'")
    return origin


def _namespace(macro: Dict[str, Any], package: str) -> str:
    if macro.get("into"):
        return normalize_name(macro["into"])
    return package.split("/")[-1]


def _rules_to_import(macro: Dict[str, Any], package: str) -> List[Tuple[str, Dict[str, Any]]]:
    """List of (rule id, overridden attributes) pairs of an import."""
    requested = []
    seen: Set[str] = set()
    for entry in macro.get("rules") or []:
        if isinstance(entry, dict):
            if len(entry) != 1:
                raise ModelError(None, f"invalid rule to import from '{package}': {entry!r}")
            name, attrs = next(iter(entry.items()))
            attrs = attrs or {}
        else:
            name, attrs = entry, {}
        name = normalize_name(str(name))
        if name in seen:
            raise ModelError(name, f"imported twice from '{package}'")
        seen.add(name)
        requested.append((name, attrs))
    return requested


def _as_mapping(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None:
        return {}
    return {"value": raw}


def _with_provenance(raw: Any, package: str, url: Optional[str]) -> Dict[str, Any]:
    """Copy of raw with a description line naming the package it came from."""
    rule = _as_mapping(raw)
    origin = f"> This rule comes from the [`{package}`]({url}) model." if url \
        else f"> This rule comes from the `{package}` model."
    description = rule.get("description")
    rule["description"] = f"{origin}\n\n{description}" if description else origin
    return rule


def dependencies(engine: RuleEngine, rule_id: str) -> List[str]:
    """Every rule rule_id depends on, transitively, in discovery order."""
    found: List[str] = []
    queue = [rule_id]
    while queue:
        current = queue.pop(0)
        for target in sorted(references(engine[current].value)):
            if target != rule_id and target not in found:
                found.append(target)
                queue.append(target)
    return found


def resolve_imports(rules: Dict[str, Any], base_path: Optional[Path] = None,
                    session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Replace the import entries of a rule map by the rules they import.

    Args:
        rules: Raw rule map of one source file
        base_path: Directory of that file, for relative package sources
        session: Package cache; a private one is used when None

    Returns:
        New raw rule map, imported rules in place of the import entry

    Raises:
        ModelError: on a missing package or rule, a rule listed twice, or a
            rule defined both locally and by an import
    """
    if session is None:
        session = Session()
    resolved: Dict[str, Any] = {}
    imported: Set[str] = set()

    def add(rule_id: str, raw: Any, from_import: bool) -> None:
        if rule_id in resolved:
            if from_import and rule_id in imported:
                return
            raise ModelError(rule_id, "rule defined twice")
        resolved[rule_id] = raw
        if from_import:
            imported.add(rule_id)

    for name, value in rules.items():
        if name != IMPORT_KEYWORD:
            add(normalize_name(str(name)), value, from_import=False)
            continue
        macros = value if isinstance(value, list) else [value]
        for macro in macros:
            if not isinstance(macro, dict):
                raise ModelError(None, f"'{IMPORT_KEYWORD}' expects a mapping")
            origin = _import_source(macro)
            package = origin["name"]
            engine = session.get_engine(package, origin.get("source"), base_path)
            namespace = _namespace(macro, package)
            requested = _rules_to_import(macro, package)
            requested_names = {rule_id for rule_id, _ in requested}

            for rule_id, attrs in requested:
                rule = engine.get_rule(rule_id)
                if rule is None:
                    raise ModelError(rule_id, f"no such rule in '{package}'")
                raw = _as_mapping(rule.raw)
                raw.update(attrs)
                add(f"{namespace} . {rule_id}", _with_provenance(raw, package, origin.get("url")), True)
                for dependency in dependencies(engine, rule_id):
                    if dependency in requested_names:
                        continue
                    add(f"{namespace} . {dependency}",
                        _with_provenance(engine[dependency].raw, package, origin.get("url")), True)

            logger.debug("Imported %d rules from %s into %s", len(requested), package, namespace)

    # Enclosing namespaces of imported rules must exist
    for rule_id in list(imported):
        for parent in ancestors(rule_id):
            if parent not in resolved:
                resolved[parent] = None
    return resolved


# ============================================================
# Sources
# ============================================================

def _expand(source: Union[str, Path]) -> List[Path]:
    path = Path(source)
    if path.is_dir():
        return sorted(p for p in path.rglob("*") if p.suffix in MODEL_SUFFIXES)
    if any(char in str(source) for char in "*?["):
        return sorted(Path(p) for p in glob.glob(str(source), recursive=True) if Path(p).is_file())
    if not path.exists():
        raise FileNotFoundError(f"Model source not found: {source}")
    return [path]


def get_model_from_source(sources: Union[str, Path, Iterable[Union[str, Path]]],
                          ignore: Iterable[str] = (),
                          session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Merge source files into a single model with resolved imports.

    Args:
        sources: Files, directories (searched recursively for .publicodes,
            .yaml and .yml files) or glob patterns
        ignore: fnmatch patterns of files to leave out
        session: Package cache shared by every file

    Returns:
        Raw rule map of the whole model

    Raises:
        FileNotFoundError: if a plain source path does not exist
        ModelError: if a rule is defined in two files
    """
    if isinstance(sources, (str, Path)):
        sources = [sources]
    ignore = list(ignore)
    if session is None:
        session = Session()
    model: Dict[str, Any] = {}
    origins: Dict[str, Path] = {}

    for source in sources:
        for path in _expand(source):
            if any(fnmatch.fnmatch(str(path), pattern) for pattern in ignore):
                logger.debug("Ignoring %s", path)
                continue
            rules = resolve_imports(load_rules_from_file(path), path.parent, session)
            for rule_id, raw in rules.items():
                if raw is None and rule_id in model:
                    continue
                if model.get(rule_id) is not None and model[rule_id] != raw:
                    raise ModelError(rule_id, f"defined in both {origins[rule_id]} and {path}")
                model[rule_id] = raw
                origins.setdefault(rule_id, path)
    return model
