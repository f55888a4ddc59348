"""
Tree rewriting for rulefold.

Reference collection and literal substitution over formula trees. Both
work on resolved rule ids (the dotted_name of a reference node), never on
the text a reference was written with, so a short name that happens to be
a substring of another rule's name is never confused with it.

Examples:
    tree = parse_expression("B . C * D", resolve)
    references(tree)                       # => {"ruleA . B . C", "ruleA . D"}
    substitute(tree, "ruleA . B . C", constant(10))
    # => ("operation", "*", ("constant", 10, None), ("reference", "D", "ruleA . D"))
"""

from typing import Callable, Dict, Optional, Set

from .errors import SubstitutionMismatch
from .tree import Node, iter_children, map_children, walk


# ============================================================
# Queries
# ============================================================

def references(node: Node) -> Set[str]:
    """Every rule id referenced anywhere in the tree, context bindings included."""
    return {n[2] for n in walk(node) if n[0] == "reference"}


def contains_reference(node: Node, target: str) -> bool:
    return any(n[0] == "reference" and n[2] == target for n in walk(node))


def context_nodes(node: Node):
    """Every local rebinding scope of the tree, outermost first."""
    return [n for n in walk(node) if n[0] == "context"]


# ============================================================
# Rewriting
# ============================================================

def transform(node: Node, f: Callable[[Node], Optional[Node]]) -> Node:
    """
    Rewrite a tree top-down.

    f is called on each node; when it returns a node, that node replaces
    the original and its children are not visited. When it returns None
    the children are rewritten. Unchanged subtrees are shared with the
    input tree.

    Works with an explicit stack, so the depth of the tree is not bounded
    by the interpreter's recursion limit.
    """
    done: Dict[int, Node] = {}
    stack = [(node, False)]
    while stack:
        current, expanded = stack.pop()
        if expanded:
            done[id(current)] = map_children(current, lambda child: done[id(child)])
            continue
        if id(current) in done:
            continue
        replaced = f(current)
        if replaced is not None:
            done[id(current)] = replaced
            continue
        stack.append((current, True))
        stack.extend((child, False) for child in reversed(iter_children(current)))
    return done[id(node)]


def _substitute(tree: Node, target: str, replacement: Node) -> Node:
    def replace(node):
        if node[0] == "reference":
            return replacement if node[2] == target else node
        if node[0] != "context":
            return None
        inner, bindings = node[1], node[2]
        # Override keys are binding sites, not reads
        new_bindings = tuple(
            (key, _substitute(expr, target, replacement)) for key, expr in bindings
        )
        if all(new[1] is old[1] for new, old in zip(new_bindings, bindings)):
            new_bindings = bindings
        if any(key[2] == target for key, _ in bindings):
            new_inner = inner
        else:
            new_inner = _substitute(inner, target, replacement)
        if new_inner is inner and new_bindings is bindings:
            return node
        return (node[0], new_inner, new_bindings)

    return transform(tree, replace)


def substitute(tree: Node, target: str, replacement: Node, rule_id: Optional[str] = None) -> Node:
    """
    Replace every reference to target by replacement.

    Inside a context node, the overridden rules are left alone: the keys
    are binding sites, and the body keeps reading the rebound value.

    Args:
        tree: Formula tree to rewrite
        target: Resolved rule id to replace
        replacement: Node to put in place of each reference (a constant)
        rule_id: Rule owning the tree, for error reporting

    Returns:
        A new tree sharing every unchanged subtree with the input

    Raises:
        SubstitutionMismatch: if tree holds no reference to target
    """
    if not contains_reference(tree, target):
        raise SubstitutionMismatch(rule_id, target)
    return _substitute(tree, target, replacement)
