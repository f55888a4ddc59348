"""
Formula trees.

A formula is an immutable tuple whose first element is its kind:

    ("reference", name, dotted_name)        name as written, resolved rule id
    ("constant", value, unit)               literal; unit "%" marks a percentage
    ("operation", op, left, right)          infix operator
    ("nary", mechanism, items)              sum, product, all of...
    ("variations", branches, otherwise)     branches: ((condition, value), ...)
    ("condition", mode, condition, inner)   applicable if / not applicable if
    ("limit", mechanism, inner, bound)      floor, ceiling, deduction
    ("rounding", inner, decimals)
    ("unit", inner, unit)
    ("context", inner, bindings)            bindings: ((reference, expr), ...)
    ("scale", mechanism, base, brackets, multiplier)
                                            brackets: ((amount, ceiling), ...)
    ("text", parts)                         parts: str or node
    ("duration", start, end)
    ("choice", inner, choices, required)
    ("defined", mechanism, inner)           is defined, is applicable...
    ("input", dotted_name, default)         situation lookup of an input rule

Trees are never mutated. map_children rebuilds only the nodes whose
children changed and hands back the very same tuple otherwise, so
rewrites share every untouched subtree with the original.
"""

from typing import Any, Callable, Iterator, List, Optional, Tuple

Node = Tuple
NodeFunc = Callable[[Node], Node]

KINDS = frozenset({
    "reference", "constant", "operation", "nary", "variations",
    "condition", "limit", "rounding", "unit", "context", "scale",
    "text", "duration", "choice", "defined", "input",
})

NARY_MECHANISMS = ("sum", "product", "average", "min of", "max of", "any of", "all of")
LIMIT_MECHANISMS = ("floor", "ceiling", "deduction")
CONDITION_MODES = ("applicable if", "not applicable if")
DEFINED_MECHANISMS = ("is defined", "is undefined", "is applicable", "is not applicable")
SCALE_MECHANISMS = ("scale", "grid")


# ============================================================
# Constructors
# ============================================================

def reference(name: str, dotted_name: Optional[str] = None) -> Node:
    return ("reference", name, dotted_name if dotted_name is not None else name)


def constant(value: Any, unit: Optional[str] = None) -> Node:
    return ("constant", value, unit)


def operation(op: str, left: Node, right: Node) -> Node:
    return ("operation", op, left, right)


# Placeholder for "no value": empty rules, inputs without default.
NOTHING = constant(None)


def kind(node: Node) -> str:
    return node[0]


def is_constant(node: Node) -> bool:
    return node[0] == "constant"


def is_nothing(node: Node) -> bool:
    return node == NOTHING


# ============================================================
# Child traversal
# ============================================================

def _map_tuple(items: Tuple, f: NodeFunc) -> Tuple:
    """Apply f to each item, returning items itself when nothing changed."""
    mapped = tuple(f(item) for item in items)
    if all(new is old for new, old in zip(mapped, items)):
        return items
    return mapped


def _map_optional(node: Optional[Node], f: NodeFunc) -> Optional[Node]:
    return None if node is None else f(node)


def _leaf(node: Node, f: NodeFunc) -> Node:
    return node


def _map_operation(node, f):
    return (node[0], node[1], f(node[2]), f(node[3]))


def _map_nary(node, f):
    return (node[0], node[1], _map_tuple(node[2], f))


def _map_variations(node, f):
    branches = _map_tuple(node[1], lambda pair: _map_tuple(pair, f))
    return (node[0], branches, _map_optional(node[2], f))


def _map_condition(node, f):
    return (node[0], node[1], f(node[2]), f(node[3]))


def _map_limit(node, f):
    return (node[0], node[1], f(node[2]), f(node[3]))


def _map_wrapped(node, f):
    # rounding and unit: the wrapped formula is the only child
    return (node[0], f(node[1])) + node[2:]


def _map_context(node, f):
    bindings = _map_tuple(node[2], lambda pair: _map_tuple(pair, f))
    return (node[0], f(node[1]), bindings)


def _map_scale(node, f):
    base = f(node[2])
    brackets = _map_tuple(
        node[3], lambda bracket: _map_tuple(bracket, lambda n: _map_optional(n, f))
    )
    return (node[0], node[1], base, brackets, _map_optional(node[4], f))


def _map_text(node, f):
    return (node[0], _map_tuple(node[1], lambda part: part if isinstance(part, str) else f(part)))


def _map_duration(node, f):
    return (node[0], f(node[1]), f(node[2]))


def _map_defined(node, f):
    return (node[0], node[1], f(node[2]))


def _map_input(node, f):
    return (node[0], node[1], f(node[2]))


_CHILD_MAPPERS = {
    "reference": _leaf,
    "constant": _leaf,
    "operation": _map_operation,
    "nary": _map_nary,
    "variations": _map_variations,
    "condition": _map_condition,
    "limit": _map_limit,
    "rounding": _map_wrapped,
    "unit": _map_wrapped,
    "context": _map_context,
    "scale": _map_scale,
    "text": _map_text,
    "duration": _map_duration,
    "choice": _map_wrapped,
    "defined": _map_defined,
    "input": _map_input,
}


def map_children(node: Node, f: NodeFunc) -> Node:
    """
    Apply f to every direct child of node.

    Returns node itself when f returned every child unchanged (by
    identity), otherwise a new node of the same kind.

    Raises:
        ValueError: if node is not of a known kind
    """
    mapper = _CHILD_MAPPERS.get(node[0])
    if mapper is None:
        raise ValueError(f"Unknown node kind: {node[0]!r}")
    rebuilt = mapper(node, f)
    if len(rebuilt) == len(node) and all(new is old for new, old in zip(rebuilt, node)):
        return node
    return rebuilt


def iter_children(node: Node) -> List[Node]:
    """Direct children of node, in source order."""
    found = []

    def collect(child):
        found.append(child)
        return child

    map_children(node, collect)
    return found


def walk(node: Node) -> Iterator[Node]:
    """
    Pre-order traversal of every node of the tree.

    Uses an explicit stack: a long operator chain nests one level per
    operator.
    """
    stack = [node]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(iter_children(node)))
