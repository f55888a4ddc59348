"""
Infix expressions of the rule language.

Grammar (lowest precedence first):

    comparison     := additive (("<" | ">" | "<=" | ">=" | "=" | "!=") additive)?
    additive       := multiplicative (("+" | "-") multiplicative)*
    multiplicative := unary (("*" | "/") unary)*
    unary          := "-" unary | power
    power          := primary ("**" unary)?
    primary        := NUMBER | DATE | STRING | NAME | "(" comparison ")"

Atoms:
    10, 0.5, 24%, 10 €/month   numbers, percentages, numbers with a unit
    2 1/kg                     a unit with an empty numerator
    01/02/2020                 dates (dd/mm/yyyy)
    'text', "l'eau"            strings; a backslash escapes the quote
    yes, no                    booleans
    tasse de café, A . B       rule names: words separated by spaces or " . "

Examples:
    parse_expression("B . C * D")
    # => ("operation", "*", ("reference", "B . C", "B . C"), ("reference", "D", "D"))

    format_expression(parse_expression("(20 * 10) + x"))  # => "(20 * 10) + x"
"""

import datetime
import re
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from .errors import ExpressionSyntaxError
from .tree import Node, constant, operation, reference, walk

ResolveFunc = Callable[[str], str]

COMPARISON_OPS = ("<=", ">=", "!=", "<", ">", "=")
ADDITIVE_OPS = ("+", "-")
MULTIPLICATIVE_OPS = ("*", "/")

BINARY_PRECEDENCE = {
    **{op: 1 for op in COMPARISON_OPS},
    **{op: 2 for op in ADDITIVE_OPS},
    **{op: 3 for op in MULTIPLICATIVE_OPS},
    "**": 5,
}
# Unary minus binds looser than ** and tighter than * and /: -2 ** 2 == -4
NEGATION = "neg"
NEGATION_PRECEDENCE = 4

_WORD = r"[^\W\d][\w'’]*"
_UNIT_ATOM = r"(?:[^\W\d]|[€$£])[\w€$£]*"
_UNIT = r"(?:" + _UNIT_ATOM + r"|1(?=/(?:[^\W\d]|[€$£])))(?:[./]" + _UNIT_ATOM + r")*"

_TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<date>\d{2}/\d{2}/\d{4})"
    r"|(?P<number>\d+(?:\.\d+)?)(?:(?P<percent>%)|[ ]?(?P<unit>" + _UNIT + r"))?"
    r"|'(?P<string>(?:[^'\\]|\\.)*)'"
    r'|"(?P<dstring>(?:[^"\\]|\\.)*)"'
    r"|(?P<op>\*\*|<=|>=|!=|[-+*/<>=()])"
    r"|(?P<name>" + _WORD + r"(?:\s+" + _WORD + r"|\s*\.\s*" + _WORD + r")*)"
    r")"
)

_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_TEXT_PART_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)


def normalize_name(name: str) -> str:
    """Canonical spelling of a rule name: segments joined by ' . ', single spaces."""
    return " . ".join(" ".join(segment.split()) for segment in name.split("."))


def parse_date(text: str) -> datetime.date:
    try:
        return datetime.datetime.strptime(text, "%d/%m/%Y").date()
    except ValueError:
        raise ExpressionSyntaxError(None, f"invalid date '{text}'") from None


# ============================================================
# Tokenizer
# ============================================================

Token = Tuple[str, object]


def tokenize(text: str) -> List[Token]:
    """
    Split an expression into (kind, value) tokens.

    Kinds are "date", "number", "string", "op", "name" and "bool".
    Number values are (number, unit) pairs, unit being None, "%" or a
    unit string.
    """
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ExpressionSyntaxError(None, f"unexpected character at {pos} in '{text}'")
        pos = m.end()
        if m.group("date") is not None:
            tokens.append(("date", parse_date(m.group("date"))))
        elif m.group("number") is not None:
            raw = m.group("number")
            number = float(raw) if "." in raw else int(raw)
            unit = "%" if m.group("percent") else m.group("unit")
            tokens.append(("number", (number, unit)))
        elif m.group("string") is not None or m.group("dstring") is not None:
            quoted = m.group("string") if m.group("string") is not None else m.group("dstring")
            tokens.append(("string", _ESCAPE_RE.sub(r"\1", quoted)))
        elif m.group("op") is not None:
            tokens.append(("op", m.group("op")))
        else:
            name = normalize_name(m.group("name"))
            if name in ("yes", "no"):
                tokens.append(("bool", name == "yes"))
            else:
                tokens.append(("name", name))
    return tokens


# ============================================================
# Parser
# ============================================================

def negate(operand: Node) -> Node:
    """Unary minus: a negative constant for a number, -1 * operand otherwise."""
    if operand[0] == "constant" and isinstance(operand[1], (int, float)) \
            and not isinstance(operand[1], bool):
        return constant(-operand[1], operand[2])
    return operation("*", constant(-1), operand)


class _Parser:
    """
    Operator-precedence parser over a token list.

    Operands and pending operators are kept on two explicit stacks, so long
    operator chains and deeply nested parentheses do not recurse.
    """

    def __init__(self, tokens: List[Token], resolve: ResolveFunc, text: str):
        self.tokens = tokens
        self.resolve = resolve
        self.text = text
        self.operands: List[Node] = []
        self.operators: List[str] = []
        # One flag per open parenthesis: a comparison was already read there
        self.compared: List[bool] = [False]

    def error(self, message: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(None, f"{message} in '{self.text}'")

    def parse(self) -> Node:
        if not self.tokens:
            raise self.error("empty expression")
        expect_operand = True
        for token in self.tokens:
            token_kind, value = token
            if expect_operand:
                if token_kind == "op" and value == "-":
                    self.operators.append(NEGATION)
                elif token_kind == "op" and value == "(":
                    self.operators.append("(")
                    self.compared.append(False)
                else:
                    self.operands.append(self.atom(token))
                    expect_operand = False
            elif token_kind != "op" or value == "(":
                raise self.error(f"unexpected token {value!r}")
            elif value == ")":
                self.close_parenthesis()
            else:
                self.push_binary(value)
                expect_operand = True
        if expect_operand:
            raise self.error("unexpected end of expression")
        while self.operators:
            if self.operators[-1] == "(":
                raise self.error("missing ')'")
            self.reduce()
        return self.operands[0]

    def atom(self, token: Token) -> Node:
        token_kind, value = token
        if token_kind == "number":
            return constant(value[0], value[1])
        if token_kind in ("date", "string", "bool"):
            return constant(value)
        if token_kind == "name":
            return reference(value, self.resolve(value))
        raise self.error(f"unexpected token {value!r}")

    @staticmethod
    def precedence(op: str) -> int:
        return NEGATION_PRECEDENCE if op == NEGATION else BINARY_PRECEDENCE[op]

    def push_binary(self, op: str) -> None:
        if op in COMPARISON_OPS:
            if self.compared[-1]:
                raise self.error(f"unexpected token {op!r}")
            self.compared[-1] = True
        precedence = BINARY_PRECEDENCE[op]
        while self.operators and self.operators[-1] != "(":
            top = self.precedence(self.operators[-1])
            # ** is right associative
            if top < precedence or (top == precedence and op == "**"):
                break
            self.reduce()
        self.operators.append(op)

    def close_parenthesis(self) -> None:
        while self.operators and self.operators[-1] != "(":
            self.reduce()
        if not self.operators:
            raise self.error("unexpected token ')'")
        self.operators.pop()
        self.compared.pop()

    def reduce(self) -> None:
        op = self.operators.pop()
        if op == NEGATION:
            self.operands.append(negate(self.operands.pop()))
            return
        right = self.operands.pop()
        left = self.operands.pop()
        self.operands.append(operation(op, left, right))


def parse_expression(text: str, resolve: Optional[ResolveFunc] = None) -> Node:
    """
    Parse an infix expression into a formula tree.

    Args:
        text: Expression source
        resolve: Maps a name as written to the rule id it designates.
            Defaults to the name itself.

    Returns:
        A tree made of reference, constant and operation nodes

    Raises:
        ExpressionSyntaxError: on malformed input
    """
    if resolve is None:
        resolve = lambda name: name
    return _Parser(tokenize(text), resolve, text).parse()


def parse_template(text: str, resolve: Optional[ResolveFunc] = None) -> Tuple:
    """Split a text template into literal strings and parsed {{ expression }} parts."""
    parts = []
    pos = 0
    for m in _TEXT_PART_RE.finditer(text):
        if m.start() > pos:
            parts.append(text[pos:m.start()])
        parts.append(parse_expression(m.group(1).strip(), resolve))
        pos = m.end()
    if pos < len(text):
        parts.append(text[pos:])
    return tuple(parts)


# ============================================================
# Formatting
# ============================================================

def format_number(x) -> str:
    if isinstance(x, float):
        return format(Decimal(repr(x)), "f")
    return str(x)


def format_string(text: str) -> str:
    """
    Quote a string for the tokenizer.

    Single quotes unless the text holds one and no double quote. The
    chosen quote and backslashes are escaped with a backslash.

    Example:
        format_string("car")      # => "'car'"
    """
    quote = '"' if "'" in text and '"' not in text else "'"
    escaped = text.replace("\\", "\\\\").replace(quote, "\\" + quote)
    return quote + escaped + quote


def format_value(value, unit: Optional[str] = None) -> str:
    """
    Format a literal in expression syntax.

    Examples:
        format_value(100)           # => "100"
        format_value(2, "%")        # => "2%"
        format_value(10, "€/month") # => "10 €/month"
        format_value(0.5, "1/kg")   # => "0.5 1/kg"
        format_value(True)          # => "yes"
        format_value("abc")         # => "'abc'"
    """
    if value is None:
        raise ValueError("An empty value has no expression syntax")
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        text = format_number(value)
        if unit == "%":
            return text + "%"
        if unit:
            return f"{text} {unit}"
        return text
    if isinstance(value, datetime.date):
        return value.strftime("%d/%m/%Y")
    return format_string(str(value))


def is_expression(node: Node) -> bool:
    """True if node can be written back as an infix expression."""
    for n in walk(node):
        if n[0] == "constant" and n[1] is None:
            return False
        if n[0] not in ("operation", "constant", "reference"):
            return False
    return True


def _format_operand(node: Node) -> str:
    text = format_expression(node)
    return f"({text})" if node[0] == "operation" else text


def format_expression(node: Node) -> str:
    """
    Write a tree back as an infix expression.

    Operands that are themselves operations are parenthesized. Left
    operands are followed in a loop, so a chain like a + b + c + ... of
    any length is written without recursing once per operator.

    Raises:
        ValueError: if the tree holds anything but references, constants
            and operations
    """
    if node[0] == "reference":
        return node[1]
    if node[0] == "constant":
        return format_value(node[1], node[2])
    if node[0] != "operation":
        raise ValueError(f"Cannot format a {node[0]!r} node as an expression")
    chain = []
    while node[0] == "operation":
        chain.append(node)
        node = node[2]
    text = format_expression(node)
    for op_node in reversed(chain):
        left = f"({text})" if op_node[2][0] == "operation" else text
        text = f"{left} {op_node[1]} {_format_operand(op_node[3])}"
    return text
