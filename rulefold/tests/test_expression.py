"""Tests for the expression parser and formatter."""

import datetime

import pytest
from rulefold.errors import ExpressionSyntaxError
from rulefold.expression import (
    format_expression,
    format_value,
    is_expression,
    normalize_name,
    parse_expression,
    parse_template,
    tokenize,
)
from rulefold.tree import NOTHING, constant, operation, reference


class TestNormalizeName:
    """Tests for normalize_name."""

    def test_dot_spacing(self):
        """Segments are joined by ' . '."""
        assert normalize_name("a.b .  c") == "a . b . c"

    def test_inner_whitespace(self):
        """Runs of spaces inside a segment collapse."""
        assert normalize_name("tasse  de   café") == "tasse de café"


class TestTokenize:
    """Tests for tokenize."""

    def test_number_and_op(self):
        """Integers and operators."""
        assert tokenize("10 * 10") == [("number", (10, None)), ("op", "*"), ("number", (10, None))]

    def test_float(self):
        """Decimal numbers become floats."""
        assert tokenize("0.5") == [("number", (0.5, None))]

    def test_percent(self):
        """A trailing % marks a percentage."""
        assert tokenize("24%") == [("number", (24, "%"))]

    def test_unit(self):
        """Units may hold currency signs and a denominator."""
        assert tokenize("10 €/month") == [("number", (10, "€/month"))]

    def test_inverse_unit(self):
        """A unit may have an empty numerator."""
        assert tokenize("0.5 1/kg") == [("number", (0.5, "1/kg"))]
        assert tokenize("2 1/kg * x") == [("number", (2, "1/kg")), ("op", "*"), ("name", "x")]

    def test_number_before_one(self):
        """A bare 1 after a number is not read as a unit."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("2 1")

    def test_quoted_strings(self):
        """Strings take either quote, and a backslash escapes the next character."""
        assert tokenize("'car'") == [("string", "car")]
        assert tokenize('"l\'eau"') == [("string", "l'eau")]
        assert tokenize(r"'l\'eau'") == [("string", "l'eau")]
        assert tokenize(r"'a\\b'") == [("string", "a\\b")]

    def test_bool(self):
        """yes and no are booleans."""
        assert tokenize("yes") == [("bool", True)]
        assert tokenize("no") == [("bool", False)]

    def test_multiword_name(self):
        """Names span words and dotted segments."""
        assert tokenize("tasse de café * B . C") == [
            ("name", "tasse de café"), ("op", "*"), ("name", "B . C"),
        ]

    def test_bad_character(self):
        """Characters outside the grammar are rejected."""
        with pytest.raises(ExpressionSyntaxError):
            tokenize("1 # 2")


class TestParseExpression:
    """Tests for parse_expression."""

    def test_simple_product(self):
        """A product of two constants."""
        assert parse_expression("10 * 10") == operation("*", constant(10), constant(10))

    def test_precedence(self):
        """Multiplication binds tighter than addition."""
        assert parse_expression("1 + 2 * 3") == \
            operation("+", constant(1), operation("*", constant(2), constant(3)))

    def test_left_associative(self):
        """Subtraction groups to the left."""
        assert parse_expression("10 - 2 - 3") == \
            operation("-", operation("-", constant(10), constant(2)), constant(3))

    def test_power_right_associative(self):
        """Exponentiation groups to the right."""
        assert parse_expression("2 ** 3 ** 2") == \
            operation("**", constant(2), operation("**", constant(3), constant(2)))

    def test_parentheses(self):
        """Parentheses override precedence."""
        assert parse_expression("(1 + 2) * 3") == \
            operation("*", operation("+", constant(1), constant(2)), constant(3))

    def test_negative_literal(self):
        """A negated number is a negative constant."""
        assert parse_expression("-5") == constant(-5)

    def test_negated_reference(self):
        """A negated name is multiplied by -1."""
        assert parse_expression("-x") == operation("*", constant(-1), reference("x"))

    def test_negation_binds_looser_than_power(self):
        """-2 ** 2 is the negation of 2 ** 2."""
        assert parse_expression("-2 ** 2") == \
            operation("*", constant(-1), operation("**", constant(2), constant(2)))

    def test_negative_exponent(self):
        """A minus sign after ** negates the exponent."""
        assert parse_expression("2 ** -1") == operation("**", constant(2), constant(-1))

    def test_negation_binds_tighter_than_product(self):
        assert parse_expression("-x * 2") == \
            operation("*", operation("*", constant(-1), reference("x")), constant(2))

    def test_long_chain(self):
        """Thousands of operators parse without recursing per operator."""
        node = parse_expression(" + ".join(["1"] * 3000))
        assert node[0] == "operation"
        assert node[3] == constant(1)
        depth = 0
        while node[0] == "operation":
            node = node[2]
            depth += 1
        assert depth == 2999

    def test_deep_parentheses(self):
        """Nesting depth is not bounded by the recursion limit."""
        assert parse_expression("(" * 3000 + "x" + ")" * 3000) == reference("x")

    def test_comparison(self):
        """Comparisons have the lowest precedence."""
        assert parse_expression("a + 1 >= 2") == \
            operation(">=", operation("+", reference("a"), constant(1)), constant(2))

    def test_date(self):
        """dd/mm/yyyy is a date."""
        assert parse_expression("01/02/2020") == constant(datetime.date(2020, 2, 1))

    def test_string(self):
        """Quoted text is a string constant."""
        assert parse_expression("'car'") == constant("car")

    def test_resolve(self):
        """resolve maps written names to rule ids."""
        node = parse_expression("B . C * D", lambda name: "ruleA . " + name)
        assert node == operation("*", reference("B . C", "ruleA . B . C"), reference("D", "ruleA . D"))

    def test_invalid_date(self):
        """Impossible dates are syntax errors."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression("31/02/2020")

    @pytest.mark.parametrize("text", ["", "1 +", "(1 + 2", "1 2", "* 3", "1 + 2)", "()", "1 < 2 < 3"])
    def test_malformed(self, text):
        """Malformed expressions raise ExpressionSyntaxError."""
        with pytest.raises(ExpressionSyntaxError):
            parse_expression(text)


class TestParseTemplate:
    """Tests for parse_template."""

    def test_parts(self):
        """Literal text and expressions alternate."""
        assert parse_template("Total: {{ a * 2 }}!") == (
            "Total: ", operation("*", reference("a"), constant(2)), "!",
        )

    def test_no_placeholder(self):
        """A plain text is a single literal part."""
        assert parse_template("hello") == ("hello",)


class TestFormatValue:
    """Tests for format_value."""

    def test_integer(self):
        assert format_value(100) == "100"

    def test_float_without_exponent(self):
        """Floats are written in positional notation."""
        assert format_value(0.69068) == "0.69068"
        assert format_value(1e-7) == "0.0000001"

    def test_percent(self):
        assert format_value(2, "%") == "2%"

    def test_unit(self):
        assert format_value(10, "kgCO2e") == "10 kgCO2e"

    def test_bool(self):
        assert format_value(True) == "yes"
        assert format_value(False) == "no"

    def test_date(self):
        assert format_value(datetime.date(2020, 2, 1)) == "01/02/2020"

    def test_string(self):
        assert format_value("car") == "'car'"

    def test_string_with_apostrophe(self):
        """Texts holding a single quote are written in double quotes."""
        assert format_value("l'eau") == "\"l'eau\""

    def test_string_with_both_quotes(self):
        """When both quotes occur, the single ones are escaped."""
        assert format_value("l'eau \"pure\"") == "'l\\'eau \"pure\"'"

    @pytest.mark.parametrize("text", ["l'eau", "dit \"oui\"", "a'b\"c", "c:\\temp", ""])
    def test_string_parses_back(self, text):
        """Written texts parse back to the same string."""
        assert parse_expression(format_value(text)) == constant(text)

    def test_inverse_unit(self):
        assert format_value(0.5, "1/kg") == "0.5 1/kg"

    def test_none(self):
        """An empty value cannot be written."""
        with pytest.raises(ValueError):
            format_value(None)


class TestFormatExpression:
    """Tests for format_expression."""

    def test_nested_operations_are_parenthesized(self):
        """Operation operands are wrapped in parentheses."""
        node = parse_expression("20 * 10 + not foldable")
        assert format_expression(node) == "(20 * 10) + not foldable"

    def test_keeps_grouping_of_divisor(self):
        """A parenthesized divisor stays parenthesized."""
        node = parse_expression("armoire . empreinte / (10 * 45)")
        assert format_expression(node) == "armoire . empreinte / (10 * 45)"

    def test_written_name_is_used(self):
        """References are written as they were in the source."""
        node = parse_expression("D * 2", lambda name: "ruleA . " + name)
        assert format_expression(node) == "D * 2"

    def test_percent_operand(self):
        """Percentages keep their sign."""
        assert format_expression(parse_expression("2% * nombre")) == "2% * nombre"

    def test_long_chain(self):
        """Chains of any length are written without recursing per operator."""
        formatted = format_expression(parse_expression(" + ".join(["x"] * 2000)))
        assert formatted.count("(") == 1998
        assert formatted.endswith("+ x) + x")
        assert format_expression(parse_expression(formatted)) == formatted

    def test_negated_power(self):
        """Negation of a power keeps its meaning once written."""
        node = parse_expression("-2 ** 2")
        assert format_expression(node) == "-1 * (2 ** 2)"
        assert parse_expression(format_expression(node)) == node

    def test_mechanism_rejected(self):
        """Mechanism nodes have no infix form."""
        node = ("nary", "sum", (constant(1),))
        assert not is_expression(node)
        with pytest.raises(ValueError):
            format_expression(node)

    def test_nothing_is_not_an_expression(self):
        """The empty constant has no infix form."""
        assert not is_expression(NOTHING)
