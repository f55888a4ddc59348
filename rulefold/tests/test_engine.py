"""Tests for RuleEngine and rule evaluation."""

import datetime

import pytest
from rulefold.engine import RuleEngine, RuleNode, load_rules_from_file
from rulefold.errors import (
    CyclicReference,
    EvaluationError,
    ModelError,
    ParseError,
    UnknownMechanism,
    UnknownReference,
)
from rulefold.evaluator import (
    EVALUATORS,
    Evaluator,
    divide_units,
    multiply_units,
    normalize_number,
    round_half_up,
    split_unit,
)
from rulefold.tree import KINDS, constant


class TestEngineBasics:
    """Tests for rule storage and lookup."""

    def test_names_are_normalized(self):
        """Rule ids are stored with canonical spacing."""
        engine = RuleEngine({"a.b": 1, "a": None})
        assert "a . b" in engine
        assert list(engine) == ["a . b", "a"]

    def test_getitem(self):
        """engine[rule_id] returns the parsed rule."""
        engine = RuleEngine({"a": 1})
        assert engine["a"] == RuleNode("a", constant(1), 1, "none")

    def test_getitem_missing(self):
        """Unknown ids raise KeyError."""
        with pytest.raises(KeyError):
            RuleEngine({})["a"]

    def test_get_rule_missing(self):
        """get_rule returns None for unknown ids."""
        assert RuleEngine({}).get_rule("a") is None

    def test_raw_rules_are_copied(self):
        """The engine does not share raw mappings with its caller."""
        rules = {"a": {"value": 1, "title": "A"}}
        engine = RuleEngine(rules)
        engine["a"].raw["title"] = "changed"
        assert rules["a"]["title"] == "A"

    def test_parsed_rules_are_read_only(self):
        """get_parsed_rules cannot be used to modify the model."""
        engine = RuleEngine({"a": 1})
        with pytest.raises(TypeError):
            engine.get_parsed_rules()["b"] = None

    def test_len_and_repr(self):
        engine = RuleEngine({"a": 1, "b": 2})
        assert len(engine) == 2
        assert repr(engine) == "RuleEngine(2 rules)"


class TestParsing:
    """Tests for errors raised while parsing a model."""

    def test_unknown_reference(self):
        """A name designating no rule is reported with the rule reading it."""
        with pytest.raises(UnknownReference) as excinfo:
            RuleEngine({"a": "zzz * 2"})
        assert excinfo.value.rule_id == "a"
        assert excinfo.value.name == "zzz"

    def test_syntax_error_names_rule(self):
        """Syntax errors carry the id of the rule."""
        with pytest.raises(ParseError) as excinfo:
            RuleEngine({"a": "1 +"})
        assert excinfo.value.rule_id == "a"
        assert str(excinfo.value).startswith("[a]")

    def test_two_mechanisms(self):
        """A mapping may hold only one mechanism."""
        with pytest.raises(UnknownMechanism):
            RuleEngine({"a": {"sum": [1], "product": [2]}})

    def test_nary_needs_list(self):
        with pytest.raises(ParseError):
            RuleEngine({"a": {"sum": 1}})

    def test_namespace_resolution(self):
        """Names are looked up in the enclosing namespaces first."""
        engine = RuleEngine({
            "x": 1,
            "a": "x",
            "a . x": 2,
            "a . b": "x",
        })
        assert engine["a"].value[2] == "a . x"
        assert engine["a . b"].value[2] == "a . x"

    def test_global_fallback(self):
        """A name missing from every namespace resolves at the top level."""
        engine = RuleEngine({"x": 1, "a . b": "x"})
        assert engine["a . b"].value[2] == "x"


class TestArithmetic:
    """Tests for operators."""

    def test_constant_formula(self):
        engine = RuleEngine({"ruleB": {"formula": "10 * 10"}})
        assert engine.evaluate("ruleB").value == 100

    def test_integer_type_preserved(self):
        """Whole results come back as ints."""
        engine = RuleEngine({"a": "10 / 2"})
        value = engine.evaluate("a").value
        assert value == 5 and isinstance(value, int)

    def test_float_noise_dropped(self):
        engine = RuleEngine({"a": "0.1 + 0.2"})
        assert engine.evaluate("a").value == 0.3

    def test_percentage_product(self):
        """Percentages act as ratios in products."""
        engine = RuleEngine({"rate": "24%", "x": "rate * 50"})
        assert engine.evaluate("x").value == 12

    def test_unit_product(self):
        """Units multiply and cancel."""
        engine = RuleEngine({"a": "10 €/month", "b": "a * 12 month"})
        result = engine.evaluate("b")
        assert (result.value, result.unit) == (120, "€")

    def test_unit_attribute(self):
        """The unit key overrides the computed unit."""
        engine = RuleEngine({"a": {"value": "0.692 kgCO2e/kg * 2", "unit": "kgCO2e"}})
        result = engine.evaluate("a")
        assert (result.value, result.unit) == (1.384, "kgCO2e")

    def test_inverse_unit(self):
        """Dividing a plain number by a unit gives an inverse unit."""
        engine = RuleEngine({"a": "2 / d", "d": {"value": 4, "unit": "kg"}, "b": "a * 3 kg"})
        assert engine.evaluate("a")[:2] == (0.5, "1/kg")
        assert engine.evaluate("b")[:2] == (1.5, None)

    def test_inverse_unit_literal(self):
        engine = RuleEngine({"a": "0.5 1/kg * 3"})
        assert engine.evaluate("a")[:2] == (1.5, "1/kg")

    def test_negated_power(self):
        """Unary minus applies after **."""
        engine = RuleEngine({"a": "-2 ** 2", "b": "2 ** -1"})
        assert engine.evaluate("a").value == -4
        assert engine.evaluate("b").value == 0.5

    def test_long_chain(self):
        """A formula with thousands of operators evaluates."""
        engine = RuleEngine({"total": " + ".join(["1"] * 3000)})
        assert engine.evaluate("total").value == 3000

    def test_comparison(self):
        engine = RuleEngine({"a": "3 > 2", "b": "'x' = 'y'"})
        assert engine.evaluate("a").value is True
        assert engine.evaluate("b").value is False

    def test_division_by_zero(self):
        """Division by zero is an evaluation error naming the rule."""
        engine = RuleEngine({"a": "1 / 0"})
        with pytest.raises(EvaluationError) as excinfo:
            engine.evaluate("a")
        assert excinfo.value.rule_id == "a"

    def test_type_error(self):
        """Arithmetic on text is an evaluation error."""
        engine = RuleEngine({"a": "'abc' * 2"})
        with pytest.raises(EvaluationError):
            engine.evaluate("a")

    def test_cycle(self):
        """Rules reading each other are reported."""
        engine = RuleEngine({"a": "b", "b": "a"})
        with pytest.raises(CyclicReference):
            engine.evaluate("a")

    def test_evaluate_unknown_rule(self):
        with pytest.raises(UnknownReference):
            RuleEngine({}).evaluate("a")

    def test_evaluate_expression(self):
        """Standalone expressions resolve names like rule formulas."""
        engine = RuleEngine({"a": 2, "a . b": 5})
        assert engine.evaluate_expression("b * 3", "a").value == 15
        assert engine.evaluate_expression("a + 1").value == 3


class TestMechanisms:
    """Tests for mechanisms."""

    def test_sum(self):
        engine = RuleEngine({"total": {"sum": ["a", "b", 5]}, "a": 1, "b": 2})
        assert engine.evaluate("total").value == 8

    def test_sum_skips_not_applicable(self):
        """A non-applicable item counts as nothing."""
        engine = RuleEngine({
            "total": {"sum": ["a", "b", 5]},
            "a": 1,
            "b": {"applicable if": False, "value": 2},
        })
        assert engine.evaluate("total").value == 6

    def test_product(self):
        engine = RuleEngine({"a": {"product": [2, "50%", 10]}})
        assert engine.evaluate("a").value == 10

    def test_min_max_average(self):
        engine = RuleEngine({
            "low": {"min of": [3, 1, 2]},
            "high": {"max of": [3, 1, 2]},
            "mean": {"average": [1, 2]},
        })
        assert engine.evaluate("low").value == 1
        assert engine.evaluate("high").value == 3
        assert engine.evaluate("mean").value == 1.5

    def test_all_any(self):
        engine = RuleEngine({
            "all": {"all of": [True, "1 > 2"]},
            "any": {"any of": [False, "1 < 2"]},
        })
        assert engine.evaluate("all").value is False
        assert engine.evaluate("any").value is True

    def test_all_of_unknown(self):
        """An unanswered input leaves all of undecided."""
        engine = RuleEngine({
            "all": {"all of": [True, "x"]},
            "x": {"question": "?"},
        })
        result = engine.evaluate("all")
        assert result.value is None
        assert result.missing_variables == {"x"}

    def test_variations(self):
        rules = {
            "rate": {"variations": [{"if": "income > 1000", "then": "20%"}, {"else": "10%"}]},
            "income": 2000,
        }
        result = RuleEngine(rules).evaluate("rate")
        assert (result.value, result.unit) == (20, "%")

    def test_variations_else(self):
        rules = {
            "rate": {"variations": [{"if": "income > 1000", "then": "20%"}, {"else": "10%"}]},
            "income": 500,
        }
        assert RuleEngine(rules).evaluate("rate").value == 10

    def test_limits(self):
        engine = RuleEngine({
            "f": {"value": 5, "floor": 10},
            "c": {"value": 5, "ceiling": 3},
            "d": {"value": 5, "deduction": 7},
        })
        assert engine.evaluate("f").value == 10
        assert engine.evaluate("c").value == 3
        assert engine.evaluate("d").value == 0

    def test_round(self):
        """Rounding is half up."""
        engine = RuleEngine({"a": {"value": 2.345, "round": 2}, "b": {"value": 2.5, "round": True}})
        assert engine.evaluate("a").value == 2.35
        assert engine.evaluate("b").value == 3

    def test_scale(self):
        """A scale applies each rate to its bracket only."""
        engine = RuleEngine({
            "tax": {"scale": {
                "base": "income",
                "brackets": [
                    {"rate": "0%", "ceiling": 10000},
                    {"rate": "10%", "ceiling": 20000},
                    {"rate": "20%"},
                ],
            }},
            "income": 25000,
        })
        assert engine.evaluate("tax").value == 2000

    def test_grid(self):
        """A grid returns the amount of the bracket holding the base."""
        rules = {
            "fee": {"grid": {
                "base": "income",
                "brackets": [{"amount": 10, "ceiling": 1000}, {"amount": 50}],
            }},
            "income": 500,
        }
        assert RuleEngine(rules).evaluate("fee").value == 10
        rules["income"] = 25000
        assert RuleEngine(rules).evaluate("fee").value == 50

    def test_text(self):
        engine = RuleEngine({"msg": {"text": "Total: {{ total }}"}, "total": "10 * 2"})
        assert engine.evaluate("msg").value == "Total: 20"

    def test_duration(self):
        engine = RuleEngine({"d": {"duration": {"from": "01/01/2020", "to": "31/01/2020"}}})
        result = engine.evaluate("d")
        assert (result.value, result.unit) == (30, "day")

    def test_date_value(self):
        """Dates loaded by YAML are kept as dates."""
        engine = RuleEngine({"d": datetime.date(2020, 1, 1)})
        assert engine.evaluate("d").value == datetime.date(2020, 1, 1)

    def test_context(self):
        """A context evaluates its body with rules rebound."""
        engine = RuleEngine({
            "root": {"value": "rule to recompute", "context": {"constant": 20}},
            "rule to recompute": "constant * 2",
            "constant": 10,
        })
        assert engine.evaluate("root").value == 40
        assert engine.evaluate("rule to recompute").value == 20

    def test_is_defined(self):
        rules = {"x": {"question": "?"}, "known": {"is defined": "x"}}
        assert RuleEngine(rules).evaluate("known").value is False
        assert RuleEngine(rules, {"x": 3}).evaluate("known").value is True

    def test_one_of(self):
        """A choice outside the list is rejected."""
        rules = {"mode": {"question": "?", "one of": {"choices": ["car", "bike"]}, "default": "'car'"}}
        assert RuleEngine(rules).evaluate("mode").value == "car"
        with pytest.raises(EvaluationError):
            RuleEngine(rules, {"mode": "'plane'"}).evaluate("mode")


class TestInputs:
    """Tests for inputs and the situation."""

    RULES = {
        "price": "quantity * 10",
        "price . quantity": {"question": "How many?", "default": 2},
    }

    def test_default_is_missing(self):
        """A default answers the question but stays a missing variable."""
        result = RuleEngine(self.RULES).evaluate("price")
        assert result.value == 20
        assert result.missing_variables == {"price . quantity"}

    def test_situation(self):
        """Situation values replace defaults."""
        result = RuleEngine(self.RULES, {"price . quantity": 3}).evaluate("price")
        assert result.value == 30
        assert result.missing_variables == set()

    def test_situation_expression(self):
        """Situation values may be expressions."""
        engine = RuleEngine(self.RULES).set_situation({"price . quantity": "1 + 1"})
        assert engine.evaluate("price").value == 20

    def test_set_situation_resets_cache(self):
        engine = RuleEngine(self.RULES)
        assert engine.evaluate("price").value == 20
        engine.set_situation({"price . quantity": 5})
        assert engine.evaluate("price").value == 50

    def test_unknown_situation_key(self):
        with pytest.raises(UnknownReference):
            RuleEngine(self.RULES, {"nope": 1})

    def test_no_default(self):
        """An input without default has no value."""
        result = RuleEngine({"x": {"question": "?"}}).evaluate("x")
        assert result.value is None
        assert result.missing_variables == {"x"}


class TestApplicability:
    """Tests for applicable if and namespace gating."""

    RULES = {
        "bonus": {"applicable if": "eligible", "value": 100},
        "bonus . eligible": {"question": "Eligible?", "default": False},
    }

    def test_not_applicable(self):
        result = RuleEngine(self.RULES).evaluate("bonus")
        assert result.value is None
        assert result.missing_variables == {"bonus . eligible"}

    def test_applicable(self):
        result = RuleEngine(self.RULES, {"bonus . eligible": True}).evaluate("bonus")
        assert result.value == 100

    def test_not_applicable_if(self):
        engine = RuleEngine({"a": {"not applicable if": "1 < 2", "value": 1}})
        assert engine.evaluate("a").value is None

    def test_disabled_ancestor(self):
        """A namespace answered no disables its descendants."""
        rules = {
            "car": {"question": "Do you have a car?", "default": False},
            "car . cost": 1000,
            "total": "car . cost",
        }
        cost = RuleEngine(rules).evaluate("car . cost")
        assert cost.value is None
        assert cost.parent_missing_variables == {"car"}

        total = RuleEngine(rules).evaluate("total")
        assert total.value is None
        assert total.missing_variables == {"car"}

        assert RuleEngine(rules, {"car": True}).evaluate("total").value == 1000

    def test_non_applicable_ancestor(self):
        """Applicability conditions of a namespace apply to its descendants."""
        engine = RuleEngine({"a": {"applicable if": "1 > 2"}, "a . b": 5})
        assert engine.evaluate("a . b").value is None


class TestEvaluator:
    """Tests for the evaluator itself."""

    def test_every_kind_has_a_handler(self):
        assert set(EVALUATORS) == KINDS

    def test_unknown_kind(self):
        with pytest.raises(EvaluationError):
            Evaluator(RuleEngine({})).evaluate(("bogus",))

    def test_split_unit_inverse(self):
        """A numerator of 1 has no factors."""
        assert split_unit("1/kg") == ([], ["kg"])
        assert multiply_units("1/kg", "kg") is None
        assert divide_units(None, "kg") == "1/kg"

    def test_no_situation(self):
        """Without a situation, inputs read as unanswered."""
        engine = RuleEngine({"a": "x * 2", "x": {"question": "X?", "default": 1}}, {"x": 3})
        assert engine.evaluate("a").value == 6
        result = Evaluator(engine).evaluate_rule("a")
        assert result.value == 2
        assert result.missing_variables == {"x"}

    def test_normalize_number(self):
        assert normalize_number(3.0) == 3 and isinstance(normalize_number(3.0), int)
        assert normalize_number(0.1 + 0.2) == 0.3

    def test_round_half_up(self):
        assert round_half_up(0.5, 0) == 1
        assert round_half_up(1.005, 2) == 1.01


class TestLoadRules:
    """Tests for load_rules_from_file."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "model.yaml"
        path.write_text("a: 10 * 10\nb:\n  question: B?\n", encoding="utf-8")
        assert load_rules_from_file(path) == {"a": "10 * 10", "b": {"question": "B?"}}

    def test_json(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_text('{"a": {"value": 1}}', encoding="utf-8")
        assert load_rules_from_file(path) == {"a": {"value": 1}}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_rules_from_file(path) == {}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ModelError):
            load_rules_from_file(path)

    def test_from_file(self, tmp_path):
        path = tmp_path / "model.yaml"
        path.write_text("a: 2\nb: a * 3\n", encoding="utf-8")
        assert RuleEngine.from_file(path).evaluate("b").value == 6
