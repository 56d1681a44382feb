"""Tests for label selector compilation, matching and parsing."""

from __future__ import annotations

import pytest

from cluster_collector.models import LabelSelector, LabelSelectorRequirement
from cluster_collector.targets.selector import (
    SelectorError,
    compile_selector,
    parse_selector_string,
)


def _expr(key: str, operator: str, *values: str) -> LabelSelectorRequirement:
    return LabelSelectorRequirement(key=key, operator=operator, values=list(values))


class TestCompileSelector:
    def test_empty_selector_matches_everything(self):
        sel = compile_selector(LabelSelector())
        assert sel.empty
        assert sel.matches({})
        assert sel.matches({"env": "prod"})

    def test_match_labels(self):
        sel = compile_selector(LabelSelector(match_labels={"env": "prod"}))
        assert sel.matches({"env": "prod", "zone": "a"})
        assert not sel.matches({"env": "dev"})
        assert not sel.matches({})

    def test_in(self):
        sel = compile_selector(LabelSelector(match_expressions=[_expr("tier", "In", "web", "api")]))
        assert sel.matches({"tier": "api"})
        assert not sel.matches({"tier": "db"})
        assert not sel.matches({})

    def test_not_in_matches_absent_key(self):
        sel = compile_selector(LabelSelector(match_expressions=[_expr("tier", "NotIn", "db")]))
        assert sel.matches({"tier": "web"})
        assert sel.matches({})
        assert not sel.matches({"tier": "db"})

    def test_exists_and_does_not_exist(self):
        exists = compile_selector(LabelSelector(match_expressions=[_expr("gpu", "Exists")]))
        absent = compile_selector(LabelSelector(match_expressions=[_expr("gpu", "DoesNotExist")]))
        assert exists.matches({"gpu": ""})
        assert not exists.matches({})
        assert absent.matches({})
        assert not absent.matches({"gpu": "true"})

    def test_all_terms_must_match(self):
        sel = compile_selector(LabelSelector(
            match_labels={"env": "prod"},
            match_expressions=[_expr("tier", "In", "web")],
        ))
        assert sel.matches({"env": "prod", "tier": "web"})
        assert not sel.matches({"env": "prod", "tier": "api"})

    def test_unknown_operator(self):
        with pytest.raises(SelectorError, match="Invalid operator"):
            compile_selector(LabelSelector(match_expressions=[_expr("env", "Like", "p")]))

    def test_in_requires_values(self):
        with pytest.raises(SelectorError, match="requires at least one value"):
            compile_selector(LabelSelector(match_expressions=[_expr("env", "In")]))

    def test_exists_rejects_values(self):
        with pytest.raises(SelectorError, match="does not take values"):
            compile_selector(LabelSelector(match_expressions=[_expr("env", "Exists", "x")]))

    def test_invalid_key(self):
        with pytest.raises(SelectorError, match="Invalid label key"):
            compile_selector(LabelSelector(match_labels={"bad key": "x"}))

    def test_prefixed_key(self):
        sel = compile_selector(LabelSelector(match_labels={"projectsveltos.io/env": "prod"}))
        assert sel.matches({"projectsveltos.io/env": "prod"})

    def test_invalid_prefix(self):
        with pytest.raises(SelectorError, match="prefix"):
            compile_selector(LabelSelector(match_labels={"Bad_Prefix/env": "prod"}))

    def test_invalid_value(self):
        with pytest.raises(SelectorError, match="Invalid label value"):
            compile_selector(LabelSelector(match_labels={"env": "-prod"}))

    def test_value_too_long(self):
        with pytest.raises(SelectorError):
            compile_selector(LabelSelector(match_labels={"env": "a" * 64}))

    def test_empty_value_allowed(self):
        sel = compile_selector(LabelSelector(match_labels={"env": ""}))
        assert sel.matches({"env": ""})


class TestParseSelectorString:
    def test_empty_string(self):
        sel = parse_selector_string("  ")
        assert sel == LabelSelector()

    def test_equality_forms(self):
        sel = parse_selector_string("env=prod,zone==a")
        assert sel.match_labels == {"env": "prod", "zone": "a"}

    def test_inequality(self):
        sel = parse_selector_string("env!=dev")
        assert sel.match_expressions[0].operator == "NotIn"
        assert sel.match_expressions[0].values == ["dev"]

    def test_set_expressions(self):
        sel = parse_selector_string("tier in (web, api),env notin (dev)")
        ops = [(e.key, e.operator, e.values) for e in sel.match_expressions]
        assert ops == [("tier", "In", ["web", "api"]), ("env", "NotIn", ["dev"])]

    def test_exists_and_not_exists(self):
        sel = parse_selector_string("gpu,!legacy")
        ops = [(e.key, e.operator) for e in sel.match_expressions]
        assert ops == [("gpu", "Exists"), ("legacy", "DoesNotExist")]

    def test_parsed_selector_matches(self):
        compiled = compile_selector(parse_selector_string("env=prod,tier in (web,api),!legacy"))
        assert compiled.matches({"env": "prod", "tier": "web"})
        assert not compiled.matches({"env": "prod", "tier": "web", "legacy": "true"})

    def test_unbalanced_parentheses(self):
        with pytest.raises(SelectorError, match="Unbalanced"):
            parse_selector_string("tier in (web")

    def test_empty_term(self):
        with pytest.raises(SelectorError, match="Empty term"):
            parse_selector_string("env=prod,,zone=a")

    def test_empty_set_rejected(self):
        with pytest.raises(SelectorError):
            parse_selector_string("tier in ()")
