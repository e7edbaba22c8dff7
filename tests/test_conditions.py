"""Tests for ABAC condition parsing and evaluation."""

from datetime import datetime, timezone

import pytest

from access_engine.features.permissions.attributes import AttributeValue
from access_engine.features.permissions.conditions import ConditionClause, Conditions, evaluate


def clause(scope="user", key="department", comparator="eq", **rhs) -> dict:
    return dict(scope=scope, key=key, comparator=comparator, **rhs)


def check(clauses, user=None, resource=None, env=None) -> bool:
    return evaluate(Conditions.parse(clauses), user or {}, resource or {}, env or {})


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParse:
    @pytest.mark.parametrize("document", [None, {}, []])
    def test_empty_documents_are_unconditional(self, document):
        assert Conditions.parse(document) is None
        assert evaluate(Conditions.parse(document)) is True

    def test_clause_list_and_wrapped_form_are_equivalent(self):
        clauses = [clause(value="IT")]
        assert Conditions.parse(clauses) == Conditions.parse({"clauses": clauses})

    def test_legacy_document_becomes_equality_clauses(self):
        parsed = Conditions.parse({
            "user_attributes": {"department": "IT"},
            "resource_attributes": {"owner": "alice"},
            "environment": {"day_of_week": "monday"},
        })
        assert [(c.scope, c.key, c.comparator, c.value) for c in parsed.clauses] == [
            ("user", "department", "eq", "IT"),
            ("resource", "owner", "eq", "alice"),
            ("environment", "day_of_week", "eq", "monday"),
        ]

    def test_expression_is_rejected(self):
        with pytest.raises(ValueError):
            Conditions.parse({"expression": "user.level > 3"})

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ValueError):
            Conditions.parse({"ip_range": ["10.0.0.0/8"]})

    def test_extra_keys_next_to_clauses_are_rejected(self):
        document = {"clauses": [], "user_attributes": {"department": "HR"}, "expression": "x > 1"}
        with pytest.raises(ValueError):
            Conditions.parse(document)

    def test_misspelled_clause_field_is_rejected(self):
        with pytest.raises(ValueError):
            Conditions.parse([{"scope": "user", "key": "department", "vaue": "IT"}])
        with pytest.raises(ValueError):
            Conditions.parse([clause(value_from={"scope": "resource", "key": "a", "extra": 1})])

    def test_value_and_value_from_are_exclusive(self):
        with pytest.raises(ValueError):
            ConditionClause(scope="user", key="a", value=1, value_from={"scope": "resource", "key": "b"})

    def test_unknown_comparator_is_rejected(self):
        with pytest.raises(ValueError):
            Conditions.parse([clause(comparator="matches", value="x")])

    def test_document_round_trip(self):
        parsed = Conditions.parse([clause(value_from={"scope": "resource", "key": "department"})])
        assert Conditions.parse(parsed.to_document()) == parsed


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class TestEvaluate:
    def test_missing_left_attribute_is_false(self):
        assert check([clause(value="IT")]) is False

    def test_missing_right_attribute_is_false(self):
        rhs = {"scope": "resource", "key": "department"}
        assert check([clause(value_from=rhs)], user={"department": "IT"}) is False

    def test_attribute_reference(self):
        rhs = {"scope": "resource", "key": "department"}
        user = {"department": AttributeValue("string", "IT")}
        assert check([clause(value_from=rhs)], user, {"department": AttributeValue("string", "IT")}) is True
        assert check([clause(value_from=rhs)], user, {"department": AttributeValue("string", "HR")}) is False

    def test_clauses_are_anded(self):
        clauses = [clause(value="IT"), clause(key="level", comparator="gte", value=3)]
        assert check(clauses, user={"department": "IT", "level": 4}) is True
        assert check(clauses, user={"department": "IT", "level": 2}) is False

    def test_typed_number_comparison(self):
        user = {"level": AttributeValue("number", "10")}
        assert check([clause(key="level", comparator="gt", value=9)], user) is True
        assert check([clause(key="level", comparator="lt", value="9.5")], user) is False
        assert check([clause(key="level", comparator="eq", value=10)], user) is True

    def test_numeric_strings_compare_numerically_against_numbers(self):
        assert check([clause(key="level", comparator="gt", value=9)], user={"level": "10"}) is True

    def test_degraded_number_falls_back_to_string(self):
        user = {"level": AttributeValue("number", "high")}
        assert check([clause(key="level", comparator="eq", value="high")], user) is True
        assert check([clause(key="level", comparator="gt", value=3)], user) is False

    def test_boolean_comparison(self):
        user = {"remote": AttributeValue("boolean", "true")}
        assert check([clause(key="remote", value=True)], user) is True
        assert check([clause(key="remote", value="false")], user) is False

    def test_date_comparison(self):
        user = {"hired": AttributeValue("date", "2020-05-01")}
        assert check([clause(key="hired", comparator="lt", value="2021-01-01")], user) is True
        assert check([clause(key="hired", comparator="gte", value="2021-01-01")], user) is False

    def test_aware_and_naive_dates_compare(self):
        env = {"now": datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)}
        assert check([clause("environment", "now", "gt", value="2024-03-01T11:00:00")], env=env) is True

    def test_membership(self):
        assert check([clause(comparator="in", value=["IT", "HR"])], user={"department": "HR"}) is True
        assert check([clause(comparator="not_in", value=["IT", "HR"])], user={"department": "HR"}) is False

    def test_membership_requires_a_list(self):
        assert check([clause(comparator="in", value="IT")], user={"department": "IT"}) is False

    def test_string_operators(self):
        user = {"email": "alice@example.com"}
        assert check([clause(key="email", comparator="contains", value="@example")], user) is True
        assert check([clause(key="email", comparator="starts_with", value="alice")], user) is True
        assert check([clause(key="email", comparator="ends_with", value=".org")], user) is False

    def test_contains_on_lists(self):
        assert check([clause(key="tags", comparator="contains", value="pii")], user={"tags": ["pii", "hr"]}) is True

    def test_in_cidr(self):
        rule = [clause("environment", "client_ip", "in_cidr", value="192.168.1.0/24")]
        assert check(rule, env={"client_ip": "192.168.1.77"}) is True
        assert check(rule, env={"client_ip": "10.0.0.1"}) is False
        assert check(rule, env={"client_ip": "not-an-ip"}) is False

    def test_in_cidr_with_several_networks(self):
        rule = [clause("environment", "client_ip", "in_cidr", value=["10.0.0.0/8", "172.16.0.0/12"])]
        assert check(rule, env={"client_ip": "172.16.4.2"}) is True

    def test_time_between(self):
        rule = [clause("environment", "time", "time_between", value="09:00-17:00")]
        assert check(rule, env={"time": "09:00"}) is True
        assert check(rule, env={"time": "17:00"}) is True
        assert check(rule, env={"time": "17:01"}) is False

    def test_time_between_wraps_midnight(self):
        rule = [clause("environment", "time", "time_between", value=["22:00", "06:00"])]
        assert check(rule, env={"time": "23:30"}) is True
        assert check(rule, env={"time": "05:59"}) is True
        assert check(rule, env={"time": "12:00"}) is False

    def test_malformed_operands_are_false(self):
        rule = [clause("environment", "time", "time_between", value="whenever")]
        assert check(rule, env={"time": "10:00"}) is False

    def test_null_right_hand_side(self):
        assert check([clause(comparator="eq")], user={"department": "IT"}) is False
        assert check([clause(comparator="ne")], user={"department": "IT"}) is True
        assert check([clause(comparator="gt")], user={"department": "IT"}) is False
