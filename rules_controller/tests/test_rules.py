from __future__ import annotations

import pytest

from rules_controller.src.errors import TranslationError
from rules_controller.src.models import Rule, RuleGroup, RuleSpec
from rules_controller.src.rules import (
    RemoteRule,
    RemoteRuleGroup,
    RuleNamespace,
    build_rule_namespace,
    format_duration,
    parse_duration,
    rule_namespace_key,
    validate_rule_namespace,
)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("0", 0),
        ("30s", 30_000),
        ("5m", 300_000),
        ("1h30m", 5_400_000),
        ("1d", 86_400_000),
        ("2w", 14 * 86_400_000),
        ("1y", 365 * 86_400_000),
        ("1m30s500ms", 90_500),
    ],
)
def test_parse_duration(text: str, expected: int) -> None:
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "5", "1.5h", "30m1h", "5x", "-1m", "1h 30m"])
def test_parse_duration_rejects_invalid_strings(text: str) -> None:
    with pytest.raises(ValueError, match="not a valid duration"):
        parse_duration(text)


@pytest.mark.parametrize(
    ("milliseconds", "expected"),
    [(0, "0s"), (60_000, "1m"), (5_400_000, "1h30m"), (90_500, "1m30s500ms")],
)
def test_format_duration(milliseconds: int, expected: str) -> None:
    assert format_duration(milliseconds) == expected


def test_rule_namespace_key() -> None:
    assert rule_namespace_key("prod", "monitoring", "node") == "prod:monitoring:node"


def test_build_rule_namespace_translates_groups_in_order() -> None:
    spec = RuleSpec(
        groups=[
            RuleGroup(
                name="g1",
                interval="1m",
                evaluation_delay="30s",
                limit=10,
                source_tenants=["t1"],
                rules=[
                    Rule(alert="InstanceDown", expr="up == 0", for_="5m", labels={"sev": "page"}),
                ],
            ),
            RuleGroup(name="g2", rules=[Rule(record="job:up:sum", expr="sum(up) by (job)")]),
        ]
    )

    namespace = build_rule_namespace(spec, "cluster:ns:r1")

    assert namespace.namespace == "cluster:ns:r1"
    assert [group.name for group in namespace.groups] == ["g1", "g2"]
    g1 = namespace.groups[0]
    assert (g1.interval_ms, g1.evaluation_delay_ms, g1.limit) == (60_000, 30_000, 10)
    assert g1.rules[0].for_ms == 300_000
    assert namespace.groups[1].interval_ms is None


def test_build_rule_namespace_rejects_bad_durations() -> None:
    spec = RuleSpec(
        groups=[RuleGroup(name="g1", interval="soon", rules=[Rule(alert="A", expr="up")])]
    )

    with pytest.raises(TranslationError, match="invalid interval"):
        build_rule_namespace(spec, "c:ns:r1")


def test_build_rule_namespace_rejects_bad_for_duration() -> None:
    spec = RuleSpec(groups=[RuleGroup(name="g1", rules=[Rule(alert="A", expr="up", for_="1.5m")])])

    with pytest.raises(TranslationError, match="invalid 'for'"):
        build_rule_namespace(spec, "c:ns:r1")


def test_remote_group_serialises_to_ruler_yaml_shape() -> None:
    group = RemoteRuleGroup(
        name="g1",
        interval_ms=60_000,
        source_tenants=("t1",),
        rules=(
            RemoteRule(
                record="",
                alert="InstanceDown",
                expr="up == 0",
                for_ms=300_000,
                labels={"severity": "page"},
            ),
        ),
    )

    assert group.to_dict() == {
        "name": "g1",
        "interval": "1m",
        "source_tenants": ["t1"],
        "rules": [
            {
                "alert": "InstanceDown",
                "expr": "up == 0",
                "for": "5m",
                "labels": {"severity": "page"},
            }
        ],
    }


def _namespace(*groups: RemoteRuleGroup) -> RuleNamespace:
    return RuleNamespace(namespace="c:ns:r1", groups=groups)


def test_validate_accepts_well_formed_namespace() -> None:
    namespace = _namespace(
        RemoteRuleGroup(
            name="g1",
            rules=(
                RemoteRule(record="job:up:sum", alert="", expr="sum(up)"),
                RemoteRule(record="", alert="Down", expr="up == 0", annotations={"summary": "x"}),
            ),
        )
    )

    assert validate_rule_namespace(namespace) == []


def test_validate_reports_empty_and_duplicate_group_names() -> None:
    namespace = _namespace(
        RemoteRuleGroup(name=""),
        RemoteRuleGroup(name="g1"),
        RemoteRuleGroup(name="g1"),
    )

    errors = validate_rule_namespace(namespace)

    assert "group 0: group name must not be empty" in errors
    assert "group 'g1': name is repeated in the same namespace" in errors


def test_validate_reports_empty_expression() -> None:
    namespace = _namespace(
        RemoteRuleGroup(name="g1", rules=(RemoteRule(record="", alert="Down", expr=""),))
    )

    assert validate_rule_namespace(namespace) == [
        "group 'g1', rule 0 (Down): field 'expr' must be set in rule"
    ]


@pytest.mark.parametrize(
    ("rule", "problem"),
    [
        (RemoteRule(record="a", alert="b", expr="up"), "only one of 'record' and 'alert'"),
        (RemoteRule(record="", alert="", expr="up"), "one of 'record' or 'alert' must be set"),
        (
            RemoteRule(record="a", alert="", expr="up", annotations={"x": "y"}),
            "invalid field 'annotations' in recording rule",
        ),
        (
            RemoteRule(record="a", alert="", expr="up", for_ms=1000),
            "invalid field 'for' in recording rule",
        ),
        (RemoteRule(record="bad-name", alert="", expr="up"), "invalid recording rule name"),
        (
            RemoteRule(record="", alert="A", expr="up", labels={"__name__": "x"}),
            "invalid label name: __name__",
        ),
        (
            RemoteRule(record="", alert="A", expr="up", labels={"1abc": "x"}),
            "invalid label name: 1abc",
        ),
    ],
)
def test_validate_rule_constraints(rule: RemoteRule, problem: str) -> None:
    errors = validate_rule_namespace(_namespace(RemoteRuleGroup(name="g1", rules=(rule,))))

    assert any(problem in error for error in errors), errors


def test_validate_rejects_negative_limit() -> None:
    errors = validate_rule_namespace(_namespace(RemoteRuleGroup(name="g1", limit=-1)))

    assert errors == ["group 'g1': limit must not be negative"]
