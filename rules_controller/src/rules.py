from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from rules_controller.src.errors import TranslationError
from rules_controller.src.models import RuleSpec

_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_DURATION_UNITS_MS: tuple[tuple[str, int], ...] = (
    ("y", 365 * 24 * 60 * 60 * 1000),
    ("w", 7 * 24 * 60 * 60 * 1000),
    ("d", 24 * 60 * 60 * 1000),
    ("h", 60 * 60 * 1000),
    ("m", 60 * 1000),
    ("s", 1000),
    ("ms", 1),
)
_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def parse_duration(value: str) -> int:
    """Parse a Prometheus duration string (``1h30m``, ``5m``, ``0``) into milliseconds.

    Units must appear in descending order (``y w d h m s ms``) and each at most
    once, matching the ruler's own parser. Fractional values are rejected.
    """
    if value == "0":
        return 0
    match = _DURATION_RE.match(value)
    if not value or match is None:
        raise ValueError(f"not a valid duration string: {value!r}")
    total = 0
    for (_, unit_ms), amount in zip(_DURATION_UNITS_MS, match.groups(), strict=True):
        if amount is not None:
            total += int(amount) * unit_ms
    return total


def format_duration(milliseconds: int) -> str:
    """Render milliseconds the way the ruler prints durations (``1h30m``, ``0s``)."""
    if milliseconds == 0:
        return "0s"
    parts: list[str] = []
    remaining = milliseconds
    for unit, unit_ms in _DURATION_UNITS_MS:
        amount, remaining = divmod(remaining, unit_ms)
        if amount:
            parts.append(f"{amount}{unit}")
    return "".join(parts)


def rule_namespace_key(cluster_name: str, namespace: str, name: str) -> str:
    """Address of a resource's rule namespace in the ruler: ``cluster:namespace:name``."""
    return f"{cluster_name}:{namespace}:{name}"


@dataclass(frozen=True)
class RemoteRule:
    record: str
    alert: str
    expr: str
    for_ms: int | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.alert or self.record

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.record:
            out["record"] = self.record
        if self.alert:
            out["alert"] = self.alert
        out["expr"] = self.expr
        if self.for_ms is not None:
            out["for"] = format_duration(self.for_ms)
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        return out


@dataclass(frozen=True)
class RemoteRuleGroup:
    """A rule group in the ruler's representation (durations already parsed)."""

    name: str
    rules: tuple[RemoteRule, ...] = ()
    interval_ms: int | None = None
    evaluation_delay_ms: int | None = None
    limit: int = 0
    source_tenants: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.interval_ms is not None:
            out["interval"] = format_duration(self.interval_ms)
        if self.evaluation_delay_ms is not None:
            out["evaluation_delay"] = format_duration(self.evaluation_delay_ms)
        if self.limit:
            out["limit"] = self.limit
        if self.source_tenants:
            out["source_tenants"] = list(self.source_tenants)
        out["rules"] = [rule.to_dict() for rule in self.rules]
        return out


@dataclass(frozen=True)
class RuleNamespace:
    """All rule groups of one MimirRule, addressed by ``cluster:namespace:name``."""

    namespace: str
    groups: tuple[RemoteRuleGroup, ...] = ()


def _parse_optional_duration(value: str, what: str) -> int | None:
    if not value:
        return None
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise TranslationError(f"{what}: {exc}") from exc


def build_rule_namespace(spec: RuleSpec, namespace_key: str) -> RuleNamespace:
    """Translate a resource spec into the ruler's rule namespace.

    Raises :class:`TranslationError` when a duration field cannot be parsed.
    Structural problems (empty names, missing expressions) are left for
    :func:`validate_rule_namespace` so they can be reported together.
    """
    groups: list[RemoteRuleGroup] = []
    for group_index, group in enumerate(spec.groups):
        where = f"group {group.name or group_index!r}"
        rules: list[RemoteRule] = []
        for rule_index, rule in enumerate(group.rules):
            rules.append(
                RemoteRule(
                    record=rule.record,
                    alert=rule.alert,
                    expr=rule.expr,
                    for_ms=_parse_optional_duration(
                        rule.for_, f"{where}, rule {rule_index}: invalid 'for'"
                    ),
                    labels=dict(rule.labels),
                    annotations=dict(rule.annotations),
                )
            )
        groups.append(
            RemoteRuleGroup(
                name=group.name,
                rules=tuple(rules),
                interval_ms=_parse_optional_duration(group.interval, f"{where}: invalid interval"),
                evaluation_delay_ms=_parse_optional_duration(
                    group.evaluation_delay, f"{where}: invalid evaluation_delay"
                ),
                limit=group.limit,
                source_tenants=tuple(group.source_tenants),
            )
        )
    return RuleNamespace(namespace=namespace_key, groups=tuple(groups))


def _validate_rule(rule: RemoteRule) -> list[str]:
    errors: list[str] = []
    if rule.record and rule.alert:
        errors.append("only one of 'record' and 'alert' must be set")
    elif not rule.record and not rule.alert:
        errors.append("one of 'record' or 'alert' must be set")

    if not rule.expr.strip():
        errors.append("field 'expr' must be set in rule")

    if rule.record:
        if rule.annotations:
            errors.append("invalid field 'annotations' in recording rule")
        if rule.for_ms is not None:
            errors.append("invalid field 'for' in recording rule")
        if not _METRIC_NAME_RE.match(rule.record):
            errors.append(f"invalid recording rule name: {rule.record}")

    for label_name in rule.labels:
        if label_name == "__name__" or not _LABEL_NAME_RE.match(label_name):
            errors.append(f"invalid label name: {label_name}")
    for annotation_name in rule.annotations:
        if not _LABEL_NAME_RE.match(annotation_name):
            errors.append(f"invalid annotation name: {annotation_name}")
    return errors


def validate_rule_namespace(rule_namespace: RuleNamespace) -> list[str]:
    """Return every structural problem found in *rule_namespace* (empty when valid)."""
    errors: list[str] = []
    seen: set[str] = set()
    for group_index, group in enumerate(rule_namespace.groups):
        if not group.name:
            errors.append(f"group {group_index}: group name must not be empty")
        elif group.name in seen:
            errors.append(f"group {group.name!r}: name is repeated in the same namespace")
        seen.add(group.name)
        if group.limit < 0:
            errors.append(f"group {group.name!r}: limit must not be negative")

        for rule_index, rule in enumerate(group.rules):
            for problem in _validate_rule(rule):
                errors.append(f"group {group.name!r}, rule {rule_index} ({rule.name}): {problem}")
    return errors
