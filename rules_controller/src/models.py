from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from rules_controller.src.errors import InvalidKeyError

API_GROUP = "rulescontroller.k8s.healthjoy.com"
API_VERSION = "v1alpha1"
KIND = "MimirRule"
PLURAL = "mimirrules"

RULE_FINALIZER = "mimirrule.finalizers.k8s.healthjoy.com"

CONDITION_READY = "Ready"
CONDITION_FAILED = "Failed"

STATUS_TRUE = "True"
STATUS_FALSE = "False"


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _str_map(value: Any) -> dict[str, str]:
    """Coerce a manifest label/annotation map into ``dict[str, str]``."""
    if not isinstance(value, Mapping):
        return {}
    return {
        str(k): ("" if v is None else str(v))
        for k, v in value.items()
    }


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


@dataclass
class Rule:
    """A recording (``record``) or alerting (``alert``) rule."""

    record: str = ""
    alert: str = ""
    expr: str = ""
    for_: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Rule:
        data = _as_dict(data)
        # expr is an IntOrString in the CRD schema.
        raw_expr = data.get("expr")
        return cls(
            record=str(data.get("record") or ""),
            alert=str(data.get("alert") or ""),
            expr="" if raw_expr is None else str(raw_expr),
            for_=str(data.get("for") or ""),
            labels=_str_map(data.get("labels")),
            annotations=_str_map(data.get("annotations")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"expr": self.expr}
        if self.record:
            out["record"] = self.record
        if self.alert:
            out["alert"] = self.alert
        if self.for_:
            out["for"] = self.for_
        if self.labels:
            out["labels"] = dict(self.labels)
        if self.annotations:
            out["annotations"] = dict(self.annotations)
        return out


@dataclass
class RuleGroup:
    """A named, ordered list of rules evaluated together by the ruler."""

    name: str
    interval: str = ""
    evaluation_delay: str = ""
    limit: int = 0
    source_tenants: list[str] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> RuleGroup:
        data = _as_dict(data)
        raw_rules = data.get("rules")
        rules = [Rule.from_dict(r) for r in raw_rules] if isinstance(raw_rules, list) else []
        try:
            limit = int(data.get("limit") or 0)
        except (TypeError, ValueError):
            limit = 0
        return cls(
            name=str(data.get("name") or ""),
            interval=str(data.get("interval") or ""),
            evaluation_delay=str(data.get("evaluation_delay") or ""),
            limit=limit,
            source_tenants=_str_list(data.get("source_tenants")),
            rules=rules,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "rules": [rule.to_dict() for rule in self.rules],
        }
        if self.interval:
            out["interval"] = self.interval
        if self.evaluation_delay:
            out["evaluation_delay"] = self.evaluation_delay
        if self.limit:
            out["limit"] = self.limit
        if self.source_tenants:
            out["source_tenants"] = list(self.source_tenants)
        return out


@dataclass
class RuleSpec:
    groups: list[RuleGroup] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> RuleSpec:
        raw_groups = _as_dict(data).get("groups")
        if not isinstance(raw_groups, list):
            return cls()
        return cls(groups=[RuleGroup.from_dict(g) for g in raw_groups])

    def to_dict(self) -> dict[str, Any]:
        return {"groups": [group.to_dict() for group in self.groups]}


@dataclass(frozen=True)
class Condition:
    """A ``metav1.Condition``-shaped status entry."""

    type: str
    status: str
    reason: str
    message: str
    last_transition_time: str
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Condition:
        data = _as_dict(data)
        try:
            observed = int(data.get("observedGeneration") or 0)
        except (TypeError, ValueError):
            observed = 0
        return cls(
            type=str(data.get("type") or ""),
            status=str(data.get("status") or "Unknown"),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
            last_transition_time=str(data.get("lastTransitionTime") or ""),
            observed_generation=observed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
            "observedGeneration": self.observed_generation,
        }


@dataclass
class RuleStatus:
    conditions: list[Condition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> RuleStatus:
        raw = _as_dict(data).get("conditions")
        if not isinstance(raw, list):
            return cls()
        return cls(conditions=[Condition.from_dict(c) for c in raw])

    def to_dict(self) -> dict[str, Any]:
        return {"conditions": [c.to_dict() for c in self.conditions]}


@dataclass
class MimirRule:
    """The ``MimirRule`` custom resource.

    ``raw`` keeps the object exactly as it was read from the API so fields the
    controller does not manage (uid, labels, managedFields, ...) survive a
    full-object replace.
    """

    namespace: str
    name: str
    generation: int = 0
    resource_version: str | None = None
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None
    spec: RuleSpec = field(default_factory=RuleSpec)
    status: RuleStatus = field(default_factory=RuleStatus)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def key(self) -> str:
        return meta_namespace_key(self.namespace, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return _str_map(_as_dict(self.raw.get("metadata")).get("labels"))

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, finalizer: str = RULE_FINALIZER) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str = RULE_FINALIZER) -> bool:
        """Add *finalizer* if missing. Returns True when the list changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str = RULE_FINALIZER) -> bool:
        """Remove every occurrence of *finalizer*. Returns True when the list changed."""
        remaining = [f for f in self.finalizers if f != finalizer]
        changed = len(remaining) != len(self.finalizers)
        self.finalizers = remaining
        return changed

    @classmethod
    def from_dict(cls, obj: Any) -> MimirRule:
        raw = copy.deepcopy(_as_dict(obj))
        metadata = _as_dict(raw.get("metadata"))
        try:
            generation = int(metadata.get("generation") or 0)
        except (TypeError, ValueError):
            generation = 0
        resource_version = metadata.get("resourceVersion")
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            generation=generation,
            resource_version=str(resource_version) if resource_version else None,
            finalizers=_str_list(metadata.get("finalizers")),
            deletion_timestamp=metadata.get("deletionTimestamp") or None,
            spec=RuleSpec.from_dict(raw.get("spec")),
            status=RuleStatus.from_dict(raw.get("status")),
            raw=raw,
        )

    def to_dict(self) -> dict[str, Any]:
        body = copy.deepcopy(self.raw)
        body["apiVersion"] = f"{API_GROUP}/{API_VERSION}"
        body["kind"] = KIND
        metadata = _as_dict(body.get("metadata"))
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        if self.generation:
            metadata["generation"] = self.generation
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        metadata["finalizers"] = list(self.finalizers)
        body["metadata"] = metadata
        body["spec"] = self.spec.to_dict()
        body["status"] = self.status.to_dict()
        return body

    def copy(self) -> MimirRule:
        return copy.deepcopy(self)


def meta_namespace_key(namespace: str, name: str) -> str:
    """Return the work queue key for a resource (``namespace/name``)."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key. Cluster-scoped keys have no namespace."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")
