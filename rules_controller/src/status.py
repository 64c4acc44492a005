from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from rules_controller.src.models import STATUS_FALSE, STATUS_TRUE, Condition, MimirRule

LOGGER = logging.getLogger(__name__)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RuleWriter(Protocol):
    def update(self, rule: MimirRule) -> MimirRule: ...


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


class StatusReporter:
    """Mutates a resource's condition list and writes the resource back.

    The reporter works on the reconciler's private copy of the resource.
    ``persist`` goes through the same API the watch cache observes, so the
    write comes back later as an update event.
    """

    def __init__(
        self,
        rule: MimirRule,
        writer: RuleWriter,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.rule = rule
        self.writer = writer
        self.now_fn = now_fn

    def set_condition(
        self,
        condition_type: str,
        observed_generation: int,
        ok: bool,
        reason: str,
        message: str,
    ) -> Condition:
        """Replace the condition of *condition_type*.

        ``last_transition_time`` only moves when the status flips. A condition
        that already reports a newer generation is kept as is.
        """
        conditions = self.rule.status.conditions
        status = STATUS_TRUE if ok else STATUS_FALSE
        existing = find_condition(conditions, condition_type)

        if existing is not None and existing.observed_generation > observed_generation:
            LOGGER.warning(
                "Refusing to regress %s condition of %s from generation %d to %d",
                condition_type,
                self.rule.key,
                existing.observed_generation,
                observed_generation,
            )
            return existing

        transition_time = self.now_fn()
        if existing is not None and existing.status == status and existing.last_transition_time:
            transition_time = existing.last_transition_time

        condition = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition_time,
            observed_generation=observed_generation,
        )
        if existing is None:
            conditions.append(condition)
        else:
            conditions[conditions.index(existing)] = condition
        return condition

    def remove_condition(self, condition_type: str) -> bool:
        conditions = self.rule.status.conditions
        remaining = [c for c in conditions if c.type != condition_type]
        changed = len(remaining) != len(conditions)
        self.rule.status.conditions = remaining
        return changed

    def persist(self) -> MimirRule:
        """Write the full resource (spec unchanged, status/finalizers updated)."""
        return self.writer.update(self.rule)
