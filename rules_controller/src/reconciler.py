from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from kubernetes.client import ApiException

from rules_controller.src.errors import (
    InvalidKeyError,
    LintError,
    PersistError,
    RemoteApplyError,
    RuleValidationError,
    TranslationError,
)
from rules_controller.src.lint import ExpressionLinter, lint_rule_namespace
from rules_controller.src.metrics import ControllerMetrics
from rules_controller.src.mimir import MimirClientError, RuleGroupClient
from rules_controller.src.models import (
    CONDITION_FAILED,
    CONDITION_READY,
    STATUS_TRUE,
    MimirRule,
    split_meta_namespace_key,
)
from rules_controller.src.rules import (
    RuleNamespace,
    build_rule_namespace,
    rule_namespace_key,
    validate_rule_namespace,
)
from rules_controller.src.status import RuleWriter, StatusReporter, find_condition, utc_now_rfc3339

RuleLister = Callable[[str, str], MimirRule | None]


class SyncAction(Enum):
    INVALID_KEY = "invalid_key"
    NOT_FOUND = "not_found"
    UP_TO_DATE = "up_to_date"
    DELETION_SKIPPED = "deletion_skipped"
    CLEANED_UP = "cleaned_up"
    FINALIZER_ADDED = "finalizer_added"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one :meth:`Reconciler.sync` call.

    ``error`` is the reconcile failure (translation, validation, lint or a
    remote call); ``persist_error`` is a failed write-back of the resource.
    Both are kept apart so callers can tell a rejected spec from a status
    conflict.
    """

    key: str
    action: SyncAction
    error: Exception | None = None
    persist_error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.persist_error is None

    @property
    def requeue(self) -> bool:
        """Whether the key should be retried with backoff. Malformed keys never are."""
        return not self.ok and self.action is not SyncAction.INVALID_KEY


class Reconciler:
    """Converges the Mimir ruler with one ``MimirRule`` per call.

    The reconciler reads from the watch cache (``lister``), talks to the ruler
    through ``remote`` and writes finalizers and conditions back through
    ``writer``. Each call works on a private copy of the cached object.

    Sync steps for a key:

    1. Malformed key: logged, not retried. Missing from the cache: already
       deleted, nothing to do.
    2. Not deleting and ``Ready=True`` for the current generation: skip.
    3. Deleting: delete every group from the ruler, then drop the finalizer.
       The first failing delete aborts and leaves the resource untouched.
    4. Finalizer missing: add it and persist; the write echoes back as a new
       event which performs the actual apply.
    5. Translate, validate and lint ``spec.groups``. Failure sets ``Failed``.
    6. Create every group in spec order. The first failure sets ``Failed``;
       groups applied before it stay applied.
    7. Success sets ``Ready`` and clears ``Failed``.
    8. Steps 4 to 7 always end with a persist of the resource.
    """

    def __init__(
        self,
        cluster_name: str,
        lister: RuleLister,
        writer: RuleWriter,
        remote: RuleGroupClient,
        linter: ExpressionLinter = lint_rule_namespace,
        metrics: ControllerMetrics | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster_name = cluster_name
        self.lister = lister
        self.writer = writer
        self.remote = remote
        self.linter = linter
        self.metrics = metrics or ControllerMetrics()
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def is_up_to_date(rule: MimirRule) -> bool:
        if rule.is_deleting:
            return False
        ready = find_condition(rule.status.conditions, CONDITION_READY)
        return (
            ready is not None
            and ready.status == STATUS_TRUE
            and ready.observed_generation >= rule.generation
        )

    def sync(self, key: str) -> SyncResult:
        try:
            namespace, name = split_meta_namespace_key(key)
        except InvalidKeyError as exc:
            self.logger.error("Dropping malformed work queue key %r: %s", key, exc)
            return SyncResult(key=key, action=SyncAction.INVALID_KEY, error=exc)

        rule = self.lister(namespace, name)
        if rule is None:
            self.logger.info("MimirRule %s no longer exists", key)
            return SyncResult(key=key, action=SyncAction.NOT_FOUND)

        if self.is_up_to_date(rule):
            self.logger.debug("MimirRule %s is up to date at generation %d", key, rule.generation)
            return SyncResult(key=key, action=SyncAction.UP_TO_DATE)

        started = time.monotonic()
        failed = True
        try:
            if rule.is_deleting:
                result = self._finalize(key, rule)
            else:
                result = self._reconcile(key, rule)
            failed = not result.ok
            return result
        finally:
            self.metrics.observe_sync(time.monotonic() - started, failed=failed)

    def _namespace_key(self, rule: MimirRule) -> str:
        return rule_namespace_key(self.cluster_name, rule.namespace, rule.name)

    def _persist(self, reporter: StatusReporter) -> PersistError | None:
        try:
            reporter.persist()
        except ApiException as exc:
            self.logger.warning(
                "Failed to update MimirRule %s (status=%s): %s",
                reporter.rule.key,
                exc.status,
                exc.reason,
            )
            return PersistError(f"error updating {reporter.rule.key}: {exc.status} {exc.reason}")
        except Exception as exc:
            # Transport failures (urllib3, sockets) never reach ApiException.
            self.logger.warning("Failed to update MimirRule %s: %s", reporter.rule.key, exc)
            return PersistError(f"error updating {reporter.rule.key}: {exc}")
        return None

    def _finalize(self, key: str, rule: MimirRule) -> SyncResult:
        if not rule.has_finalizer():
            self.logger.info("MimirRule %s deleted", key)
            return SyncResult(key=key, action=SyncAction.DELETION_SKIPPED)

        namespace_key = self._namespace_key(rule)
        for group in rule.spec.groups:
            try:
                self.remote.delete_rule_group(namespace_key, group.name)
            except MimirClientError as exc:
                self.logger.error(
                    "Failed to delete rule group %s of %s: %s", group.name, key, exc
                )
                error = RemoteApplyError(f"error deleting rule group {group.name!r}: {exc}")
                return SyncResult(key=key, action=SyncAction.FAILED, error=error)

        rule.remove_finalizer()
        persist_error = self._persist(StatusReporter(rule, self.writer, self.now_fn))
        if persist_error is None:
            self.logger.info(
                "MimirRule %s deleted, removed %d rule group(s)", key, len(rule.spec.groups)
            )
        return SyncResult(key=key, action=SyncAction.CLEANED_UP, persist_error=persist_error)

    def _prepare(self, rule: MimirRule) -> RuleNamespace:
        rule_namespace = build_rule_namespace(rule.spec, self._namespace_key(rule))
        problems = validate_rule_namespace(rule_namespace)
        if problems:
            raise RuleValidationError(problems)
        self.linter(rule_namespace)
        return rule_namespace

    def _reconcile(self, key: str, rule: MimirRule) -> SyncResult:
        reporter = StatusReporter(rule, self.writer, self.now_fn)

        if rule.add_finalizer():
            self.logger.info("Added finalizer to MimirRule %s", key)
            persist_error = self._persist(reporter)
            return SyncResult(
                key=key, action=SyncAction.FINALIZER_ADDED, persist_error=persist_error
            )

        error = self._apply(key, rule)
        if error is None:
            reporter.set_condition(
                CONDITION_READY, rule.generation, True, "Success", "Rule is ready"
            )
            reporter.remove_condition(CONDITION_FAILED)
            action = SyncAction.APPLIED
        else:
            reason = {
                TranslationError: "TranslationFailed",
                RuleValidationError: "ValidationFailed",
                LintError: "LintFailed",
            }.get(type(error), "ApplyFailed")
            reporter.set_condition(CONDITION_FAILED, rule.generation, True, reason, str(error))
            reporter.set_condition(CONDITION_READY, rule.generation, False, reason, str(error))
            action = SyncAction.FAILED

        persist_error = self._persist(reporter)
        return SyncResult(key=key, action=action, error=error, persist_error=persist_error)

    def _apply(self, key: str, rule: MimirRule) -> Exception | None:
        try:
            rule_namespace = self._prepare(rule)
        except (TranslationError, RuleValidationError, LintError) as exc:
            self.logger.warning("MimirRule %s has invalid rules: %s", key, exc)
            return exc

        for group in rule_namespace.groups:
            try:
                self.remote.create_rule_group(rule_namespace.namespace, group)
            except MimirClientError as exc:
                self.logger.error("Failed to create rule group %s of %s: %s", group.name, key, exc)
                return RemoteApplyError(f"error creating rule group {group.name!r}: {exc}")

        self.logger.info(
            "Applied %d rule group(s) of %s to %s",
            len(rule_namespace.groups),
            key,
            rule_namespace.namespace,
        )
        return None
