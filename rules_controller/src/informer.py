from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from rules_controller.src.kube import RuleClient
from rules_controller.src.metrics import ControllerMetrics
from rules_controller.src.models import MimirRule, meta_namespace_key


@dataclass(frozen=True)
class ResourceEventHandler:
    """Callbacks fired by the cache after it has applied a change.

    Handlers run one at a time on the cache's processing thread and receive
    private copies of the objects. They must not block.
    """

    on_add: Callable[[MimirRule], None] | None = None
    on_update: Callable[[MimirRule, MimirRule], None] | None = None
    on_delete: Callable[[MimirRule], None] | None = None


@dataclass(frozen=True)
class _Delta:
    kind: str
    rules: tuple[MimirRule, ...] = ()


_REPLACE = "REPLACE"
_STOP = "STOP"
_MAX_BACKOFF_SECONDS = 30


def _change(old: MimirRule | None, new: MimirRule) -> tuple[str, MimirRule | None, MimirRule]:
    return ("add", None, new) if old is None else ("update", old, new)


def _backoff(stop: threading.Event, seconds: int) -> int:
    """Wait about *seconds* (jittered by +-50%) unless stopped; return the next backoff."""
    stop.wait(timeout=seconds * (0.5 + random.random()))  # noqa: S311
    return min(seconds * 2, _MAX_BACKOFF_SECONDS)


def parse_selector(selector: str) -> dict[str, str]:
    """Parse a Kubernetes label selector string (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            result[key.strip()] = value.strip()
    return result


class RuleInformer:
    """Eventually-consistent local mirror of ``MimirRule`` objects.

    Two threads cooperate:

    * the reflector (the caller of :meth:`run`) lists, then watches the API
      and only ever pushes deltas into ``_inbox``;
    * the processor owns ``_items``: it applies deltas strictly in arrival
      order and fans out notifications to the registered handlers.

    Readers never see the live objects: :meth:`get` and :meth:`list` return
    deep copies taken under ``_lock``.

    ``ready`` is set once the processor has applied the first full listing,
    which is what :meth:`has_synced` reports.
    """

    def __init__(
        self,
        rule_client: RuleClient,
        metrics: ControllerMetrics | None = None,
        resync_period_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.rule_client = rule_client
        self.metrics = metrics
        self.resync_period_seconds = resync_period_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._items: dict[str, MimirRule] = {}
        self._lock = threading.Lock()
        self._handlers: list[ResourceEventHandler] = []
        self._inbox: queue.Queue[_Delta] = queue.Queue()

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    # -- read side -------------------------------------------------------

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self.ready.is_set()

    def get(self, namespace: str, name: str) -> MimirRule | None:
        with self._lock:
            rule = self._items.get(meta_namespace_key(namespace, name))
            return rule.copy() if rule is not None else None

    def list(self, label_selector: str | dict[str, str] | None = None) -> list[MimirRule]:
        if isinstance(label_selector, str):
            wanted = parse_selector(label_selector)
        else:
            wanted = dict(label_selector or {})
        with self._lock:
            snapshot = [rule.copy() for rule in self._items.values()]
        if not wanted:
            return snapshot
        return [
            rule
            for rule in snapshot
            if all(rule.labels.get(k) == v for k, v in wanted.items())
        ]

    # -- processing side -------------------------------------------------

    def _notify(self, kind: str, old: MimirRule | None, new: MimirRule) -> None:
        for handler in self._handlers:
            try:
                if kind == "add" and handler.on_add is not None:
                    handler.on_add(new.copy())
                elif kind == "update" and handler.on_update is not None:
                    handler.on_update((old or new).copy(), new.copy())
                elif kind == "delete" and handler.on_delete is not None:
                    handler.on_delete(new.copy())
            except Exception:
                self.logger.exception("Event handler failed for %s event on %s", kind, new.key)

    def _apply(self, delta: _Delta) -> None:
        notifications: list[tuple[str, MimirRule | None, MimirRule]] = []
        with self._lock:
            if delta.kind == _REPLACE:
                fresh = {rule.key: rule for rule in delta.rules}
                for key, old in self._items.items():
                    if key not in fresh:
                        notifications.append(("delete", None, old))
                for key, rule in fresh.items():
                    old = self._items.get(key)
                    notifications.append(_change(old, rule))
                self._items = fresh
            else:
                for rule in delta.rules:
                    old = self._items.get(rule.key)
                    if delta.kind == "DELETED":
                        self._items.pop(rule.key, None)
                        notifications.append(("delete", None, old or rule))
                    else:
                        self._items[rule.key] = rule
                        notifications.append(_change(old, rule))
            size = len(self._items)

        if self.metrics is not None:
            self.metrics.cached_rules.set(size)
        for kind, old, new in notifications:
            self._notify(kind, old, new)

        if delta.kind == _REPLACE and not self.ready.is_set():
            self.ready.set()
            self.logger.info("Rule cache synced with %d object(s)", size)

    def _resync(self) -> None:
        with self._lock:
            snapshot = list(self._items.values())
        for rule in snapshot:
            self._notify("update", rule, rule)

    def _process_loop(self) -> None:
        next_resync = time.monotonic() + self.resync_period_seconds
        while True:
            timeout: float | None = None
            if self.resync_period_seconds > 0:
                timeout = max(0.0, next_resync - time.monotonic())
            try:
                delta = self._inbox.get(timeout=timeout)
            except queue.Empty:
                if self.ready.is_set():
                    self._resync()
                next_resync = time.monotonic() + self.resync_period_seconds
                continue
            if delta.kind == _STOP:
                return
            self._apply(delta)

    # -- reflector -------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _relist(self) -> str | None:
        rules, resource_version = self.rule_client.list_rules()
        self._inbox.put(_Delta(kind=_REPLACE, rules=tuple(rules)))
        return resource_version

    def _access_denied(self, exc: ApiException, during: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            exc.status,
        )
        return True

    def _record_watch_error(self) -> None:
        if self.metrics is not None:
            self.metrics.watch_errors_total.inc()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch MimirRules until shutdown.

        1. Retries the initial list with exponential backoff and jitter so a
           slow API server at startup does not crash-loop the controller.
        2. Opens a watch from the list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists; the processor diffs the new listing
           against the cache and emits the missed add/update/delete events.
        4. ``401``/``403`` stop the cache for good: it either never becomes
           synced (fatal for the controller) or stops receiving updates.
        5. Other errors back off from 1 s doubling to 30 s.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        processor = threading.Thread(target=self._process_loop, name="rule-cache", daemon=True)
        processor.start()
        try:
            self._reflect(stop)
        finally:
            self._inbox.put(_Delta(kind=_STOP))
            processor.join(timeout=5)
            self.ready.clear()

    def _reflect(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.logger.info("Starting rule watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial MimirRule list failed")
                self._record_watch_error()
            except Exception:
                self.logger.exception("Unexpected error during initial MimirRule list")
                self._record_watch_error()

            startup_backoff_seconds = _backoff(stop, startup_backoff_seconds)

        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False
        while not self._should_stop(stop):
            if needs_relist:
                try:
                    resource_version = self._relist()
                    needs_relist = False
                except ApiException as exc:
                    if self._access_denied(exc, "re-list"):
                        return
                    self.logger.exception("Failed to re-list MimirRules")
                    self._record_watch_error()
                except Exception:
                    self.logger.exception("Unexpected error while re-listing MimirRules")
                    self._record_watch_error()
                if needs_relist:
                    backoff_seconds = _backoff(stop, backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0 and self.metrics is not None:
                    self.metrics.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.rule_client.list_function(),
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **self.rule_client.list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    resource_version = self._handle_event(event, resource_version)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the API server compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Rule watch resource version expired, re-listing")
                    needs_relist = True
                    continue

                if self._access_denied(exc, "watch"):
                    self._record_watch_error()
                    return

                self.logger.exception("Kubernetes API watch error")
                self._record_watch_error()
                backoff_seconds = _backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error")
                self._record_watch_error()
                backoff_seconds = _backoff(stop, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def _handle_event(self, event: dict[str, Any], resource_version: str | None) -> str | None:
        """Queue one watch event for the processor and return the newest resourceVersion."""
        event_type = str(event.get("type", ""))
        obj = event.get("object")
        if event_type == "ERROR":
            raw = event.get("raw_object") or obj or {}
            code = raw.get("code") if isinstance(raw, dict) else None
            raise ApiException(status=code or 500, reason=str(raw))
        if event_type not in {"ADDED", "MODIFIED", "DELETED"} or not isinstance(obj, dict):
            return resource_version

        rule = MimirRule.from_dict(obj)
        if not rule.name:
            return resource_version
        self._inbox.put(_Delta(kind=event_type, rules=(rule,)))
        return rule.resource_version or resource_version


def wait_for_cache_sync(
    stop_event: threading.Event,
    *synced: Callable[[], bool],
    timeout_seconds: float | None = None,
    poll_interval_seconds: float = 0.1,
) -> bool:
    """Block until every ``synced`` callable returns True.

    Returns False when *stop_event* fires or *timeout_seconds* elapses first.
    """
    deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
    while not all(fn() for fn in synced):
        if stop_event.is_set():
            return False
        if deadline is not None and time.monotonic() >= deadline:
            return False
        stop_event.wait(timeout=poll_interval_seconds)
    return True
