from __future__ import annotations

import logging
import threading

from rules_controller.src.errors import CacheSyncError
from rules_controller.src.informer import ResourceEventHandler, RuleInformer, wait_for_cache_sync
from rules_controller.src.metrics import ControllerMetrics
from rules_controller.src.models import MimirRule
from rules_controller.src.reconciler import Reconciler
from rules_controller.src.workqueue import RateLimitingQueue


class RulesController:
    """Wires the watch cache, the work queue and a pool of reconcile workers.

    Cache notifications only ever enqueue the resource key; deduplication and
    backoff are the queue's job. Workers are started by :meth:`run`, which the
    supervisor calls once this replica leads.
    """

    def __init__(
        self,
        informer: RuleInformer,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        metrics: ControllerMetrics | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.informer = informer
        self.queue = queue
        self.reconciler = reconciler
        self.metrics = metrics or ControllerMetrics()
        self.logger = logger or logging.getLogger(__name__)

        informer.add_event_handler(
            ResourceEventHandler(
                on_add=self._enqueue,
                on_update=lambda _old, new: self._enqueue(new),
                on_delete=self._enqueue,
            )
        )

    def _enqueue(self, rule: MimirRule) -> None:
        self.queue.add(rule.key)

    def run(
        self,
        stop_event: threading.Event,
        workers: int = 2,
        cache_sync_timeout_seconds: float | None = None,
    ) -> None:
        """Wait for the cache, run *workers* threads until *stop_event* fires.

        Raises :class:`CacheSyncError` when the cache does not sync in time;
        the caller treats that as fatal.
        """
        self.logger.info("Waiting for rule cache to sync")
        if not wait_for_cache_sync(
            stop_event, self.informer.has_synced, timeout_seconds=cache_sync_timeout_seconds
        ):
            if stop_event.is_set():
                self.queue.shut_down()
                return
            raise CacheSyncError("timed out waiting for the rule cache to sync")

        self.logger.info("Starting %d reconcile worker(s)", workers)
        threads = [
            threading.Thread(target=self._worker, name=f"reconcile-worker-{index}", daemon=True)
            for index in range(workers)
        ]
        for thread in threads:
            thread.start()

        stop_event.wait()
        self.logger.info("Shutting down reconcile workers")
        self.queue.shut_down()
        for thread in threads:
            thread.join(timeout=10)

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Process one key. Returns False once the queue is shutting down."""
        key, shutting_down = self.queue.get()
        if shutting_down:
            return False

        try:
            result = self.reconciler.sync(str(key))
        except Exception:
            self.logger.exception("Unexpected error while syncing %s", key)
            self.queue.add_rate_limited(key)
            self.metrics.requeues_total.inc()
            return True
        finally:
            self.queue.done(key)

        if result.requeue:
            self.logger.warning(
                "Requeuing %s after %d attempt(s): %s",
                key,
                self.queue.num_requeues(key) + 1,
                result.error or result.persist_error,
            )
            self.queue.add_rate_limited(key)
            self.metrics.requeues_total.inc()
        else:
            self.queue.forget(key)
        return True
