from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from rules_controller.src.metrics import ControllerMetrics

LOGGER = logging.getLogger(__name__)


class LeaderState(Enum):
    STANDBY = "standby"
    LEADING = "leading"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LeaderEvent:
    """Published whenever the elector's state or the observed lease holder changes."""

    state: LeaderState
    holder_identity: str | None


class LeaseLeaderElector:
    """Single-active-replica gate backed by a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector reads the Lease and then:

    * creates it, holding it, when it does not exist yet;
    * renews it when this replica is the holder;
    * takes it over once the current holder has not renewed for
      ``leaseDurationSeconds``;
    * otherwise stays on standby.

    Writes are conditional (create fails when the object exists, replace
    fails on a stale ``resourceVersion``); a ``409`` simply loses this round.

    State changes are published as :class:`LeaderEvent` values on ``events``
    rather than through callbacks. A leader that cannot renew within
    ``renew_deadline_seconds`` publishes ``STOPPED`` and :meth:`run` returns
    for good. A stop request while leading releases the Lease first.

    Lease timestamps come from ``clock``; the renew deadline is measured on
    ``time.monotonic``.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        metrics: ControllerMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.metrics = metrics or ControllerMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.events: queue.Queue[LeaderEvent] = queue.Queue()
        self._state = LeaderState.STANDBY
        self._observed_holder: str | None = None

    @property
    def state(self) -> LeaderState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self._state is LeaderState.LEADING

    @property
    def observed_holder(self) -> str | None:
        return self._observed_holder

    def _publish(self) -> None:
        self.events.put(LeaderEvent(state=self._state, holder_identity=self._observed_holder))

    def _observe_holder(self, holder: str) -> None:
        if holder != self._observed_holder:
            self._observed_holder = holder
            self._publish()

    # -- lease store ---------------------------------------------------------

    def _read(self) -> V1Lease | None:
        """Return the Lease, or None when it has not been created yet."""
        try:
            return self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def _write(self, verb: str, write: Callable[[], object]) -> bool:
        try:
            write()
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lost %s race on lease %s", verb, self.lease_name)
            else:
                LOGGER.warning("Could not %s lease %s: %s", verb, self.lease_name, exc.reason)
            return False
        self._observe_holder(self.identity)
        return True

    def _expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def _claim(self, spec: V1LeaseSpec | None, now: datetime) -> V1LeaseSpec:
        """Rewrite *spec* with this replica as holder.

        ``acquireTime`` only moves when the holder changes; taking the lease
        from another replica counts one ``leaseTransitions``.
        """
        spec = spec or V1LeaseSpec()
        previous = spec.holder_identity
        if previous != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
            if previous and previous != self.identity:
                spec.lease_transitions = (spec.lease_transitions or 0) + 1
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        return spec

    def _try_acquire_or_renew(self) -> bool:
        """Run one read-then-write round against the Lease. True when we hold it afterwards."""
        now = self._clock()
        try:
            lease = self._read()
        except ApiException as exc:
            LOGGER.warning("Could not read lease %s: %s", self.lease_name, exc.reason)
            return False

        if lease is None:
            body = V1Lease(
                metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
                spec=self._claim(None, now),
            )
            return self._write(
                "create",
                lambda: self.coordination_api.create_namespaced_lease(
                    namespace=self.namespace, body=body
                ),
            )

        holder = lease.spec.holder_identity if lease.spec else None
        if holder and holder != self.identity:
            self._observe_holder(holder)
            if not self._expired(lease.spec, now):
                return False
            LOGGER.info("Lease %s held by %s has expired, taking over", self.lease_name, holder)

        lease.spec = self._claim(lease.spec, now)
        return self._write(
            "update",
            lambda: self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            ),
        )

    def _release_lease(self) -> None:
        """Clear ``holderIdentity`` so a standby can take over without waiting for expiry."""
        try:
            lease = self._read()
            if lease is None or lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except Exception:
            # Shutdown continues; the lease simply expires.
            LOGGER.warning("Could not release lease %s", self.lease_name, exc_info=True)
            return
        LOGGER.info("Released lease %s", self.lease_name)

    # -- election loop -------------------------------------------------------

    def _transition(self, state: LeaderState, transition: str) -> None:
        self._state = state
        self.metrics.leader_state.set(1 if state is LeaderState.LEADING else 0)
        self.metrics.leader_transitions_total.labels(transition=transition).inc()
        self._publish()

    def _attempt(self) -> bool:
        try:
            return self._try_acquire_or_renew()
        except Exception:
            LOGGER.exception("Leader election round failed")
            return False

    def _within_renew_deadline(self, last_renewal: float) -> bool:
        elapsed = time.monotonic() - last_renewal
        if elapsed < self.renew_deadline_seconds:
            LOGGER.warning(
                "Lease renewal failed, still leading for up to %ss (%.2fs since last renewal)",
                self.renew_deadline_seconds,
                elapsed,
            )
            return True
        LOGGER.error(
            "Lease %s not renewed for %.2fs, giving up leadership", self.lease_name, elapsed
        )
        return False

    def run(self, stop_event: threading.Event) -> None:
        """Contend for the lease until leadership is lost or *stop_event* fires."""
        LOGGER.info(
            "Contending for lease %s/%s as %s", self.namespace, self.lease_name, self.identity
        )
        started = time.monotonic()
        last_renewal = started
        self.metrics.leader_state.set(0)

        while not stop_event.is_set():
            held = self._attempt()
            if self.is_leader:
                if held:
                    last_renewal = time.monotonic()
                elif not self._within_renew_deadline(last_renewal):
                    self._transition(LeaderState.STOPPED, "lost")
                    return
            elif held:
                last_renewal = time.monotonic()
                self.metrics.leader_acquire_latency_seconds.observe(last_renewal - started)
                LOGGER.info("Became leader of lease %s", self.lease_name)
                self._transition(LeaderState.LEADING, "acquired")
            stop_event.wait(timeout=self.retry_period_seconds)

        if self.is_leader:
            self._release_lease()
            self._transition(LeaderState.STOPPED, "released")
        else:
            self._state = LeaderState.STOPPED
            self._publish()
