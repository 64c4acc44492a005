from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from prometheus_client import CollectorRegistry

from rules_controller.src.informer import (
    _REPLACE,
    ResourceEventHandler,
    RuleInformer,
    _Delta,
    parse_selector,
    wait_for_cache_sync,
)
from rules_controller.src.kube import RuleClient
from rules_controller.src.metrics import ControllerMetrics
from rules_controller.src.models import API_GROUP, API_VERSION, PLURAL, MimirRule


def manifest(
    name: str,
    namespace: str = "ns",
    resource_version: str = "1",
    labels: dict[str, str] | None = None,
    expr: str = "up == 0",
) -> dict[str, Any]:
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": "MimirRule",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "generation": 1,
            "labels": labels or {},
        },
        "spec": {"groups": [{"name": "g1", "rules": [{"alert": "A", "expr": expr}]}]},
    }


def rule(name: str, **kwargs: Any) -> MimirRule:
    return MimirRule.from_dict(manifest(name, **kwargs))


def list_response(resource_version: str, *items: dict[str, Any]) -> dict[str, Any]:
    return {"metadata": {"resourceVersion": resource_version}, "items": list(items)}


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str | None]] = []

    def handler(self) -> ResourceEventHandler:
        return ResourceEventHandler(
            on_add=lambda obj: self.events.append(("add", obj.key, obj.resource_version)),
            on_update=lambda old, new: self.events.append(
                ("update", new.key, new.resource_version)
            ),
            on_delete=lambda obj: self.events.append(("delete", obj.key, obj.resource_version)),
        )


class RecordingStop(threading.Event):
    """Stop event that records backoff waits instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: list[float] = []

    def wait(self, timeout: float | None = None) -> bool:
        if timeout is not None:
            self.waits.append(timeout)
        return self.is_set()


def make_informer(
    api: Any = None,
    namespace: str = "ns",
    metrics: ControllerMetrics | None = None,
) -> tuple[RuleInformer, RecordingHandler]:
    informer = RuleInformer(
        RuleClient(api or MagicMock(), namespace=namespace),
        metrics=metrics,
        resync_period_seconds=0,
    )
    recorder = RecordingHandler()
    informer.add_event_handler(recorder.handler())
    return informer, recorder


# ---------------------------------------------------------------------------
# Store and notifications
# ---------------------------------------------------------------------------


def test_initial_replace_adds_everything_and_marks_synced() -> None:
    metrics = ControllerMetrics(CollectorRegistry())
    informer, recorder = make_informer(metrics=metrics)

    assert informer.has_synced() is False

    informer._apply(_Delta(kind=_REPLACE, rules=(rule("a"), rule("b"))))

    assert informer.has_synced() is True
    assert recorder.events == [("add", "ns/a", "1"), ("add", "ns/b", "1")]
    assert metrics.cached_rules._value.get() == 2


def test_relist_diff_synthesises_missed_events() -> None:
    informer, recorder = make_informer()
    informer._apply(_Delta(kind=_REPLACE, rules=(rule("a"), rule("b"))))
    recorder.events.clear()

    informer._apply(_Delta(kind=_REPLACE, rules=(rule("b", resource_version="5"), rule("c"))))

    assert recorder.events == [
        ("delete", "ns/a", "1"),
        ("update", "ns/b", "5"),
        ("add", "ns/c", "1"),
    ]
    assert informer.get("ns", "a") is None
    assert sorted(r.name for r in informer.list()) == ["b", "c"]


def test_watch_deltas_update_store() -> None:
    informer, recorder = make_informer()
    informer._apply(_Delta(kind=_REPLACE))
    informer._apply(_Delta(kind="ADDED", rules=(rule("a"),)))
    informer._apply(_Delta(kind="MODIFIED", rules=(rule("a", resource_version="2"),)))
    informer._apply(_Delta(kind="DELETED", rules=(rule("a", resource_version="3"),)))

    assert recorder.events == [
        ("add", "ns/a", "1"),
        ("update", "ns/a", "2"),
        ("delete", "ns/a", "2"),
    ]
    assert informer.list() == []


def test_get_returns_private_copy() -> None:
    informer, _ = make_informer()
    informer._apply(_Delta(kind=_REPLACE, rules=(rule("a"),)))

    snapshot = informer.get("ns", "a")
    assert snapshot is not None
    snapshot.spec.groups.clear()
    snapshot.add_finalizer()

    fresh = informer.get("ns", "a")
    assert fresh is not None
    assert len(fresh.spec.groups) == 1
    assert fresh.finalizers == []


def test_list_filters_by_label_selector() -> None:
    informer, _ = make_informer()
    informer._apply(
        _Delta(
            kind=_REPLACE,
            rules=(
                rule("a", labels={"team": "sre", "env": "prod"}),
                rule("b", labels={"team": "sre"}),
                rule("c", labels={"team": "web"}),
            ),
        )
    )

    assert sorted(r.name for r in informer.list("team=sre")) == ["a", "b"]
    assert [r.name for r in informer.list({"team": "sre", "env": "prod"})] == ["a"]
    assert len(informer.list()) == 3


def test_failing_handler_does_not_block_others() -> None:
    informer, recorder = make_informer()

    def explode(obj: MimirRule) -> None:
        raise RuntimeError("boom")

    informer._handlers.insert(0, ResourceEventHandler(on_add=explode))

    informer._apply(_Delta(kind=_REPLACE, rules=(rule("a"),)))

    assert recorder.events == [("add", "ns/a", "1")]


def test_resync_redelivers_every_object_as_update() -> None:
    informer, recorder = make_informer()
    informer._apply(_Delta(kind=_REPLACE, rules=(rule("a"), rule("b"))))
    recorder.events.clear()

    informer._resync()

    assert sorted(recorder.events) == [("update", "ns/a", "1"), ("update", "ns/b", "1")]


def test_parse_selector() -> None:
    assert parse_selector("app=x, env = prod,bogus") == {"app": "x", "env": "prod"}


# ---------------------------------------------------------------------------
# Watch events
# ---------------------------------------------------------------------------


def test_handle_event_queues_known_types_and_tracks_resource_version() -> None:
    informer, _ = make_informer()

    new_version = informer._handle_event(
        {"type": "MODIFIED", "object": manifest("a", resource_version="9")}, "1"
    )

    assert new_version == "9"
    delta = informer._inbox.get_nowait()
    assert delta.kind == "MODIFIED"
    assert delta.rules[0].key == "ns/a"


def test_handle_event_ignores_bookmarks() -> None:
    informer, _ = make_informer()

    assert informer._handle_event({"type": "BOOKMARK", "object": {}}, "7") == "7"
    assert informer._inbox.empty()


def test_handle_event_raises_on_error_event() -> None:
    informer, _ = make_informer()

    with pytest.raises(ApiException) as exc_info:
        informer._handle_event(
            {"type": "ERROR", "object": {"kind": "Status", "code": 410, "reason": "Expired"}},
            "7",
        )

    assert exc_info.value.status == 410


# ---------------------------------------------------------------------------
# List / watch loop
# ---------------------------------------------------------------------------


def test_run_lists_then_streams_events() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.return_value = list_response("100", manifest("a"))
    informer, recorder = make_informer(api=api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    calls: list[dict[str, Any]] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        calls.append(kwargs)
        if len(calls) == 1:
            return iter([{"type": "MODIFIED", "object": manifest("a", resource_version="101")}])
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(stop)

    assert recorder.events == [("add", "ns/a", "1"), ("update", "ns/a", "101")]
    assert calls[0]["resource_version"] == "100"
    assert calls[0]["namespace"] == "ns"
    assert calls[0]["plural"] == PLURAL
    assert calls[1]["resource_version"] == "101"
    assert mock_watcher.stream.call_args.args[0] == api.list_namespaced_custom_object
    assert mock_watcher.stop.call_count >= 1
    # The processor is gone once run returns.
    assert informer.has_synced() is False


def test_run_watches_cluster_wide_without_namespace() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = list_response("100")
    informer, _ = make_informer(api=api, namespace="")
    stop = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(stop)

    api.list_namespaced_custom_object.assert_not_called()
    assert mock_watcher.stream.call_args.args[0] == api.list_cluster_custom_object
    assert "namespace" not in mock_watcher.stream.call_args.kwargs


def test_run_relists_on_410_and_diffs_store() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.side_effect = [
        list_response("100", manifest("a"), manifest("b")),
        list_response("200", manifest("b", resource_version="150")),
    ]
    informer, recorder = make_informer(api=api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions.append(kwargs.get("resource_version"))
        if len(versions) == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(stop)

    assert versions == ["100", "200"]
    assert ("delete", "ns/a", "1") in recorder.events
    assert ("update", "ns/b", "150") in recorder.events


def test_run_relists_on_410_error_event() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.side_effect = [
        list_response("100"),
        list_response("300"),
    ]
    informer, _ = make_informer(api=api)
    stop = threading.Event()
    mock_watcher = MagicMock()
    versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        versions.append(kwargs.get("resource_version"))
        if len(versions) == 1:
            return iter([{"type": "ERROR", "object": {"code": 410}}])
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(stop)

    assert versions == ["100", "300"]


def test_run_exits_fast_on_startup_rbac_denied() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.side_effect = ApiException(status=403, reason="forbidden")
    informer, _ = make_informer(api=api)
    watch_factory = MagicMock()

    with patch("rules_controller.src.informer.watch.Watch", watch_factory):
        informer.run(threading.Event())

    watch_factory.assert_not_called()
    assert informer.has_synced() is False


def test_run_exits_fast_on_watch_rbac_denied() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.return_value = list_response("100")
    metrics = ControllerMetrics(CollectorRegistry())
    informer, _ = make_informer(api=api, metrics=metrics)
    stop = RecordingStop()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    with patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run(stop)

    assert stop.waits == []
    assert metrics.watch_errors_total._value.get() == 1


def test_run_retries_initial_list_with_jittered_backoff() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.side_effect = [
        ApiException(status=500, reason="temporary"),
        list_response("100"),
    ]
    informer, _ = make_informer(api=api)
    stop = RecordingStop()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher),
        patch("rules_controller.src.informer.random.random", return_value=0.5),
    ):
        informer.run(stop)

    assert api.list_namespaced_custom_object.call_count == 2
    assert stop.waits == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_run_applies_exponential_backoff_on_watch_errors() -> None:
    api = MagicMock()
    api.list_namespaced_custom_object.return_value = list_response("100")
    metrics = ControllerMetrics(CollectorRegistry())
    informer, _ = make_informer(api=api, metrics=metrics)
    stop = RecordingStop()
    mock_watcher = MagicMock()
    call_count = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        stop.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("rules_controller.src.informer.watch.Watch", return_value=mock_watcher),
        patch("rules_controller.src.informer.random.random", return_value=0.5),
    ):
        informer.run(stop)

    assert stop.waits == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]
    assert metrics.watch_errors_total._value.get() == 3
    assert metrics.watch_reconnects_total._value.get() == 3


def test_request_stop_interrupts_active_watch() -> None:
    informer, _ = make_informer()
    watcher = MagicMock()
    informer._active_watcher = watcher

    informer.request_stop()

    watcher.stop.assert_called_once()
    assert informer._should_stop(threading.Event()) is True


# ---------------------------------------------------------------------------
# wait_for_cache_sync
# ---------------------------------------------------------------------------


def test_wait_for_cache_sync_returns_true_once_synced() -> None:
    synced = threading.Event()
    timer = threading.Timer(0.05, synced.set)
    timer.start()

    assert wait_for_cache_sync(
        threading.Event(), synced.is_set, timeout_seconds=2, poll_interval_seconds=0.01
    )


def test_wait_for_cache_sync_times_out() -> None:
    assert not wait_for_cache_sync(
        threading.Event(), lambda: False, timeout_seconds=0.05, poll_interval_seconds=0.01
    )


def test_wait_for_cache_sync_gives_up_on_stop() -> None:
    stop = threading.Event()
    stop.set()

    assert not wait_for_cache_sync(stop, lambda: False)
