from __future__ import annotations

import json
import logging

from fleet.app import observability as obs


class _DummyCounter:
    def __init__(self) -> None:
        self.calls: list[tuple[int, dict[str, object] | None]] = []

    def add(self, value: int, *, attributes: dict[str, object] | None = None) -> None:
        self.calls.append((value, attributes))


class _DummyHistogram:
    def __init__(self) -> None:
        self.calls: list[tuple[float, dict[str, object] | None]] = []

    def record(self, value: float, *, attributes: dict[str, object] | None = None) -> None:
        self.calls.append((value, attributes))


def _with_runtime(runtime: obs._OtelRuntime, fn) -> None:
    prev = obs._otel_runtime
    obs._otel_runtime = runtime
    try:
        fn()
    finally:
        obs._otel_runtime = prev


def test_http_request_metric_records_route_method_status() -> None:
    counter = _DummyCounter()
    histogram = _DummyHistogram()
    runtime = obs._OtelRuntime(http_requests_total=counter, http_request_duration_ms=histogram)

    _with_runtime(
        runtime,
        lambda: obs.record_http_request_metric(
            method="post",
            route="/api/v1/heartbeat",
            status_code=200,
            duration_ms=12.5,
        ),
    )

    attrs = {"http.method": "POST", "http.route": "/api/v1/heartbeat", "http.status_code": 200}
    assert counter.calls == [(1, attrs)]
    assert histogram.calls == [(12.5, attrs)]


def test_heartbeat_and_command_metrics() -> None:
    heartbeats = _DummyCounter()
    transitions = _DummyCounter()
    runtime = obs._OtelRuntime(heartbeats_total=heartbeats, command_transitions_total=transitions)

    def _emit() -> None:
        obs.record_heartbeat_metric(previous_state="offline")
        obs.record_command_transition_metric(transition="confirmed")
        obs.record_command_transition_metric(transition="cancelled", count=3)
        # Nothing cancelled; nothing recorded.
        obs.record_command_transition_metric(transition="cancelled", count=0)

    _with_runtime(runtime, _emit)

    assert heartbeats.calls == [(1, {"previous_state": "offline"})]
    assert transitions.calls == [
        (1, {"transition": "confirmed"}),
        (3, {"transition": "cancelled"}),
    ]


def test_liveness_sweep_metric_records_outcome() -> None:
    histogram = _DummyHistogram()
    runtime = obs._OtelRuntime(liveness_sweep_duration_ms=histogram)

    _with_runtime(runtime, lambda: obs.record_liveness_sweep_metric(duration_ms=40.0, success=True, flipped=2))

    assert histogram.calls == [(40.0, {"success": True, "flipped": 2})]


def test_metrics_are_noops_without_runtime() -> None:
    assert obs._otel_runtime is None
    obs.record_heartbeat_metric(previous_state="waiting")
    obs.record_liveness_sweep_metric(duration_ms=1.0, success=False)


def test_json_formatter_includes_request_id_and_fields() -> None:
    record = logging.LogRecord(
        name="fleet.liveness",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="device_online",
        args=(),
        exc_info=None,
    )
    record.request_id = "rid-1"
    record.fields = {"composite_id": "PROJ1-ESP5"}

    payload = json.loads(obs.JsonFormatter().format(record))

    assert payload["message"] == "device_online"
    assert payload["severity"] == "INFO"
    assert payload["logger"] == "fleet.liveness"
    assert payload["service"] == "greenhouse-fleet"
    assert payload["request_id"] == "rid-1"
    assert payload["fields"] == {"composite_id": "PROJ1-ESP5"}


def test_request_id_is_echoed(fleet_db) -> None:
    from fastapi.testclient import TestClient

    from fleet.app.main import create_app

    client = TestClient(create_app())
    generated = client.get("/healthz")
    echoed = client.get("/healthz", headers={"X-Request-ID": "abc-123"})

    assert len(generated.headers["X-Request-ID"]) == 32
    assert echoed.headers["X-Request-ID"] == "abc-123"
    assert echoed.headers["X-Content-Type-Options"] == "nosniff"
