from __future__ import annotations

from fastapi.testclient import TestClient

from taleturn.main import create_app
from taleturn.modules.telemetry.service import (
    EVENT_CONTEXT_ASSEMBLED,
    EVENT_TURN_CREATED,
    EVENT_TURN_FAILED,
    TurnTelemetry,
)


def test_summary_aggregates_events_and_phases() -> None:
    telemetry = TurnTelemetry()
    telemetry.emit(EVENT_TURN_CREATED, latency_ms=10.0)
    telemetry.emit(EVENT_TURN_CREATED, latency_ms=30.0)
    telemetry.emit(EVENT_TURN_FAILED, error_code="UPSTREAM_TIMEOUT")
    telemetry.emit(EVENT_CONTEXT_ASSEMBLED, budget_ratio=0.5)
    telemetry.record_phase("generation", 4.0)
    telemetry.record_phase("generation", 8.0)

    summary = telemetry.summary()

    assert summary["turns_created"] == 2
    assert summary["turns_failed"] == 1
    assert summary["errors_by_code"] == {"UPSTREAM_TIMEOUT": 1}
    assert summary["avg_turn_latency_ms"] == 20.0
    assert summary["p95_turn_latency_ms"] == 30.0
    assert summary["avg_context_budget_ratio"] == 0.5
    assert summary["phases"]["generation"] == {"count": 2, "avg_ms": 6.0, "p95_ms": 8.0}


def test_recent_events_are_bounded_and_filterable() -> None:
    telemetry = TurnTelemetry(recent_limit=2)
    telemetry.emit(EVENT_TURN_FAILED, error_code="CONFLICT")
    telemetry.emit(EVENT_TURN_CREATED, latency_ms=1.0)
    telemetry.emit(EVENT_TURN_CREATED, latency_ms=2.0)

    assert len(telemetry.events()) == 2
    assert [event["latency_ms"] for event in telemetry.events(EVENT_TURN_CREATED)] == [1.0, 2.0]
    assert telemetry.events(EVENT_TURN_FAILED) == []

    telemetry.reset()
    assert telemetry.summary()["turns_created"] == 0


def test_summary_route_reads_pipeline_telemetry() -> None:
    application = create_app()
    application.state.turn_pipeline.telemetry.emit(EVENT_TURN_CREATED, latency_ms=5.0)

    res = TestClient(application).get("/telemetry/summary")

    assert res.status_code == 200
    assert res.json()["turns_created"] == 1
