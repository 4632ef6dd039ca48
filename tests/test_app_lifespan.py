from __future__ import annotations

from fastapi.testclient import TestClient

import taleturn.main as main_module
from taleturn.config import settings
from taleturn.modules.turns.orchestrator import TurnPipelineDeps


def test_create_app_health_endpoint(monkeypatch) -> None:
    monkeypatch.setattr(main_module, "ensure_dev_database_schema", lambda _url: None)
    with TestClient(main_module.create_app()) as client:
        res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_lifespan_checks_dev_schema(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(settings, "env", "dev")
    monkeypatch.setattr(main_module, "ensure_dev_database_schema", lambda url: calls.append(url))

    with TestClient(main_module.create_app()) as client:
        assert client.get("/health").status_code == 200

    assert len(calls) == 1


def test_lifespan_skips_schema_check_outside_dev(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(settings, "env", "prod")
    monkeypatch.setattr(main_module, "ensure_dev_database_schema", lambda url: calls.append(url))

    with TestClient(main_module.create_app()) as client:
        assert client.get("/health").status_code == 200

    assert calls == []


def test_create_app_wires_pipeline_on_state() -> None:
    application = main_module.create_app()
    assert isinstance(application.state.turn_pipeline, TurnPipelineDeps)
    assert application.state.turn_pipeline.generation.provider.name == "fake"
