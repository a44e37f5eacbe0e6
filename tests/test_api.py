from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, RecordingDealWriter, RecordingInvoker, completion
from dealflow.api.app import create_app
from dealflow.config import Settings
from dealflow.gateway.provider import ProviderRouter
from dealflow.orchestrator.engines import EngineDispatcher
from dealflow.orchestrator.models import EngineConfig
from dealflow.runtime import Runtime, build_runtime

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("HTTP API"),
]


@pytest.fixture()
def runtime(tmp_path: Path) -> Iterator[Runtime]:
    active = build_runtime(
        Settings(db_path=tmp_path / "api.db"),
        dispatcher=EngineDispatcher(
            {
                "deal_analysis": RecordingInvoker(),
                "document_analysis": RecordingInvoker(failures=10),
            },
        ),
        providers=ProviderRouter({"openai": FakeProvider([completion("Looks promising.")])}),
        deal_status_writer=RecordingDealWriter(),
    )
    yield active
    active.close()


@pytest.fixture()
def client(runtime: Runtime) -> Iterator[TestClient]:
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def _job_body(**overrides) -> dict:
    body = {
        "engine_id": "deal_analysis",
        "tenant_id": "T1",
        "trigger_reason": "deal_updated",
        "related_ids": {"deal_id": "D1"},
    }
    body.update(overrides)
    return body


def test_healthz_echoes_trace_id(client: TestClient) -> None:
    response = client.get("/healthz", headers={"x-trace-id": "trace-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace-123"


def test_enqueue_returns_created_then_duplicate(client: TestClient) -> None:
    first = client.post("/jobs", json=_job_body())
    second = client.post("/jobs", json=_job_body())

    assert first.status_code == 201
    assert first.json()["data"]["duplicate"] is False
    assert second.status_code == 201
    assert second.json()["data"] == {
        "job_id": first.json()["data"]["job_id"],
        "duplicate": True,
    }


def test_enqueue_unknown_engine_is_unprocessable(client: TestClient) -> None:
    response = client.post("/jobs", json=_job_body(engine_id="portfolio_rebalance"))

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "ENGINE_NOT_FOUND"
    assert error["retryable"] is False


def test_enqueue_disabled_engine_conflicts(client: TestClient, runtime: Runtime) -> None:
    runtime.registry.register(
        EngineConfig(
            engine_id="deal_analysis",
            queue_name="deal_analysis_queue",
            max_concurrency=3,
            job_ttl_minutes=60,
            enabled=False,
        ),
    )

    response = client.post("/jobs", json=_job_body())

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ENGINE_DISABLED"
    assert response.json()["error"]["class"] == "business_rule"


@pytest.mark.parametrize(
    "body",
    [
        {"engine_id": "deal_analysis", "tenant_id": "T1"},
        _job_body(related_ids={"portfolio_id": "P1"}),
        _job_body(options={"delay_minutes": -5}),
        _job_body(options={"source": "cron"}),
    ],
)
def test_malformed_submission_is_rejected(client: TestClient, body: dict) -> None:
    response = client.post("/jobs", json=body)

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "REQ_VALIDATION_FAILED"
    assert error["details"]


def test_get_job_and_missing_job(client: TestClient) -> None:
    job_id = client.post("/jobs", json=_job_body()).json()["data"]["job_id"]

    found = client.get(f"/jobs/{job_id}")
    missing = client.get("/jobs/does-not-exist")

    assert found.status_code == 200
    assert found.json()["data"]["status"] == "queued"
    assert found.json()["data"]["related_ids"] == {"deal_id": "D1"}
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"


def test_process_queue_uses_worker_header(client: TestClient) -> None:
    client.post("/jobs", json=_job_body())

    response = client.post(
        "/queues/deal_analysis_queue/process",
        headers={"X-Worker-Id": "api-worker"},
    )
    stats = client.get("/queues/stats").json()["data"]

    assert response.status_code == 200
    assert response.json()["data"] == {
        "queue_name": "deal_analysis_queue",
        "worker_id": "api-worker",
        "processed": 1,
        "failed": 0,
        "skipped": 0,
        "lock_acquired": True,
    }
    assert stats["by_status"]["completed"] == 1


def test_process_unknown_queue_is_not_found(client: TestClient) -> None:
    response = client.post("/queues/nowhere_queue/process")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "QUEUE_NOT_FOUND"


def test_failed_job_is_rescheduled(client: TestClient) -> None:
    job_id = client.post(
        "/jobs",
        json=_job_body(engine_id="document_analysis", related_ids={"document_id": "DOC1"}),
    ).json()["data"]["job_id"]

    response = client.post("/queues/document_analysis_queue/process?worker_id=w1")
    job = client.get(f"/jobs/{job_id}").json()["data"]

    assert response.json()["data"]["failed"] == 1
    assert job["status"] == "queued"
    assert job["retry_count"] == 1
    assert "engine unavailable" in job["error_message"]


def test_cleanup_engines_and_dead_letters(client: TestClient) -> None:
    cleanup = client.post("/maintenance/cleanup")
    engines = client.get("/engines")
    dead_letters = client.get("/dead-letters", params={"queue_name": "deal_analysis_queue"})
    replay = client.post("/dead-letters/missing/replay")

    assert cleanup.status_code == 200
    assert cleanup.json()["data"]["expired_jobs"] == 0
    assert [item["engine_id"] for item in engines.json()["data"]["items"]] == [
        "deal_analysis",
        "document_analysis",
        "note_analysis",
        "strategy_change",
    ]
    assert dead_letters.json()["data"] == {"items": [], "total": 0}
    assert replay.status_code == 404
    assert replay.json()["error"]["code"] == "DLQ_NOT_FOUND"


def test_unknown_route_uses_error_envelope(client: TestClient) -> None:
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_llm_invoke_returns_result_and_caches(client: TestClient, runtime: Runtime) -> None:
    body = {
        "model_id": "gpt-4o-mini",
        "prompt": "You are a deal analyst.",
        "content": "Summarize the memo.",
        "deal_id": "D1",
    }

    first = client.post("/llm/invoke", json=body)
    second = client.post("/llm/invoke", json=body)

    assert first.status_code == 200
    data = first.json()["data"]
    assert data["success"] is True
    assert data["cache_hit"] is False
    assert data["response"]["choices"][0]["message"]["content"] == "Looks promising."
    assert second.json()["data"]["cache_hit"] is True
    assert runtime.gateway_repository.count_cost_records(deal_id="D1") == 1


def test_llm_invoke_validates_sampling(client: TestClient) -> None:
    response = client.post(
        "/llm/invoke",
        json={"model_id": "gpt-4o-mini", "prompt": "p", "content": "c", "temperature": 3},
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQ_VALIDATION_FAILED"
