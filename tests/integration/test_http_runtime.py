from datetime import UTC, datetime, timedelta
import time

from fastapi.testclient import TestClient
import pytest

from tickerlease.api.http_app import build_app
from tickerlease.roles import SUPPORTED_ROLES, validate_role
from tickerlease.services.bootstrap import RuntimeContainer, build_runtime_container
from tickerlease.workers.functions import FunctionRegistry, noop_function
from tickerlease.workers.runner import SchedulerRuntimeSettings

FAST_SETTINGS = SchedulerRuntimeSettings(poll_interval_ms=5, idle_backoff_ms=5, error_backoff_ms=5)


@pytest.fixture(autouse=True)
def _in_memory_store(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TICKER_CRON_FILE", raising=False)
    monkeypatch.setenv("TICKER_HOLDER_ID", "node-it")


def _app(container: RuntimeContainer, role: str):
    return build_app(
        role=role,
        run_id="integration",
        scheduler_loop=container.scheduler_loop,
        scheduler_runtime_settings=FAST_SETTINGS,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


@pytest.mark.integration
@pytest.mark.parametrize("role_name", SUPPORTED_ROLES)
def test_roles_report_ready(role_name: str) -> None:
    role = validate_role(role_name)
    container = build_runtime_container(role)

    with TestClient(_app(container, role.name)) as client:
        health = client.get("/health")
        response = client.get("/ready")

    assert health.status_code == 200
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["role"] == role_name
    assert payload["scheduler_enabled"] == (role_name == "scheduler")
    assert payload["scheduler_ready"] is True
    assert payload["holder_id"] == ("node-it" if role_name == "scheduler" else None)
    assert "scheduler_metrics" in payload


@pytest.mark.integration
def test_time_ticker_endpoints() -> None:
    container = build_runtime_container(validate_role("api"))

    with TestClient(_app(container, "api")) as client:
        due = datetime.now(tz=UTC) + timedelta(minutes=5)
        created = client.post("/time-tickers", json={"function": "noop", "execution_time": due.isoformat()})
        unknown = client.post("/time-tickers", json={"function": "ghost", "execution_time": due.isoformat()})
        naive = client.post("/time-tickers", json={"function": "noop", "execution_time": "2026-03-01T12:00:00"})
        overdue = client.post(
            "/time-tickers",
            json={"function": "noop", "execution_time": (datetime.now(tz=UTC) - timedelta(hours=1)).isoformat()},
        )
        locked = client.get("/tickers/locked")
        timed_out = client.get("/tickers/timed-out", params={"kind": "time_ticker"})

    assert created.status_code == 201
    body = created.json()
    assert body["item_id"].startswith("tt_")
    assert body["status"] == "idle"
    assert body["lock_holder"] is None
    assert body["version"] == 0
    assert unknown.status_code == 400
    assert naive.status_code == 422
    assert overdue.status_code == 201
    assert locked.json() == {"items": []}
    assert [item["item_id"] for item in timed_out.json()["items"]] == [overdue.json()["item_id"]]


@pytest.mark.integration
def test_cron_occurrence_endpoint_uses_seeded_ticker() -> None:
    functions = FunctionRegistry()
    functions.register("report", noop_function, cron_expression="*/5 * * * *")
    container = build_runtime_container(validate_role("api"), functions=functions)

    with TestClient(_app(container, "api")) as client:
        tickers = container.store.cron_tickers  # type: ignore[attr-defined]
        assert len(tickers) == 1
        ticker_id = next(iter(tickers))
        due = (datetime.now(tz=UTC) + timedelta(minutes=5)).isoformat()

        created = client.post(f"/cron-tickers/{ticker_id}/occurrences", json={"execution_time": due})
        duplicate = client.post(f"/cron-tickers/{ticker_id}/occurrences", json={"execution_time": due})
        missing = client.post("/cron-tickers/ct_missing/occurrences", json={"execution_time": due})
        listed = client.get(f"/cron-tickers/{ticker_id}/occurrences")
        filtered = client.get(f"/cron-tickers/{ticker_id}/occurrences", params={"status": ["done", "failed"]})

    assert created.status_code == 201
    assert created.json()["function"] == "report"
    assert created.json()["parent_id"] == ticker_id
    assert created.json()["kind"] == "cron_occurrence"
    assert duplicate.status_code == 400
    assert missing.status_code == 404
    assert [item["item_id"] for item in listed.json()["items"]] == [created.json()["item_id"]]
    assert filtered.json() == {"items": []}


@pytest.mark.integration
def test_scheduler_role_executes_scheduled_ticker() -> None:
    container = build_runtime_container(validate_role("scheduler"))

    with TestClient(_app(container, "scheduler")) as client:
        created = client.post(
            "/time-tickers",
            json={"function": "noop", "execution_time": datetime.now(tz=UTC).isoformat()},
        )
        item_id = created.json()["item_id"]

        status = None
        deadline = time.monotonic() + 3
        while time.monotonic() < deadline:
            items = {item["item_id"]: item for item in client.get("/tickers/locked").json()["items"]}
            status = items.get(item_id, {}).get("status")
            if status == "done":
                break
            time.sleep(0.02)

        metrics = client.get("/ready").json()["scheduler_metrics"]

    assert status == "done"
    assert items[item_id]["lock_holder"] == "node-it"
    assert metrics["claims_total"] >= 1


@pytest.mark.integration
def test_delete_time_ticker() -> None:
    container = build_runtime_container(validate_role("api"))

    with TestClient(_app(container, "api")) as client:
        due = (datetime.now(tz=UTC) + timedelta(minutes=5)).isoformat()
        item_id = client.post("/time-tickers", json={"function": "noop", "execution_time": due}).json()["item_id"]

        deleted = client.delete(f"/time-tickers/{item_id}")
        again = client.delete(f"/time-tickers/{item_id}")

    assert deleted.status_code == 204
    assert again.status_code == 404
