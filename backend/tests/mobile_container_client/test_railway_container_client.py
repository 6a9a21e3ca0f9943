from __future__ import annotations

import json

import httpx
import pytest

from app.services.mobile_container_client import (
    ContainerNotFoundError,
    ContainerSpec,
    ProviderError,
    ProviderTimeoutError,
    RailwayContainerClient,
    RailwayContainerClientConfig,
    map_deployment_status,
    map_log_level,
    parse_container_id,
)


def _client(token: str | None = "railway-token") -> RailwayContainerClient:
    return RailwayContainerClient(
        RailwayContainerClientConfig(
            api_token=token,
            team_id="team-1",
            api_url="https://railway.test/graphql/v2",
            request_timeout_seconds=5,
            max_retries=2,
            retry_base_delay_seconds=0.0,
            retry_max_delay_seconds=0.0,
        )
    )


def _patch_async_client(monkeypatch: pytest.MonkeyPatch, handler):
    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)


def _operation(request: httpx.Request) -> tuple[str, dict]:
    payload = json.loads(request.content.decode("utf-8"))
    return payload["query"], payload.get("variables") or {}


def _data(payload: dict) -> httpx.Response:
    return httpx.Response(200, json={"data": payload})


def _project_payload() -> dict:
    return {
        "projectCreate": {
            "id": "proj-1",
            "name": "turbocat-mobile-task-123",
            "environments": {"edges": [{"node": {"id": "env-prod", "name": "production"}}]},
        }
    }


@pytest.mark.asyncio
async def test_create_container_provisions_project_service_and_domain(monkeypatch: pytest.MonkeyPatch):
    seen: list[str] = []
    upserted: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer railway-token"
        query, variables = _operation(request)
        if "projectCreate(" in query:
            seen.append("project")
            assert variables["input"]["name"] == "turbocat-mobile-task-123"
            assert variables["input"]["teamId"] == "team-1"
            return _data(_project_payload())
        if "serviceCreate(" in query:
            seen.append("service")
            assert variables["input"]["source"] == {"image": "node:22-alpine"}
            return _data({"serviceCreate": {"id": "svc-1", "name": "expo-metro"}})
        if "variableUpsert(" in query:
            upserted[variables["input"]["name"]] = variables["input"]["value"]
            assert variables["input"]["environmentId"] == "env-prod"
            return _data({"variableUpsert": True})
        if "serviceInstanceDeploy(" in query:
            seen.append("deploy")
            return _data({"serviceInstanceDeploy": True})
        if "domains(" in query:
            return _data({"domains": {"serviceDomains": []}})
        if "serviceDomainCreate(" in query:
            seen.append("domain")
            return _data({"serviceDomainCreate": {"domain": "mobile-xyz123.up.railway.app"}})
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    result = await _client().create_container(
        ContainerSpec(task_id="task-123", user_id="user-1", idle_timeout_seconds=1800)
    )

    assert result.container_id == "proj-1:svc-1"
    assert result.metro_url == "https://mobile-xyz123.up.railway.app"
    assert result.project_id == "proj-1"
    assert result.service_id == "svc-1"
    assert seen == ["project", "service", "deploy", "domain"]
    assert upserted["MOBILE_TASK_ID"] == "task-123"
    assert upserted["EXPO_DEVTOOLS_LISTEN_ADDRESS"] == "0.0.0.0"
    assert upserted["MOBILE_IDLE_TIMEOUT_SECONDS"] == "1800"


@pytest.mark.asyncio
async def test_create_container_discards_project_when_service_creation_fails(monkeypatch: pytest.MonkeyPatch):
    deleted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        query, variables = _operation(request)
        if "projectCreate(" in query:
            return _data(_project_payload())
        if "serviceCreate(" in query:
            return httpx.Response(200, json={"errors": [{"message": "Service quota exceeded"}]})
        if "projectDelete(" in query:
            deleted.append(variables["id"])
            return _data({"projectDelete": True})
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().create_container(ContainerSpec(task_id="task-123", user_id="user-1"))

    assert "quota" in str(exc_info.value)
    assert exc_info.value.project_id is None
    assert deleted == ["proj-1"]


@pytest.mark.asyncio
async def test_create_container_reports_leftover_project_when_cleanup_fails(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, _ = _operation(request)
        if "projectCreate(" in query:
            return _data(_project_payload())
        if "serviceCreate(" in query:
            return httpx.Response(200, json={"errors": [{"message": "Image pull failed"}]})
        if "projectDelete(" in query:
            return httpx.Response(500, json={"errors": [{"message": "internal"}]})
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().create_container(ContainerSpec(task_id="task-123", user_id="user-1"))

    assert exc_info.value.project_id == "proj-1"


@pytest.mark.asyncio
async def test_mutations_are_not_retried(monkeypatch: pytest.MonkeyPatch):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, text="upstream unavailable")

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().create_container(ContainerSpec(task_id="task-123", user_id="user-1"))

    assert calls["count"] == 1
    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_read_timeout_is_reported_as_ambiguous(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderTimeoutError):
        await _client().create_container(ContainerSpec(task_id="task-123", user_id="user-1"))


@pytest.mark.asyncio
async def test_connect_error_is_not_ambiguous(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().create_container(ContainerSpec(task_id="task-123", user_id="user-1"))

    assert not isinstance(exc_info.value, ProviderTimeoutError)
    assert exc_info.value.code == "network"


@pytest.mark.asyncio
async def test_get_container_status_maps_deployment_and_metrics(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, variables = _operation(request)
        if "service(id:" in query:
            assert variables["id"] == "svc-1"
            return _data(
                {
                    "service": {
                        "id": "svc-1",
                        "name": "expo-metro",
                        "projectId": "proj-1",
                        "deployments": {
                            "edges": [
                                {"node": {"id": "dep-1", "status": "SUCCESS", "createdAt": "2026-01-01T00:00:00Z"}}
                            ]
                        },
                    }
                }
            )
        if "metrics(" in query:
            return _data(
                {
                    "metrics": [
                        {"measurement": "CPU_USAGE", "values": [{"ts": 1, "value": 0.2}, {"ts": 2, "value": 0.45}]},
                        {"measurement": "MEMORY_USAGE_GB", "values": [{"ts": 2, "value": 0.5}]},
                        {"measurement": "NETWORK_TX_GB", "values": []},
                    ]
                }
            )
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    status = await _client().get_container_status("proj-1:svc-1")

    assert status.status == "running"
    assert status.resource_usage.cpu == 45.0
    assert status.resource_usage.ram == 512.0
    assert status.resource_usage.network is None
    assert status.uptime_seconds is not None and status.uptime_seconds > 0
    assert status.last_health_check is not None


@pytest.mark.asyncio
async def test_get_container_status_tolerates_missing_metrics(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, _ = _operation(request)
        if "service(id:" in query:
            return _data(
                {
                    "service": {
                        "id": "svc-1",
                        "deployments": {"edges": [{"node": {"id": "dep-1", "status": "ACTIVE"}}]},
                    }
                }
            )
        if "metrics(" in query:
            return httpx.Response(400, json={"errors": [{"message": "metrics unavailable"}]})
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    status = await _client().get_container_status("proj-1:svc-1")

    assert status.status == "running"
    assert status.resource_usage.to_dict() == {"cpu": None, "ram": None, "network": None}


@pytest.mark.asyncio
async def test_get_container_status_raises_not_found_for_unknown_service(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Service not found"}], "data": None})

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ContainerNotFoundError):
        await _client().get_container_status("proj-1:svc-gone")


@pytest.mark.asyncio
async def test_get_container_status_treats_null_service_as_not_found(monkeypatch: pytest.MonkeyPatch):
    _patch_async_client(monkeypatch, lambda request: _data({"service": None}))
    with pytest.raises(ContainerNotFoundError):
        await _client().get_container_status("proj-1:svc-gone")


@pytest.mark.asyncio
async def test_status_reads_retry_transient_failures(monkeypatch: pytest.MonkeyPatch):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        query, _ = _operation(request)
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(502, text="bad gateway")
        return _data(
            {"service": {"id": "svc-1", "deployments": {"edges": [{"node": {"id": "dep-1", "status": "BUILDING"}}]}}}
        )

    _patch_async_client(monkeypatch, handler)
    status = await _client().get_container_status("proj-1:svc-1")

    assert status.status == "provisioning"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_endpoint_404_is_a_retryable_provider_error(monkeypatch: pytest.MonkeyPatch):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404, text="<html>Not Found</html>")

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().get_container_status("proj-1:svc-1")

    assert not isinstance(exc_info.value, ContainerNotFoundError)
    assert exc_info.value.status_code == 404
    assert exc_info.value.retryable is True
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_team_or_project_errors_do_not_mean_container_is_gone(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Team not found"}], "data": None})

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ProviderError) as exc_info:
        await _client().get_container_status("proj-1:svc-1")

    assert not isinstance(exc_info.value, ContainerNotFoundError)


@pytest.mark.asyncio
async def test_delete_project_treats_missing_project_as_deleted(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Project not found"}], "data": None})

    _patch_async_client(monkeypatch, handler)
    assert await _client().delete_project("proj-gone") is True


@pytest.mark.asyncio
async def test_malformed_container_id_is_not_found_without_calling_provider(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider should not be called")

    _patch_async_client(monkeypatch, handler)
    with pytest.raises(ContainerNotFoundError):
        await _client().get_container_status("not-a-railway-id")


@pytest.mark.asyncio
async def test_stop_container_treats_missing_service_as_stopped(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, _ = _operation(request)
        assert "serviceDelete(" in query
        return httpx.Response(200, json={"errors": [{"message": "Service not found"}], "data": None})

    _patch_async_client(monkeypatch, handler)
    assert await _client().stop_container("proj-1:svc-1") == {"status": "stopped"}


@pytest.mark.asyncio
async def test_start_container_is_idempotent_for_running_service(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, _ = _operation(request)
        if "service(id:" in query:
            return _data(
                {"service": {"id": "svc-1", "deployments": {"edges": [{"node": {"id": "d", "status": "DEPLOYING"}}]}}}
            )
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    assert await _client().start_container("proj-1:svc-1") == {"status": "provisioning"}


@pytest.mark.asyncio
async def test_get_container_logs_maps_levels_and_cursor(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, variables = _operation(request)
        if "service(id:" in query:
            return _data({"service": {"id": "svc-1", "deployments": {"edges": [{"node": {"id": "dep-9"}}]}}})
        if "deploymentLogs(" in query:
            assert variables["deploymentId"] == "dep-9"
            assert variables["limit"] == 2
            assert variables["startDate"] == "2026-01-01T00:00:00+00:00"
            return _data(
                {
                    "deploymentLogs": [
                        {"timestamp": "2026-01-01T00:00:01Z", "message": "Starting Metro Bundler", "severity": "INFO"},
                        {"timestamp": "2026-01-01T00:00:02Z", "message": "Unable to resolve module", "severity": "ERROR"},
                    ]
                }
            )
        raise AssertionError(f"Unexpected query: {query}")

    _patch_async_client(monkeypatch, handler)
    page = await _client().get_container_logs("proj-1:svc-1", limit=2, cursor="2026-01-01T00:00:00+00:00")

    assert [entry.level for entry in page.logs] == ["info", "error"]
    assert [entry.source for entry in page.logs] == ["metro", "app"]
    assert page.has_more is True
    assert page.cursor == "2026-01-01T00:00:02+00:00"


@pytest.mark.asyncio
async def test_list_containers_only_returns_managed_projects(monkeypatch: pytest.MonkeyPatch):
    def handler(request: httpx.Request) -> httpx.Response:
        query, variables = _operation(request)
        assert "projects(" in query
        assert variables["teamId"] == "team-1"
        return _data(
            {
                "projects": {
                    "edges": [
                        {
                            "node": {
                                "id": "proj-1",
                                "name": "turbocat-mobile-task-123",
                                "createdAt": "2026-01-01T00:00:00Z",
                                "services": {"edges": [{"node": {"id": "svc-1", "name": "expo-metro"}}]},
                            }
                        },
                        {
                            "node": {
                                "id": "proj-2",
                                "name": "billing-api",
                                "services": {"edges": [{"node": {"id": "svc-2", "name": "api"}}]},
                            }
                        },
                    ]
                }
            }
        )

    _patch_async_client(monkeypatch, handler)
    containers = await _client().list_containers()

    assert [c.container_id for c in containers] == ["proj-1:svc-1"]
    assert containers[0].created_at is not None


@pytest.mark.asyncio
async def test_missing_token_fails_fast():
    with pytest.raises(ProviderError) as exc_info:
        await _client(token=None).list_containers()
    assert exc_info.value.code == "unconfigured"


@pytest.mark.parametrize(
    ("provider_status", "expected"),
    [
        ("SUCCESS", "running"),
        ("BUILDING", "provisioning"),
        ("QUEUED", "provisioning"),
        ("CRASHED", "error"),
        ("REMOVED", "stopped"),
        (None, "stopped"),
    ],
)
def test_map_deployment_status(provider_status, expected):
    assert map_deployment_status(provider_status) == expected


def test_map_log_level_defaults_to_info():
    assert map_log_level("WARNING") == "warn"
    assert map_log_level("fatal") == "error"
    assert map_log_level("TRACE") == "debug"
    assert map_log_level("NOTICE") == "info"


def test_parse_container_id_round_trip_shape():
    assert parse_container_id("proj-1:svc-1") == ("proj-1", "svc-1")
    with pytest.raises(ContainerNotFoundError):
        parse_container_id("proj-1:")
