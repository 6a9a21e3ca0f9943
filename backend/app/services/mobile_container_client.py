from __future__ import annotations

import asyncio
import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx


logger = logging.getLogger(__name__)

RAILWAY_API_URL = "https://backboard.railway.app/graphql/v2"
EXPO_DOCKER_IMAGE = "node:22-alpine"
MANAGED_PROJECT_PREFIX = "turbocat-mobile-"
METRO_SERVICE_NAME = "expo-metro"
METRO_PORT = 8081

CONTAINER_STATUS_PROVISIONING = "provisioning"
CONTAINER_STATUS_RUNNING = "running"
CONTAINER_STATUS_STOPPED = "stopped"
CONTAINER_STATUS_ERROR = "error"

_RUNNING_DEPLOYMENT_STATES = {"SUCCESS", "ACTIVE", "RUNNING"}
_STARTING_DEPLOYMENT_STATES = {"BUILDING", "DEPLOYING", "INITIALIZING", "WAITING", "QUEUED"}
_FAILED_DEPLOYMENT_STATES = {"FAILED", "CRASHED", "ERROR"}


GRAPHQL_QUERIES = {
    "create_project": """
        mutation ProjectCreate($input: ProjectCreateInput!) {
          projectCreate(input: $input) {
            id
            name
            environments { edges { node { id name } } }
          }
        }
    """,
    "create_service": """
        mutation ServiceCreate($input: ServiceCreateInput!) {
          serviceCreate(input: $input) { id name }
        }
    """,
    "upsert_variable": """
        mutation VariableUpsert($input: VariableUpsertInput!) {
          variableUpsert(input: $input)
        }
    """,
    "deploy_service": """
        mutation ServiceInstanceDeploy($environmentId: String!, $serviceId: String!) {
          serviceInstanceDeploy(environmentId: $environmentId, serviceId: $serviceId)
        }
    """,
    "redeploy_service": """
        mutation ServiceInstanceRedeploy($environmentId: String!, $serviceId: String!) {
          serviceInstanceRedeploy(environmentId: $environmentId, serviceId: $serviceId)
        }
    """,
    "service_domains": """
        query Domains($projectId: String!, $environmentId: String!, $serviceId: String!) {
          domains(projectId: $projectId, environmentId: $environmentId, serviceId: $serviceId) {
            serviceDomains { domain }
          }
        }
    """,
    "create_service_domain": """
        mutation ServiceDomainCreate($input: ServiceDomainCreateInput!) {
          serviceDomainCreate(input: $input) { domain }
        }
    """,
    "project": """
        query Project($id: String!) {
          project(id: $id) {
            id
            name
            createdAt
            environments { edges { node { id name } } }
          }
        }
    """,
    "service_status": """
        query Service($id: String!) {
          service(id: $id) {
            id
            name
            projectId
            deployments(first: 1) {
              edges { node { id status createdAt } }
            }
          }
        }
    """,
    "service_metrics": """
        query Metrics($projectId: String!, $serviceId: String!, $startDate: DateTime!) {
          metrics(
            projectId: $projectId
            serviceId: $serviceId
            startDate: $startDate
            measurements: [CPU_USAGE, MEMORY_USAGE_GB, NETWORK_TX_GB]
          ) {
            measurement
            values { ts value }
          }
        }
    """,
    "deployment_logs": """
        query DeploymentLogs($deploymentId: String!, $limit: Int, $startDate: DateTime) {
          deploymentLogs(deploymentId: $deploymentId, limit: $limit, startDate: $startDate) {
            timestamp
            message
            severity
          }
        }
    """,
    "list_projects": """
        query Projects($teamId: String) {
          projects(teamId: $teamId) {
            edges {
              node {
                id
                name
                createdAt
                services { edges { node { id name createdAt } } }
              }
            }
          }
        }
    """,
    "delete_service": """
        mutation ServiceDelete($id: String!) {
          serviceDelete(id: $id)
        }
    """,
    "delete_project": """
        mutation ProjectDelete($id: String!) {
          projectDelete(id: $id)
        }
    """,
}


class ProviderError(Exception):
    """The container provider rejected or failed a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retryable: bool = False,
        project_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.retryable = retryable
        # Set when a multi-step create left a project behind at the provider.
        self.project_id = project_id
        self.retry_after_seconds: Optional[int] = None


class ProviderTimeoutError(ProviderError):
    """The request may have reached the provider but no answer came back."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("code", "timeout")
        super().__init__(message, **kwargs)


class ContainerNotFoundError(ProviderError):
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("status_code", 404)
        kwargs.setdefault("code", "not_found")
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class ContainerSpec:
    task_id: str
    user_id: str
    project_name: Optional[str] = None
    image: str = EXPO_DOCKER_IMAGE
    port: int = METRO_PORT
    idle_timeout_seconds: Optional[int] = None
    env_vars: Dict[str, str] = field(default_factory=dict)

    def resolved_project_name(self) -> str:
        return self.project_name or project_name_for_task(self.task_id)


@dataclass(frozen=True)
class ContainerCreateResult:
    container_id: str
    metro_url: str
    project_id: Optional[str] = None
    service_id: Optional[str] = None


@dataclass(frozen=True)
class ResourceUsage:
    cpu: Optional[float] = None
    ram: Optional[float] = None
    network: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"cpu": self.cpu, "ram": self.ram, "network": self.network}


@dataclass(frozen=True)
class ContainerStatusResult:
    status: str
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    uptime_seconds: Optional[int] = None
    last_health_check: Optional[datetime] = None


@dataclass(frozen=True)
class ContainerLogEntry:
    timestamp: Optional[datetime]
    level: str
    message: str
    source: str = "app"


@dataclass(frozen=True)
class ContainerLogsResult:
    logs: List[ContainerLogEntry]
    has_more: bool = False
    cursor: Optional[str] = None


@dataclass(frozen=True)
class ProviderContainer:
    container_id: str
    project_id: str
    service_id: str
    project_name: str
    created_at: Optional[datetime] = None


def project_name_for_task(task_id: str) -> str:
    return f"{MANAGED_PROJECT_PREFIX}{task_id[:8]}"


def build_container_id(project_id: str, service_id: str) -> str:
    return f"{project_id}:{service_id}"


def parse_container_id(container_id: str) -> Tuple[str, str]:
    project_id, sep, service_id = str(container_id or "").partition(":")
    if not sep or not project_id or not service_id:
        raise ContainerNotFoundError(f"Unrecognized container id: {container_id!r}")
    return project_id, service_id


def map_deployment_status(provider_status: Optional[str]) -> str:
    normalized = str(provider_status or "").strip().upper()
    if normalized in _RUNNING_DEPLOYMENT_STATES:
        return CONTAINER_STATUS_RUNNING
    if normalized in _STARTING_DEPLOYMENT_STATES:
        return CONTAINER_STATUS_PROVISIONING
    if normalized in _FAILED_DEPLOYMENT_STATES:
        return CONTAINER_STATUS_ERROR
    return CONTAINER_STATUS_STOPPED


def map_log_level(severity: Optional[str]) -> str:
    normalized = str(severity or "").strip().upper()
    if normalized in {"ERROR", "FATAL"}:
        return "error"
    if normalized in {"WARN", "WARNING"}:
        return "warn"
    if normalized in {"DEBUG", "TRACE"}:
        return "debug"
    return "info"


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


CONTAINER_NOT_FOUND_SUBJECTS = ("service", "deployment")


def _is_not_found_message(message: str, subjects: Tuple[str, ...] = CONTAINER_NOT_FOUND_SUBJECTS) -> bool:
    """A GraphQL error that says the addressed resource is gone, not that a team or token is wrong."""
    lowered = message.lower()
    if "not found" not in lowered and "does not exist" not in lowered:
        return False
    return any(subject in lowered for subject in subjects)


@dataclass(frozen=True)
class RailwayContainerClientConfig:
    api_token: Optional[str]
    team_id: Optional[str]
    api_url: str
    request_timeout_seconds: int
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0


class RailwayContainerClient:
    """Adapter over the Railway GraphQL API. The only code that talks to the provider."""

    def __init__(self, config: RailwayContainerClientConfig):
        self._config = config

    @classmethod
    def from_env(cls) -> "RailwayContainerClient":
        timeout_seconds = int(os.getenv("MOBILE_PROVIDER_REQUEST_TIMEOUT_SECONDS", "15"))
        return cls(
            RailwayContainerClientConfig(
                api_token=(os.getenv("RAILWAY_API_TOKEN") or "").strip() or None,
                team_id=(os.getenv("RAILWAY_TEAM_ID") or "").strip() or None,
                api_url=(os.getenv("RAILWAY_API_URL") or RAILWAY_API_URL).strip(),
                request_timeout_seconds=max(3, timeout_seconds),
                max_retries=max(0, int(os.getenv("MOBILE_PROVIDER_MAX_RETRIES", "3"))),
            )
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._config.api_token)

    async def create_container(self, spec: ContainerSpec) -> ContainerCreateResult:
        project_name = spec.resolved_project_name()
        project_payload = await self._execute(
            GRAPHQL_QUERIES["create_project"],
            {"input": {"name": project_name, "teamId": self._config.team_id}},
        )
        project = project_payload.get("projectCreate") or {}
        project_id = str(project.get("id") or "")
        if not project_id:
            raise ProviderError("Provider did not return a project id")

        try:
            environment_id = self._pick_environment_id(project) or await self._resolve_environment_id(project_id)
            service_payload = await self._execute(
                GRAPHQL_QUERIES["create_service"],
                {"input": {"projectId": project_id, "name": METRO_SERVICE_NAME, "source": {"image": spec.image}}},
            )
            service_id = str((service_payload.get("serviceCreate") or {}).get("id") or "")
            if not service_id:
                raise ProviderError("Provider did not return a service id")

            env_vars: Dict[str, str] = {
                "EXPO_DEVTOOLS_LISTEN_ADDRESS": "0.0.0.0",
                "REACT_NATIVE_PACKAGER_HOSTNAME": "0.0.0.0",
                "PORT": str(spec.port),
                "MOBILE_TASK_ID": spec.task_id,
            }
            if spec.idle_timeout_seconds:
                env_vars["MOBILE_IDLE_TIMEOUT_SECONDS"] = str(spec.idle_timeout_seconds)
            env_vars.update(spec.env_vars or {})
            for name, value in env_vars.items():
                await self._execute(
                    GRAPHQL_QUERIES["upsert_variable"],
                    {
                        "input": {
                            "projectId": project_id,
                            "environmentId": environment_id,
                            "serviceId": service_id,
                            "name": name,
                            "value": value,
                        }
                    },
                )

            await self._execute(
                GRAPHQL_QUERIES["deploy_service"],
                {"environmentId": environment_id, "serviceId": service_id},
            )
            domain = await self._resolve_domain(
                project_id=project_id,
                environment_id=environment_id,
                service_id=service_id,
                fallback=f"{project_name}.up.railway.app",
            )
        except ProviderError as exc:
            await self._discard_partial_project(project_id, exc)
            raise

        return ContainerCreateResult(
            container_id=build_container_id(project_id, service_id),
            metro_url=f"https://{domain}",
            project_id=project_id,
            service_id=service_id,
        )

    async def start_container(self, container_id: str) -> Dict[str, str]:
        project_id, service_id = parse_container_id(container_id)
        current = await self.get_container_status(container_id)
        if current.status in {CONTAINER_STATUS_RUNNING, CONTAINER_STATUS_PROVISIONING}:
            return {"status": current.status}
        environment_id = await self._resolve_environment_id(project_id)
        await self._execute(
            GRAPHQL_QUERIES["redeploy_service"],
            {"environmentId": environment_id, "serviceId": service_id},
        )
        return {"status": CONTAINER_STATUS_PROVISIONING}

    async def stop_container(self, container_id: str) -> Dict[str, str]:
        _, service_id = parse_container_id(container_id)
        try:
            await self._execute(GRAPHQL_QUERIES["delete_service"], {"id": service_id})
        except ContainerNotFoundError:
            logger.info("Container %s already gone at provider", container_id)
        return {"status": CONTAINER_STATUS_STOPPED}

    async def delete_container(self, container_id: str) -> bool:
        project_id, _ = parse_container_id(container_id)
        return await self.delete_project(project_id)

    async def delete_project(self, project_id: str) -> bool:
        try:
            await self._execute(
                GRAPHQL_QUERIES["delete_project"],
                {"id": project_id},
                not_found_subjects=("project",),
            )
        except ContainerNotFoundError:
            logger.info("Project %s already gone at provider", project_id)
        return True

    async def get_container_status(self, container_id: str) -> ContainerStatusResult:
        project_id, service_id = parse_container_id(container_id)
        payload = await self._execute(GRAPHQL_QUERIES["service_status"], {"id": service_id}, retry=True)
        service = payload.get("service")
        if not service:
            raise ContainerNotFoundError(f"Container {container_id} is not known to the provider")

        latest = self._latest_deployment(service)
        status = map_deployment_status((latest or {}).get("status") or "STOPPED")
        now = datetime.now(timezone.utc)
        uptime_seconds: Optional[int] = None
        created_at = _parse_timestamp((latest or {}).get("createdAt"))
        if created_at is not None and status == CONTAINER_STATUS_RUNNING:
            uptime_seconds = max(0, int((now - created_at).total_seconds()))

        resource_usage = ResourceUsage()
        if status == CONTAINER_STATUS_RUNNING:
            resource_usage = await self._fetch_resource_usage(project_id, service_id, since=created_at)

        return ContainerStatusResult(
            status=status,
            resource_usage=resource_usage,
            uptime_seconds=uptime_seconds,
            last_health_check=now,
        )

    async def get_container_logs(
        self,
        container_id: str,
        *,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> ContainerLogsResult:
        _, service_id = parse_container_id(container_id)
        try:
            payload = await self._execute(GRAPHQL_QUERIES["service_status"], {"id": service_id}, retry=True)
        except ContainerNotFoundError:
            return ContainerLogsResult(logs=[], has_more=False)
        latest = self._latest_deployment(payload.get("service") or {})
        deployment_id = (latest or {}).get("id")
        if not deployment_id:
            return ContainerLogsResult(logs=[], has_more=False)

        effective_limit = max(1, min(int(limit or 100), 1000))
        variables: Dict[str, Any] = {"deploymentId": deployment_id, "limit": effective_limit}
        if cursor:
            variables["startDate"] = cursor
        try:
            logs_payload = await self._execute(GRAPHQL_QUERIES["deployment_logs"], variables, retry=True)
        except ContainerNotFoundError:
            return ContainerLogsResult(logs=[], has_more=False)

        entries: List[ContainerLogEntry] = []
        for raw in logs_payload.get("deploymentLogs") or []:
            message = str(raw.get("message") or "")
            entries.append(
                ContainerLogEntry(
                    timestamp=_parse_timestamp(raw.get("timestamp")),
                    level=map_log_level(raw.get("severity")),
                    message=message,
                    source="metro" if "metro" in message.lower() else "app",
                )
            )
        next_cursor = None
        if entries and entries[-1].timestamp is not None:
            next_cursor = entries[-1].timestamp.isoformat()
        return ContainerLogsResult(
            logs=entries,
            has_more=len(entries) >= effective_limit,
            cursor=next_cursor,
        )

    async def list_containers(self) -> List[ProviderContainer]:
        payload = await self._execute(
            GRAPHQL_QUERIES["list_projects"],
            {"teamId": self._config.team_id},
            retry=True,
        )
        containers: List[ProviderContainer] = []
        for project_edge in ((payload.get("projects") or {}).get("edges") or []):
            project = project_edge.get("node") or {}
            name = str(project.get("name") or "")
            if not name.startswith(MANAGED_PROJECT_PREFIX):
                continue
            project_id = str(project.get("id") or "")
            project_created_at = _parse_timestamp(project.get("createdAt"))
            for service_edge in ((project.get("services") or {}).get("edges") or []):
                service = service_edge.get("node") or {}
                service_id = str(service.get("id") or "")
                if not project_id or not service_id:
                    continue
                containers.append(
                    ProviderContainer(
                        container_id=build_container_id(project_id, service_id),
                        project_id=project_id,
                        service_id=service_id,
                        project_name=name,
                        created_at=_parse_timestamp(service.get("createdAt")) or project_created_at,
                    )
                )
        return containers

    @staticmethod
    def _latest_deployment(service: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        edges = ((service.get("deployments") or {}).get("edges") or [])
        if not edges:
            return None
        return edges[0].get("node") or None

    @staticmethod
    def _pick_environment_id(project: Dict[str, Any]) -> Optional[str]:
        edges = ((project.get("environments") or {}).get("edges") or [])
        nodes = [edge.get("node") or {} for edge in edges]
        for node in nodes:
            if str(node.get("name") or "").lower() == "production" and node.get("id"):
                return str(node["id"])
        for node in nodes:
            if node.get("id"):
                return str(node["id"])
        return None

    async def _resolve_environment_id(self, project_id: str) -> str:
        payload = await self._execute(GRAPHQL_QUERIES["project"], {"id": project_id}, retry=True)
        project = payload.get("project")
        if not project:
            raise ContainerNotFoundError(f"Project {project_id} is not known to the provider")
        environment_id = self._pick_environment_id(project)
        if not environment_id:
            raise ProviderError(f"Project {project_id} has no environment")
        return environment_id

    async def _resolve_domain(self, *, project_id: str, environment_id: str, service_id: str, fallback: str) -> str:
        try:
            payload = await self._execute(
                GRAPHQL_QUERIES["service_domains"],
                {"projectId": project_id, "environmentId": environment_id, "serviceId": service_id},
                retry=True,
            )
            existing = ((payload.get("domains") or {}).get("serviceDomains") or [])
            if existing and existing[0].get("domain"):
                return str(existing[0]["domain"])
            created = await self._execute(
                GRAPHQL_QUERIES["create_service_domain"],
                {"input": {"environmentId": environment_id, "serviceId": service_id}},
            )
            domain = (created.get("serviceDomainCreate") or {}).get("domain")
            if domain:
                return str(domain)
        except ProviderTimeoutError:
            raise
        except ProviderError as exc:
            logger.warning("Falling back to default domain for service %s: %s", service_id, exc)
        return fallback

    async def _fetch_resource_usage(
        self,
        project_id: str,
        service_id: str,
        *,
        since: Optional[datetime],
    ) -> ResourceUsage:
        start = since or datetime.now(timezone.utc)
        try:
            payload = await self._execute(
                GRAPHQL_QUERIES["service_metrics"],
                {"projectId": project_id, "serviceId": service_id, "startDate": start.isoformat()},
            )
        except ProviderError as exc:
            logger.debug("Metrics unavailable for service %s: %s", service_id, exc)
            return ResourceUsage()

        latest: Dict[str, float] = {}
        for series in payload.get("metrics") or []:
            values = series.get("values") or []
            if not values:
                continue
            try:
                latest[str(series.get("measurement"))] = float(values[-1].get("value"))
            except (TypeError, ValueError):
                continue

        def _scaled(key: str, factor: float) -> Optional[float]:
            if key not in latest:
                return None
            return round(latest[key] * factor, 2)

        return ResourceUsage(
            # vCPU fraction -> percent of one core, GB -> MB
            cpu=_scaled("CPU_USAGE", 100.0),
            ram=_scaled("MEMORY_USAGE_GB", 1024.0),
            network=_scaled("NETWORK_TX_GB", 1024.0),
        )

    async def _discard_partial_project(self, project_id: str, cause: ProviderError) -> None:
        try:
            await self._execute(GRAPHQL_QUERIES["delete_project"], {"id": project_id})
            logger.warning("Discarded partially created project %s after create failure: %s", project_id, cause)
        except ProviderError as cleanup_exc:
            logger.error(
                "Partially created project %s could not be removed (%s); original failure: %s",
                project_id,
                cleanup_exc,
                cause,
            )
            cause.project_id = project_id

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self._config.retry_base_delay_seconds * (2 ** attempt), self._config.retry_max_delay_seconds)
        return delay + delay * random.random() * 0.25

    async def _execute(
        self,
        query: str,
        variables: Dict[str, Any],
        *,
        retry: bool = False,
        not_found_subjects: Tuple[str, ...] = CONTAINER_NOT_FOUND_SUBJECTS,
    ) -> Dict[str, Any]:
        """Run one GraphQL operation. Only reads pass retry=True; mutations are never replayed."""
        retries = self._config.max_retries if retry else 0
        last_error: Optional[ProviderError] = None
        for attempt in range(retries + 1):
            try:
                return await self._post(query, variables, not_found_subjects=not_found_subjects)
            except ProviderError as exc:
                last_error = exc
                if not exc.retryable or attempt >= retries:
                    raise
                if exc.retry_after_seconds:
                    delay = float(exc.retry_after_seconds)
                else:
                    delay = self._backoff_delay(attempt)
                logger.info(
                    "Retrying provider query after %.2fs (attempt %s/%s): %s",
                    delay,
                    attempt + 1,
                    retries,
                    exc,
                )
                await asyncio.sleep(delay)
        raise last_error or ProviderError("Provider request failed")

    async def _post(
        self,
        query: str,
        variables: Dict[str, Any],
        *,
        not_found_subjects: Tuple[str, ...] = CONTAINER_NOT_FOUND_SUBJECTS,
    ) -> Dict[str, Any]:
        if not self._config.api_token:
            raise ProviderError("Railway API token is not configured (RAILWAY_API_TOKEN)", code="unconfigured")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._config.api_token}",
        }
        timeout = httpx.Timeout(float(self._config.request_timeout_seconds))
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    self._config.api_url,
                    headers=headers,
                    json={"query": query, "variables": variables},
                )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise ProviderError(f"Provider unreachable: {detail}", retryable=True, code="network") from exc
        except httpx.TimeoutException as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise ProviderTimeoutError(f"Provider request timed out: {detail}") from exc
        except httpx.HTTPError as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise ProviderError(f"Provider request failed: {detail}", retryable=True, code="network") from exc

        if response.status_code >= 400:
            message = self._error_message(response)
            if response.status_code == 404:
                # Railway answers unknown resources with HTTP 200 and a GraphQL error.
                # A transport 404 is a wrong endpoint or a proxy fault.
                raise ProviderError(
                    f"Provider endpoint not found (404): {message}",
                    status_code=404,
                    code="endpoint_not_found",
                    retryable=True,
                )
            error = ProviderError(
                f"Provider request failed ({response.status_code}): {message}",
                status_code=response.status_code,
                code="unauthorized" if response.status_code in {401, 403} else None,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
            retry_after = response.headers.get("retry-after")
            if response.status_code == 429 and retry_after and retry_after.isdigit():
                error.retry_after_seconds = int(retry_after)
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned invalid JSON", retryable=True) from exc
        if not isinstance(body, dict):
            raise ProviderError("Provider returned invalid payload")

        errors = body.get("errors") or []
        if errors:
            message = str((errors[0] or {}).get("message") or "Unknown provider error")
            if _is_not_found_message(message, not_found_subjects):
                raise ContainerNotFoundError(message)
            raise ProviderError(message)

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError("Provider response has no data")
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text.strip() or response.reason_phrase
        if isinstance(body, dict):
            errors = body.get("errors") or []
            if errors and isinstance(errors[0], dict) and errors[0].get("message"):
                return str(errors[0]["message"])
        return response.text.strip() or response.reason_phrase
