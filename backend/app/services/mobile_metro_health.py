from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx


logger = logging.getLogger(__name__)

METRO_HEALTH_ENDPOINTS = ("/status", "/healthz", "/")

ERROR_TYPE_OOM = "oom"
ERROR_TYPE_CRASH = "crash"
ERROR_TYPE_NETWORK = "network"
ERROR_TYPE_BUILD = "build"

_NON_RECOVERABLE_ERROR_TYPES = {ERROR_TYPE_OOM, ERROR_TYPE_CRASH}


@dataclass(frozen=True)
class MetroHealthStatus:
    healthy: bool
    consecutive_failures: int
    last_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    response_time_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MetroLogDiagnosis:
    has_error: bool
    error_type: Optional[str] = None
    error_message: Optional[str] = None


def parse_metro_logs(logs: str) -> MetroLogDiagnosis:
    lowered = (logs or "").lower()
    if "out of memory" in lowered or "heap out of memory" in lowered:
        return MetroLogDiagnosis(True, ERROR_TYPE_OOM, "Metro bundler ran out of memory")
    if "fatal error" in lowered or "segmentation fault" in lowered:
        return MetroLogDiagnosis(True, ERROR_TYPE_CRASH, "Metro bundler crashed")
    if "econnrefused" in lowered or "network error" in lowered:
        return MetroLogDiagnosis(True, ERROR_TYPE_NETWORK, "Network error in Metro bundler")
    if "error: " in lowered or "syntaxerror" in lowered:
        return MetroLogDiagnosis(True, ERROR_TYPE_BUILD, "Build error in Metro bundler")
    return MetroLogDiagnosis(False)


def is_recoverable_error(error_type: Optional[str]) -> bool:
    return error_type not in _NON_RECOVERABLE_ERROR_TYPES


class MetroHealthChecker:
    """Checks a bundler's public URL and counts consecutive failures per URL."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_consecutive_failures: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self._transport = transport
        self._failure_counts: Dict[str, int] = {}

    @classmethod
    def from_env(cls) -> "MetroHealthChecker":
        return cls(
            timeout_seconds=max(1.0, float(os.getenv("MOBILE_METRO_HEALTH_TIMEOUT_SECONDS", "10"))),
            max_consecutive_failures=max(1, int(os.getenv("MOBILE_METRO_HEALTH_MAX_CONSECUTIVE_FAILURES", "3"))),
        )

    def failure_count(self, metro_url: str) -> int:
        return self._failure_counts.get(metro_url, 0)

    def reset(self, metro_url: str) -> None:
        self._failure_counts.pop(metro_url, None)

    def is_past_threshold(self, status: MetroHealthStatus) -> bool:
        return not status.healthy and status.consecutive_failures >= self.max_consecutive_failures

    async def check_health(self, metro_url: str) -> MetroHealthStatus:
        started = time.monotonic()
        base_url = metro_url.rstrip("/")
        last_error: Optional[str] = None
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            for endpoint in METRO_HEALTH_ENDPOINTS:
                try:
                    response = await client.get(f"{base_url}{endpoint}")
                except httpx.TimeoutException:
                    last_error = "Health check timed out"
                    continue
                except httpx.HTTPError as exc:
                    last_error = str(exc) or exc.__class__.__name__
                    continue
                if response.is_success:
                    self._failure_counts[metro_url] = 0
                    return MetroHealthStatus(
                        healthy=True,
                        consecutive_failures=0,
                        response_time_ms=int((time.monotonic() - started) * 1000),
                    )
                last_error = f"HTTP {response.status_code}"

        failures = self._failure_counts.get(metro_url, 0) + 1
        self._failure_counts[metro_url] = failures
        logger.info("Metro health check failed for %s (%s consecutive): %s", metro_url, failures, last_error)
        return MetroHealthStatus(
            healthy=False,
            consecutive_failures=failures,
            response_time_ms=int((time.monotonic() - started) * 1000),
            error=last_error,
        )
