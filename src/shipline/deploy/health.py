"""Post-deploy health verification over HTTP.

The deployed application exposes ``GET /health`` returning::

    {"status": "ok", "checks": {"database": "ok", "cache": {"status": "ok"}}}

A deployment is healthy only when the endpoint answers HTTP 200 with a
JSON body whose ``status`` equals the expected value and every sub-check
reports the same value. This replaces the workflow's single
``curl -f .../health`` with a probe that also reads the body and retries
with exponential backoff while the stack warms up.

Key Concepts:
    HealthChecker.probe: One GET, returns a ``HealthReport``.
    HealthChecker.wait_until_healthy: ``retries`` probes separated by
        ``interval * backoff**n`` seconds (capped), last report returned.
    HealthChecker.check: ``wait_until_healthy`` that raises
        ``HealthCheckError`` when the endpoint never became healthy.
    evaluate_health: Pure function from (HTTP status, body) to report
        fields; unit-testable without a server.

Tags:
    health, http, httpx, retry, backoff, verification
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import httpx

from shipline.core.errors import HealthCheckError
from shipline.core.logging import get_logger
from shipline.deploy.config import HealthCheckConfig
from shipline.deploy.results import HealthReport

logger = get_logger(__name__)


def _check_value(value: Any) -> str:
    """Normalise a sub-check entry (``"ok"``, ``True``, ``{"status": "ok"}``)."""
    if isinstance(value, dict):
        value = value.get("status", "")
    if value is True:
        return "ok"
    if value is False or value is None:
        return "fail"
    return str(value)


def evaluate_health(
    url: str,
    http_status: int,
    body: Any,
    expected_status: str = "ok",
    required_checks: list[str] | None = None,
) -> HealthReport:
    """Build a report from a health endpoint response."""
    report = HealthReport(url=url, http_status=http_status, body=body)
    expected = expected_status.lower()

    if http_status != 200:
        report.error = f"HTTP {http_status}"
        return report
    if not isinstance(body, dict):
        report.error = "response body is not a JSON object"
        return report

    status = body.get("status")
    report.status = None if status is None else str(status)

    raw_checks = body.get("checks") or {}
    if isinstance(raw_checks, list):
        raw_checks = {
            str(item.get("name", i)): item for i, item in enumerate(raw_checks) if isinstance(item, dict)
        }
    if not isinstance(raw_checks, dict):
        report.error = "'checks' is neither an object nor a list"
        return report

    report.checks = {str(name): _check_value(value) for name, value in raw_checks.items()}
    report.failed_checks = [
        name for name, value in report.checks.items() if value.lower() != expected
    ]
    missing = [name for name in (required_checks or []) if name not in report.checks]
    report.failed_checks.extend(f"{name} (missing)" for name in missing)

    if report.status is None:
        report.error = "response has no 'status' field"
    elif report.status.lower() != expected:
        report.error = f"status is {report.status!r}, expected {expected_status!r}"

    report.ok = report.error is None and not report.failed_checks
    return report


class HealthChecker:
    """Probes the health endpoint described by a ``HealthCheckConfig``.

    Parameters
    ----------
    config
        Endpoint and retry policy.
    client
        httpx client to use; one is created (and owned) when omitted.
    sleep
        Delay function, replaced in tests.
    """

    def __init__(
        self,
        config: HealthCheckConfig,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not config.url:
            raise HealthCheckError("No health check URL configured")
        self.config = config
        self.url: str = config.url
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout_seconds,
                verify=self.config.verify_tls,
                follow_redirects=True,
                headers={"Accept": "application/json"},
            )
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> HealthChecker:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def probe(self) -> HealthReport:
        """One GET against the endpoint."""
        start = time.monotonic()
        try:
            response = self.client.get(self.url, timeout=self.config.timeout_seconds)
        except httpx.HTTPError as exc:
            report = HealthReport(url=self.url, error=f"{type(exc).__name__}: {exc}")
        else:
            try:
                body: Any = response.json()
            except ValueError:
                body = None
            report = evaluate_health(
                self.url,
                response.status_code,
                body,
                expected_status=self.config.expected_status,
                required_checks=self.config.required_checks,
            )
            if body is None and response.status_code == 200:
                report.error = "response is not JSON"
                report.body = response.text[:500]
        report.attempts = 1
        report.elapsed_seconds = time.monotonic() - start
        return report

    def wait_until_healthy(self) -> HealthReport:
        """Probe until healthy or out of retries; returns the last report."""
        delays = self.config.delays()
        start = time.monotonic()
        report = self.probe()
        attempt = 1
        while not report.ok and attempt <= len(delays):
            delay = delays[attempt - 1]
            logger.info(
                "health.retry",
                url=self.url,
                attempt=attempt,
                reason=report.summary,
                next_delay=delay,
            )
            self._sleep(delay)
            report = self.probe()
            attempt += 1
        report.attempts = attempt
        report.elapsed_seconds = time.monotonic() - start
        logger.info("health.result", url=self.url, ok=report.ok, attempts=attempt)
        return report

    def check(self) -> HealthReport:
        """Like ``wait_until_healthy`` but raises when not healthy."""
        report = self.wait_until_healthy()
        if not report.ok:
            raise HealthCheckError(
                f"Health check failed for {self.url}: {report.summary}",
                report=report,
            ).with_context(url=self.url, http_status=report.http_status)
        return report


__all__ = ["HealthChecker", "evaluate_health"]
