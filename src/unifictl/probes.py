"""HTTP liveness probes for the controller's web and inform endpoints."""
from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import requests

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A URL the running stack is expected to answer on.

    ``any_status`` endpoints count as up as soon as anything answers over HTTP;
    the others need a status below 400.
    """

    name: str
    url: str
    any_status: bool = False


@dataclass(slots=True)
class ProbeResult:
    """Outcome of probing one endpoint."""

    endpoint: Endpoint
    ok: bool
    status_code: int | None = None
    error: str | None = None
    attempts: int = 1

    def describe(self) -> str:
        if self.ok:
            return f"{self.endpoint.name} up ({self.endpoint.url}, HTTP {self.status_code})"
        reason = self.error or f"HTTP {self.status_code}"
        return f"{self.endpoint.name} not responding ({self.endpoint.url}: {reason})"

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.endpoint.name,
            "url": self.endpoint.url,
            "ok": self.ok,
            "status_code": self.status_code,
            "error": self.error,
            "attempts": self.attempts,
        }


def stack_endpoints(host: str, https_port: str | int, inform_port: str | int) -> list[Endpoint]:
    """Return the management UI and device inform endpoints for *host*."""
    return [
        Endpoint(name="https", url=f"https://{host}:{https_port}/"),
        Endpoint(name="inform", url=f"http://{host}:{inform_port}/inform", any_status=True),
    ]


class ProbeRunner:
    """Issue bounded, retrying GET requests against stack endpoints."""

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Configure the HTTP session, per-request timeout and sleep hook."""
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sleep = sleep

    def probe(self, endpoint: Endpoint) -> ProbeResult:
        """Issue a single request; certificate checks are skipped for HTTPS."""
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", message="Unverified HTTPS request")
                response = self.session.get(
                    endpoint.url,
                    timeout=self.timeout,
                    verify=False,  # noqa: S501 - self-signed until a certificate is deployed
                    allow_redirects=False,
                )
        except requests.RequestException as exc:
            return ProbeResult(endpoint=endpoint, ok=False, error=_short_error(exc))
        status = int(response.status_code)
        ok = endpoint.any_status or status < 400
        return ProbeResult(endpoint=endpoint, ok=ok, status_code=status)

    def wait_for(
        self,
        endpoints: Iterable[Endpoint],
        *,
        attempts: int = 3,
        interval: float = 5.0,
        initial_delay: float = 5.0,
    ) -> list[ProbeResult]:
        """Probe until every endpoint is up or *attempts* rounds have run."""
        pending = list(endpoints)
        results: dict[str, ProbeResult] = {}
        order = [endpoint.name for endpoint in pending]
        if initial_delay > 0 and pending:
            self.sleep(initial_delay)
        for attempt in range(1, max(attempts, 1) + 1):
            still_down: list[Endpoint] = []
            for endpoint in pending:
                result = self.probe(endpoint)
                result.attempts = attempt
                results[endpoint.name] = result
                if not result.ok:
                    still_down.append(endpoint)
            pending = still_down
            if not pending:
                break
            if attempt < attempts and interval > 0:
                _logger.debug("Waiting %.1fs before probing %d endpoint(s) again", interval, len(pending))
                self.sleep(interval)
        return [results[name] for name in order]


def _short_error(exc: requests.RequestException) -> str:
    if isinstance(exc, requests.Timeout):
        return "timed out"
    if isinstance(exc, requests.ConnectionError):
        return "connection refused or unreachable"
    return exc.__class__.__name__


__all__ = ["Endpoint", "ProbeResult", "ProbeRunner", "stack_endpoints"]
