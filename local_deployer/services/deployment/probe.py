"""
HTTP probing of deployed applications.

Used both for startup probing (is the application ready yet?) and for
periodic health probing while it runs.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx

from local_deployer.core.config import HttpProbe
from local_deployer.core.exceptions import ProbeTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"


@dataclass
class ProbeResult:
    """Outcome of a single probe request."""

    healthy: bool
    url: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def probe_url(probe: HttpProbe, port: int, host: Optional[str] = None) -> str:
    """Build the URL a probe targets on a deployed instance."""
    path = probe.path or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{probe.scheme}://{host or DEFAULT_HOST}:{port}{path}"


class ProbeChecker:
    """
    Issues HTTP GET probes. A 2xx response counts as success.

    Args:
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        verify: Verify TLS certificates for https probes
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify: bool = True,
    ):
        self._transport = transport
        self._verify = verify

    async def check(self, url: str, timeout: float) -> ProbeResult:
        """
        Probe a URL once. Never raises for HTTP or connection errors.

        Args:
            url: URL to check (e.g., http://localhost:20000/actuator/health)
            timeout: Timeout in seconds

        Returns:
            ProbeResult
        """
        try:
            async with httpx.AsyncClient(transport=self._transport, verify=self._verify) as client:
                response = await client.get(url, timeout=timeout)
            healthy = response.is_success
            return ProbeResult(healthy=healthy, url=url, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.debug(f"Probe failed for {url}: {e}")
            return ProbeResult(healthy=False, url=url, error=str(e) or type(e).__name__)

    async def wait_until_ready(self, url: str, probe: HttpProbe) -> ProbeResult:
        """
        Poll until the URL answers successfully.

        Waits ``initial_delay`` seconds, then probes every ``period`` seconds
        until success, until ``timeout`` seconds have passed since the first
        attempt, or until ``max_attempts`` probes have failed.

        Raises:
            ProbeTimeoutError: If the application never became ready
        """
        loop = asyncio.get_running_loop()
        if probe.initial_delay:
            await asyncio.sleep(probe.initial_delay)

        deadline = loop.time() + probe.timeout
        attempts = 0
        while True:
            attempts += 1
            result = await self.check(url, probe.request_timeout)
            if result.healthy:
                logger.debug(f"Probe {url} succeeded after {attempts} attempt(s)")
                return result

            reason = result.error or f"HTTP {result.status_code}"
            if probe.max_attempts and attempts >= probe.max_attempts:
                raise ProbeTimeoutError(url, attempts, f"attempts exhausted, last error: {reason}")
            if loop.time() + probe.period > deadline:
                raise ProbeTimeoutError(url, attempts, f"timed out after {probe.timeout}s, last error: {reason}")
            await asyncio.sleep(probe.period)
