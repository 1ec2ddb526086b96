"""Health check and API readiness operations.

Polls the inference server's version endpoint until it answers with a
parseable version string or the time budget runs out.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Optional

import httpx

from .exceptions import HealthCheckTimeoutError
from .models import HealthState, HealthStatus

logger = logging.getLogger(__name__)

# Health check configuration constants
HEALTH_CHECK_INTERVAL = 2  # seconds between checks
HEALTH_CHECK_MAX_INTERVAL = 10  # backoff ceiling
HEALTH_CHECK_REQUEST_TIMEOUT = 10  # timeout for each health check request


class HealthVerifier:
    """Readiness prober with a Unchecked -> Checking -> Healthy/Unreachable lifecycle."""

    def __init__(
        self,
        base_url: str,
        path: str = "/api/version",
        backoff_factor: float = 1.0,
        max_interval: float = HEALTH_CHECK_MAX_INTERVAL,
        request_timeout: float = HEALTH_CHECK_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0 so intervals never shrink")
        self.url = f"{base_url.rstrip('/')}{path}"
        self.backoff_factor = backoff_factor
        self.max_interval = max_interval
        self.request_timeout = request_timeout
        self.transport = transport
        self.clock = clock
        self.sleep = sleep
        self.state = HealthState.UNCHECKED
        self.last_status: Optional[HealthStatus] = None

    async def check_once(self, client: Optional[httpx.AsyncClient] = None) -> HealthStatus:
        """Probe the endpoint a single time."""
        if client is None:
            async with httpx.AsyncClient(
                timeout=self.request_timeout, transport=self.transport
            ) as client:
                return await self._attempt(client, 1, self.request_timeout)
        return await self._attempt(client, 1, self.request_timeout)

    async def wait_until_healthy(
        self,
        timeout: float,
        poll_interval: float = HEALTH_CHECK_INTERVAL,
    ) -> HealthStatus:
        """Poll until the server reports a version.

        Failed attempts are recorded and retried; the interval starts at
        ``poll_interval`` and grows by ``backoff_factor`` up to
        ``max_interval``.

        Raises:
            HealthCheckTimeoutError: ``timeout`` elapsed without success.
        """
        self.state = HealthState.CHECKING
        deadline = self.clock() + timeout
        interval = poll_interval
        attempt = 0

        logger.info(f"Waiting for server at {self.url} (timeout={timeout}s)")

        async with httpx.AsyncClient(
            timeout=self.request_timeout, transport=self.transport
        ) as client:
            while True:
                attempt += 1
                remaining = max(deadline - self.clock(), 0.0)
                status = await self._attempt(
                    client, attempt, min(self.request_timeout, max(remaining, 1.0))
                )
                self.last_status = status

                if status.reachable:
                    self.state = HealthState.HEALTHY
                    logger.info(
                        f"Server healthy (version {status.reported_version}) "
                        f"after {attempt} attempt(s)"
                    )
                    return status

                now = self.clock()
                if now >= deadline:
                    self.state = HealthState.UNREACHABLE
                    logger.error(f"Server at {self.url} not healthy after {timeout}s")
                    raise HealthCheckTimeoutError(
                        self.url, timeout, attempt_count=attempt, last_error=status.last_error
                    )

                await self.sleep(min(interval, deadline - now))
                interval = min(max(interval * self.backoff_factor, interval), self.max_interval)

    async def _attempt(
        self, client: httpx.AsyncClient, attempt: int, request_timeout: float
    ) -> HealthStatus:
        """One GET against the version endpoint; errors become HealthStatus.last_error."""
        error: Optional[str] = None
        try:
            response = await client.get(self.url, timeout=request_timeout)
            if response.status_code == 200:
                version = response.json().get("version")
                if isinstance(version, str) and version.strip():
                    return HealthStatus(
                        reachable=True,
                        reported_version=version.strip(),
                        attempt_count=attempt,
                    )
                error = f"no version in response: {response.text[:200]}"
            else:
                error = f"HTTP {response.status_code}"
        except httpx.ConnectError:
            # Server not up yet, expected during startup
            error = "connection refused"
        except httpx.TimeoutException:
            error = "request timed out"
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
        except (ValueError, AttributeError) as e:
            error = f"malformed response: {e}"

        logger.debug(f"Health check {attempt}: {error}")
        return HealthStatus(reachable=False, attempt_count=attempt, last_error=error)
