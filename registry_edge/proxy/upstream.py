"""Upstream registry client.

Executes outbound requests with a per-attempt timeout and retries with
exponential backoff. Failed attempts are recorded in the metrics collector.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp
from aiohttp_retry import ExponentialRetry

from registry_edge.errors import UpstreamTimeoutError
from registry_edge.metrics import MetricsCollector
from registry_edge.proxy.request import OutboundRequest
from registry_edge.request_log import RequestLogger

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class UpstreamAttempt:
    """One try at an upstream call."""
    attempt_number: int
    started_at: float
    outcome: AttemptOutcome = AttemptOutcome.SUCCESS
    latency: float = 0.0


def default_retry_options(attempts: int) -> ExponentialRetry:
    """Backoff schedule: 0.5s doubling per attempt, capped at 5s."""
    return ExponentialRetry(
        attempts=attempts,
        start_timeout=0.5,
        max_timeout=5.0,
        factor=2.0,
    )


class UpstreamClient:
    """Client for the upstream registry hosts."""

    def __init__(
        self,
        metrics: MetricsCollector,
        session: Optional[aiohttp.ClientSession] = None,
        retry_options: Optional[ExponentialRetry] = None,
    ):
        self.metrics = metrics
        self.retry_options = retry_options
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Return the shared session, creating it on first use."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=100)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=300),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _backoff(self, attempts: int, retry: int) -> float:
        options = self.retry_options or default_retry_options(attempts)
        return options.get_timeout(retry)

    async def fetch(
        self,
        outbound: OutboundRequest,
        timeout: float,
        max_retries: int,
        log: Optional[RequestLogger] = None,
    ) -> aiohttp.ClientResponse:
        """Send a request upstream, retrying on failure.

        Makes at most max(max_retries, 1) attempts. Timeouts, transport errors
        and non-2xx responses are retried while attempts remain; a 401 is a
        valid auth challenge and is returned immediately. A streamed request
        body can be read only once, so such requests get a single attempt.

        Args:
            outbound: Request to send
            timeout: Seconds allowed per attempt until response headers arrive
            max_retries: Total number of attempts
            log: Request-scoped logger

        Returns:
            The open upstream response; the caller must release it

        Raises:
            UpstreamTimeoutError: If the last attempt timed out
            aiohttp.ClientError: If the last attempt failed in transport
        """
        attempts = max(max_retries, 1) if outbound.replayable else 1
        session = await self._get_session()
        history: list[UpstreamAttempt] = []

        for number in range(1, attempts + 1):
            if number > 1:
                self.metrics.record_retry()
                delay = self._backoff(attempts, number - 2)
                if log:
                    previous = history[-1]
                    log.upstream_retry(number, delay, previous.outcome.value, previous.latency * 1000)
                if delay > 0:
                    await asyncio.sleep(delay)

            attempt = UpstreamAttempt(attempt_number=number, started_at=time.monotonic())
            history.append(attempt)
            last_attempt = number == attempts

            try:
                response = await asyncio.wait_for(
                    session.request(
                        outbound.method,
                        outbound.url,
                        headers=outbound.headers,
                        data=outbound.body or None,
                        allow_redirects=outbound.allow_redirects,
                    ),
                    timeout,
                )
            except asyncio.TimeoutError:
                attempt.outcome = AttemptOutcome.TIMEOUT
                attempt.latency = time.monotonic() - attempt.started_at
                self.metrics.record_timeout()
                logger.warning(
                    f"Upstream attempt {number}/{attempts} timed out after {timeout}s: {outbound.url}"
                )
                if last_attempt:
                    raise UpstreamTimeoutError(
                        f"Upstream request timed out after {attempts} attempt(s)"
                    )
                continue
            except aiohttp.ClientError as e:
                attempt.outcome = AttemptOutcome.TRANSPORT_ERROR
                attempt.latency = time.monotonic() - attempt.started_at
                logger.warning(f"Upstream attempt {number}/{attempts} failed: {e}")
                if last_attempt:
                    raise
                continue

            attempt.latency = time.monotonic() - attempt.started_at
            status = response.status
            if 200 <= status < 300 or status == 401 or last_attempt:
                return response

            logger.info(f"Upstream attempt {number}/{attempts} returned {status}, retrying")
            response.release()

        # Unreachable: the last attempt always returns or raises
        raise RuntimeError("retry loop exited without a result")

    async def probe(self, url: str) -> Optional[float]:
        """Lightweight existence check used for mirror selection.

        Returns:
            Latency in seconds if the host answered below 500, else None
        """
        session = await self._get_session()
        started = time.monotonic()
        async with session.head(url, allow_redirects=True) as resp:
            if resp.status < 500:
                return time.monotonic() - started
        return None
