"""Backend routing.

Maps a request path to the upstream host that serves it. Routing is a
lookup over ROUTE_TABLE; supporting another path convention means adding a
row, not touching callers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from registry_edge.config import ProxyConfig

logger = logging.getLogger(__name__)

# Returns the latency in seconds of a successful existence check, else None
Prober = Callable[[str], Awaitable[Optional[float]]]


class RoutingReason(str, Enum):
    DEFAULT = "default"
    TOKEN_ENDPOINT = "token_endpoint"
    SEARCH_ENDPOINT = "search_endpoint"
    CATALOG_ENDPOINT = "catalog_endpoint"


@dataclass(frozen=True)
class RouteDecision:
    """Where a request is forwarded to."""
    backend_host: str
    backend_protocol: str
    routing_reason: RoutingReason = RoutingReason.DEFAULT


@dataclass(frozen=True)
class RouteRule:
    reason: RoutingReason
    matches: Callable[[str], bool]
    backend: Callable[[ProxyConfig], str]


def _auth_host(config: ProxyConfig) -> str:
    return config.auth_hostname


def _index_host(config: ProxyConfig) -> str:
    return config.index_hostname


# Evaluated in order; the first matching rule wins
ROUTE_TABLE: tuple[RouteRule, ...] = (
    RouteRule(
        RoutingReason.TOKEN_ENDPOINT,
        lambda path: path.endswith("/token") or "/auth" in path,
        _auth_host,
    ),
    RouteRule(
        RoutingReason.SEARCH_ENDPOINT,
        lambda path: path.startswith("/v1/search"),
        _index_host,
    ),
    RouteRule(
        RoutingReason.CATALOG_ENDPOINT,
        lambda path: path.startswith("/v2/_catalog"),
        _index_host,
    ),
    RouteRule(
        RoutingReason.SEARCH_ENDPOINT,
        lambda path: "/search" in path,
        _index_host,
    ),
)


class BackendRouter:
    """Chooses the upstream host for each request."""

    PROBE_TIMEOUT = 3.0
    SELECTION_TTL = 300.0

    def __init__(
        self,
        rules: tuple[RouteRule, ...] = ROUTE_TABLE,
        probe_timeout: float = PROBE_TIMEOUT,
        selection_ttl: float = SELECTION_TTL,
    ):
        self.rules = rules
        self.probe_timeout = probe_timeout
        self.selection_ttl = selection_ttl
        self._selected: dict[tuple[str, ...], tuple[str, float]] = {}

    def route(
        self, path: str, config: ProxyConfig, default_host: Optional[str] = None
    ) -> RouteDecision:
        """Route a request path.

        Args:
            path: Request path
            config: Resolved proxy configuration
            default_host: Overrides config.proxy_hostname (the selected mirror)
        """
        for rule in self.rules:
            if rule.matches(path):
                return RouteDecision(
                    backend_host=rule.backend(config),
                    backend_protocol=config.proxy_protocol,
                    routing_reason=rule.reason,
                )

        return RouteDecision(
            backend_host=default_host or config.proxy_hostname,
            backend_protocol=config.proxy_protocol,
        )

    async def select_mirror(self, config: ProxyConfig, prober: Prober) -> str:
        """Pick the lowest-latency responsive mirror.

        Candidates are probed concurrently, each under its own timeout. When
        every probe fails the first candidate is used. The choice is reused
        for selection_ttl seconds.
        """
        candidates = config.mirror_hostnames
        cached = self._selected.get(candidates)
        now = time.monotonic()
        if cached and now - cached[1] < self.selection_ttl:
            return cached[0]

        latencies = await asyncio.gather(
            *(self._probe(prober, f"{config.proxy_protocol}://{host}/v2/") for host in candidates)
        )
        alive = [
            (latency, host)
            for host, latency in zip(candidates, latencies)
            if latency is not None
        ]

        if alive:
            selected = min(alive, key=lambda item: item[0])[1]
            logger.info(f"Selected mirror {selected} ({len(alive)}/{len(candidates)} responsive)")
        else:
            selected = candidates[0]
            logger.warning(f"No mirror responded, falling back to {selected}")

        self._selected[candidates] = (selected, now)
        return selected

    async def _probe(self, prober: Prober, url: str) -> Optional[float]:
        try:
            return await asyncio.wait_for(prober(url), self.probe_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Mirror probe timed out: {url}")
        except Exception as e:
            logger.debug(f"Mirror probe failed for {url}: {e}")
        return None
