"""Tests for backend routing and mirror selection."""

import asyncio

import pytest

from registry_edge.config import resolve_config
from registry_edge.proxy.routing import (
    ROUTE_TABLE,
    BackendRouter,
    RouteDecision,
    RouteRule,
    RoutingReason,
)


@pytest.fixture
def config():
    return resolve_config({"PROXY_HOSTNAME": "registry-1.docker.io"})


@pytest.fixture
def router():
    return BackendRouter(probe_timeout=0.05)


class TestRoute:
    """Tests for BackendRouter.route."""

    @pytest.mark.parametrize("path,host,reason", [
        ("/v2/library/alpine/manifests/latest", "registry-1.docker.io", RoutingReason.DEFAULT),
        ("/v2/", "registry-1.docker.io", RoutingReason.DEFAULT),
        ("/v2/token", "auth.docker.io", RoutingReason.TOKEN_ENDPOINT),
        ("/token", "auth.docker.io", RoutingReason.TOKEN_ENDPOINT),
        ("/v2/auth/callback", "auth.docker.io", RoutingReason.TOKEN_ENDPOINT),
        ("/v1/search", "index.docker.io", RoutingReason.SEARCH_ENDPOINT),
        ("/v2/_catalog", "index.docker.io", RoutingReason.CATALOG_ENDPOINT),
        ("/api/search/repositories", "index.docker.io", RoutingReason.SEARCH_ENDPOINT),
    ])
    def test_route_table(self, router, config, path, host, reason):
        decision = router.route(path, config)

        assert decision == RouteDecision(host, "https", reason)

    def test_overridden_backends(self, router):
        config = resolve_config({
            "PROXY_HOSTNAME": "registry.example",
            "PROXY_PROTOCOL": "http",
            "AUTH_PROXY_HOSTNAME": "auth.example",
            "INDEX_PROXY_HOSTNAME": "index.example",
        })

        assert router.route("/v2/token", config).backend_host == "auth.example"
        assert router.route("/v2/_catalog", config).backend_host == "index.example"
        assert router.route("/v2/x/blobs/y", config) == RouteDecision("registry.example", "http")

    def test_default_host_override(self, router, config):
        """Test a selected mirror replaces the default backend only."""
        assert router.route("/v2/", config, "mirror.example").backend_host == "mirror.example"
        assert router.route("/v2/token", config, "mirror.example").backend_host == "auth.docker.io"

    def test_extra_rule(self, config):
        """Test new path conventions are added as table rows."""
        rule = RouteRule(
            RoutingReason.CATALOG_ENDPOINT,
            lambda path: path.startswith("/v2/_extensions"),
            lambda cfg: cfg.index_hostname,
        )
        router = BackendRouter(rules=(rule,) + ROUTE_TABLE)

        decision = router.route("/v2/_extensions/list", config)

        assert decision.backend_host == "index.docker.io"


class TestMirrorSelection:
    """Tests for BackendRouter.select_mirror."""

    @pytest.fixture
    def mirror_config(self):
        return resolve_config({"MIRROR_HOSTNAMES": "slow.example,fast.example,down.example"})

    @pytest.mark.asyncio
    async def test_lowest_latency_wins(self, router, mirror_config):
        latencies = {"slow.example": 0.4, "fast.example": 0.1, "down.example": None}
        probed = []

        async def prober(url):
            probed.append(url)
            return latencies[url.split("/")[2]]

        selected = await router.select_mirror(mirror_config, prober)

        assert selected == "fast.example"
        assert sorted(probed) == [
            "https://down.example/v2/",
            "https://fast.example/v2/",
            "https://slow.example/v2/",
        ]

    @pytest.mark.asyncio
    async def test_all_failures_fall_back_to_first(self, router, mirror_config):
        async def prober(url):
            raise ConnectionError("unreachable")

        assert await router.select_mirror(mirror_config, prober) == "slow.example"

    @pytest.mark.asyncio
    async def test_probe_timeout_is_a_failure(self, router, mirror_config):
        async def prober(url):
            if "fast" in url:
                await asyncio.sleep(1)
            return 0.2

        selected = await router.select_mirror(mirror_config, prober)

        assert selected in ("slow.example", "down.example")

    @pytest.mark.asyncio
    async def test_selection_is_reused(self, router, mirror_config):
        calls = []

        async def prober(url):
            calls.append(url)
            return 0.1

        first = await router.select_mirror(mirror_config, prober)
        second = await router.select_mirror(mirror_config, prober)

        assert first == second
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_selection_expires(self, mirror_config):
        router = BackendRouter(selection_ttl=0)
        calls = []

        async def prober(url):
            calls.append(url)
            return 0.1

        await router.select_mirror(mirror_config, prober)
        await router.select_mirror(mirror_config, prober)

        assert len(calls) == 6
