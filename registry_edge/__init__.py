"""
Registry Edge: reverse proxy for container image registries

A Python async service providing:
- Hostname-rewriting proxy in front of Docker Hub style registries
- Path, user-agent, IP and region access control
- Upstream timeouts, retries with backoff, and mirror selection
- Request metrics (JSON snapshot and Prometheus)
"""

from quart import Quart, Response
import logging

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from registry_edge.config import ServerConfig, resolve_config
from registry_edge.errors import ConfigError
from registry_edge.proxy import ProxyHandler


def create_app(
    config: ServerConfig | None = None, handler: ProxyHandler | None = None
) -> Quart:
    """Create and configure the Quart application."""
    app = Quart(__name__)

    if config is None:
        config = ServerConfig.from_env()

    if handler is None:
        handler = ProxyHandler(config.proxy_env)

    app.config["CONFIG"] = config
    app.config["PROXY_HANDLER"] = handler
    # Large uploads are streamed upstream (see routes), so no request size limit
    app.config["MAX_CONTENT_LENGTH"] = None

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Register health endpoints before the catch-all proxy routes
    @app.route("/healthz")
    async def healthz():
        """Health check endpoint."""
        return {"status": "healthy"}, 200

    @app.route("/readyz")
    async def readyz():
        """Readiness check endpoint."""
        try:
            resolve_config(handler.raw_config)
            return {"status": "ready"}, 200
        except ConfigError as e:
            return {"status": "not ready", "error": e.message}, 503

    @app.route("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            generate_latest(handler.metrics.registry),
            status=200,
            content_type=CONTENT_TYPE_LATEST,
        )

    @app.route("/metrics/snapshot")
    async def metrics_snapshot():
        """JSON metrics snapshot."""
        return handler.metrics.snapshot(), 200

    @app.after_serving
    async def close_upstream():
        await handler.close()

    from registry_edge.routes import proxy_bp

    app.register_blueprint(proxy_bp)

    return app
