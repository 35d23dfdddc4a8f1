#!/usr/bin/env python3
"""Entry point for the registry edge proxy."""

import os
import asyncio
import logging

from registry_edge import create_app
from registry_edge.config import ServerConfig, resolve_config
from registry_edge.errors import ConfigError

logger = logging.getLogger(__name__)


def main():
    """Run the application."""
    # Load configuration
    config_path = os.getenv("CONFIG_PATH")
    if config_path and os.path.exists(config_path):
        config = ServerConfig.from_yaml(config_path)
    else:
        config = ServerConfig.from_env()

    # Create app
    app = create_app(config)

    # Config is re-validated per request; a bad one is reported, not fatal
    try:
        resolve_config(config.proxy_env)
    except ConfigError as e:
        logger.error(f"Proxy configuration is invalid: {e.message}")

    # Run with hypercorn for production, or built-in for dev
    if config.debug:
        app.run(host=config.host, port=config.port, debug=True)
    else:
        import hypercorn.asyncio
        from hypercorn.config import Config as HypercornConfig

        hypercorn_config = HypercornConfig()
        hypercorn_config.bind = [f"{config.host}:{config.port}"]
        hypercorn_config.workers = config.workers

        asyncio.run(hypercorn.asyncio.serve(app, hypercorn_config))


if __name__ == "__main__":
    main()
