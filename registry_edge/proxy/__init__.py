"""Edge proxy implementation."""

from registry_edge.proxy.proxy import ProxyHandler
from registry_edge.proxy.upstream import UpstreamClient

__all__ = ["ProxyHandler", "UpstreamClient"]
