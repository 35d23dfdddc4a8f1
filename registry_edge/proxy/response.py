"""Upstream response rewriting.

Headers pointing at the backend are rewritten to the public hostname, auth
challenges are redirected through the proxy, and textual bodies are streamed
through the hostname rewriter. Binary bodies pass through untouched.
"""

import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Union
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from multidict import CIMultiDict

from registry_edge.config import ProxyConfig
from registry_edge.proxy.context import RequestContext
from registry_edge.proxy.hostname import HostnameRewriter, rewrite_stream
from registry_edge.proxy.request import HOP_BY_HOP_HEADERS
from registry_edge.proxy.routing import RouteDecision

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536

# Content types that may reference the backend hostname in their body
REWRITABLE_CONTENT_TYPES = frozenset([
    "application/json",
    "application/vnd.docker.distribution.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v1+prettyjws",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
])

_REALM = re.compile(r'realm="([^"]+)"')


@dataclass
class ProxyResponse:
    """Response handed back to the client."""
    status: int
    headers: CIMultiDict
    body: Union[bytes, AsyncIterator[bytes]] = b""
    body_rewritten: bool = False
    from_upstream: bool = False

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


def media_type(content_type: str) -> str:
    return content_type.split(";")[0].strip().lower()


def is_rewritable(content_type: str) -> bool:
    return media_type(content_type) in REWRITABLE_CONTENT_TYPES


def rewrite_auth_challenge(
    value: str, auth_hostname: str, origin_scheme: str, origin_hostname: str
) -> str:
    """Point a Bearer realm at the proxy when it targets the auth backend.

    Bearer realm="https://auth.docker.io/token",service="registry.docker.io"
    becomes realm="https://<origin>/token" with path and query kept.
    """
    match = _REALM.search(value)
    if not match:
        return value

    try:
        realm = urlsplit(match.group(1))
        realm_host = realm.hostname
    except ValueError as e:
        logger.warning(f"Failed to parse realm in WWW-Authenticate {value!r}: {e}")
        return value

    if not realm_host or realm_host.lower() != auth_hostname.lower():
        return value

    rewritten = urlunsplit(
        (origin_scheme, origin_hostname, realm.path, realm.query, realm.fragment)
    )
    return value[:match.start(1)] + rewritten + value[match.end(1):]


def rewrite_headers(
    upstream_headers,
    route: RouteDecision,
    ctx: RequestContext,
    config: ProxyConfig,
) -> CIMultiDict:
    """Rewrite upstream response headers for the client."""
    rewriter = HostnameRewriter(route.backend_host, ctx.origin_hostname)
    headers = CIMultiDict()

    for name, value in upstream_headers.items():
        lower = name.lower()
        if lower in HOP_BY_HOP_HEADERS:
            continue
        if lower == "www-authenticate":
            value = rewrite_auth_challenge(
                value, config.auth_hostname, ctx.origin_scheme, ctx.origin_hostname
            )
        headers.add(name, rewriter.rewrite(value))

    headers["X-Proxy-Powered-By"] = "registry-edge"
    if config.debug:
        headers["X-Debug-Backend-Host"] = route.backend_host
        headers["X-Debug-Client-IP"] = ctx.client_ip or "unknown"
        headers["X-Debug-Client-Country"] = ctx.region or "unknown"
        headers.popall("content-security-policy", None)
        headers.popall("content-security-policy-report-only", None)

    return headers


async def _iter_body(response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
    """Stream the upstream body and release the connection when done."""
    try:
        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
            yield chunk
    finally:
        response.release()


def rewrite_response(
    upstream: aiohttp.ClientResponse,
    method: str,
    route: RouteDecision,
    ctx: RequestContext,
    config: ProxyConfig,
) -> ProxyResponse:
    """Build the client response from an open upstream response.

    The upstream connection is released once the returned body is consumed,
    or immediately for bodiless responses.
    """
    headers = rewrite_headers(upstream.headers, route, ctx, config)

    if method.upper() == "HEAD" or upstream.status in (204, 304):
        upstream.release()
        return ProxyResponse(status=upstream.status, headers=headers, from_upstream=True)

    # aiohttp decodes compressed bodies, so the upstream framing no longer applies
    encoding = headers.get("content-encoding", "").strip().lower()
    if encoding and encoding != "identity":
        headers.popall("content-encoding", None)
        headers.popall("content-length", None)

    body = _iter_body(upstream)
    rewritable = is_rewritable(headers.get("content-type", ""))
    if rewritable:
        rewriter = HostnameRewriter(route.backend_host, ctx.origin_hostname)
        body = rewrite_stream(body, rewriter)
        headers.popall("content-length", None)

    return ProxyResponse(
        status=upstream.status,
        headers=headers,
        body=body,
        body_rewritten=rewritable,
        from_upstream=True,
    )
