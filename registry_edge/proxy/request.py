"""Outbound request construction.

Turns an inbound client request into the request sent upstream: strips
forwarding and hop-by-hop headers, swaps the public hostname for the
backend hostname, and adds the Docker Registry v2 protocol headers.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterable, Optional, Union

from multidict import CIMultiDict

from registry_edge.config import ProxyConfig
from registry_edge.errors import InvalidDigestError
from registry_edge.proxy.hostname import HostnameRewriter
from registry_edge.proxy.routing import RouteDecision

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "Docker-Distribution-API-Version"
API_VERSION = "registry/2.0"

# Preference order matters: registries pick the first type they can serve
MANIFEST_ACCEPT = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.v1+prettyjws",
    "application/vnd.docker.distribution.manifest.v1+json",
    "application/json",
    "*/*",
)

BLOB_ACCEPT = (
    "application/vnd.oci.image.layer.v1.tar+gzip",
    "application/vnd.oci.image.layer.v1.tar",
    "application/vnd.docker.image.rootfs.diff.tar.gzip",
    "application/vnd.oci.image.config.v1+json",
    "application/vnd.docker.container.image.v1+json",
    "application/octet-stream",
    "*/*",
)

# Client-identity headers set by the fronting edge
FORWARDING_HEADERS = frozenset([
    "cf-connecting-ip",
    "cf-ipcountry",
    "cf-ray",
    "cf-visitor",
    "cf-request-id",
    "x-real-ip",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "forwarded",
])

# HTTP hop-by-hop headers that must not be forwarded
HOP_BY_HOP_HEADERS = frozenset([
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
])

_MANIFEST_PATH = re.compile(r"^/v2/.+/manifests/[^/]+$")
_BLOB_PATH = re.compile(r"^/v2/.+/blobs/(?!uploads(?:/|$))[^/]+$")
_SHA256_DIGEST = re.compile(r"sha256:([^/?#]*)")
_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class InboundRequest:
    """A client request as seen by the proxy."""
    method: str
    path: str
    query_string: str = ""
    headers: CIMultiDict = field(default_factory=CIMultiDict)
    body: Union[bytes, AsyncIterable[bytes]] = b""
    remote_addr: Optional[str] = None
    scheme: str = "http"
    host: str = ""

    @property
    def client_ip(self) -> str:
        for header in ("cf-connecting-ip", "x-real-ip"):
            value = self.headers.get(header)
            if value:
                return value.strip()
        forwarded = self.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return self.remote_addr or ""

    @property
    def region(self) -> str:
        return self.headers.get("cf-ipcountry", "")

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def origin_scheme(self) -> str:
        forwarded_proto = self.headers.get("x-forwarded-proto")
        if forwarded_proto:
            return forwarded_proto.split(",")[0].strip().lower()
        return self.scheme


@dataclass
class OutboundRequest:
    """A request ready to be sent upstream."""
    method: str
    url: str
    headers: CIMultiDict
    body: Union[bytes, AsyncIterable[bytes]] = b""
    allow_redirects: bool = True

    @property
    def replayable(self) -> bool:
        """Whether the body can be sent again on retry."""
        return isinstance(self.body, (bytes, bytearray))


def is_manifest_path(path: str) -> bool:
    return _MANIFEST_PATH.match(path) is not None


def is_blob_path(path: str) -> bool:
    return _BLOB_PATH.match(path) is not None


def validate_blob_digest(path: str) -> None:
    """Reject blob paths whose sha256 digest is not 64 lowercase hex chars.

    Raises:
        InvalidDigestError: If the digest is malformed
    """
    match = _SHA256_DIGEST.search(path)
    if match and not _SHA256_HEX.match(match.group(1)):
        raise InvalidDigestError(f"Invalid sha256 digest: {match.group(0)[:80]}")


def build_outbound_request(
    inbound: InboundRequest,
    route: RouteDecision,
    origin_hostname: str,
    config: ProxyConfig,
) -> OutboundRequest:
    """Build the upstream request for an inbound request.

    Raises:
        InvalidDigestError: For blob paths carrying a malformed sha256 digest
    """
    blob = is_blob_path(inbound.path)
    if blob:
        validate_blob_digest(inbound.path)

    rewriter = HostnameRewriter(origin_hostname, route.backend_host)
    headers = CIMultiDict()
    for name, value in inbound.headers.items():
        lower = name.lower()
        if lower in FORWARDING_HEADERS or lower in HOP_BY_HOP_HEADERS:
            continue
        if lower == "host":
            continue
        # Buffered bodies are re-framed by aiohttp; streamed ones keep their length
        if lower == "content-length" and isinstance(inbound.body, (bytes, bytearray)):
            continue
        if lower == "range":
            headers.add(name, value)
            continue
        headers.add(name, rewriter.rewrite(value))

    if config.forward_client_ip and inbound.client_ip:
        headers["X-Forwarded-For"] = inbound.client_ip

    if is_manifest_path(inbound.path):
        headers["Accept"] = ", ".join(MANIFEST_ACCEPT)
    elif blob:
        headers["Accept"] = ", ".join(BLOB_ACCEPT)

    headers[API_VERSION_HEADER] = API_VERSION

    url = f"{route.backend_protocol}://{route.backend_host}{inbound.path}"
    if inbound.query_string:
        url = f"{url}?{inbound.query_string}"

    return OutboundRequest(
        method=inbound.method,
        url=url,
        headers=headers,
        body=inbound.body,
        allow_redirects=True,
    )
