"""Catch-all proxy routes.

Every method on every path not claimed by the health and metrics endpoints
is forwarded through the ProxyHandler.
"""

import logging
from typing import AsyncIterable, AsyncIterator, Union

from multidict import CIMultiDict
from quart import Blueprint, Response, current_app, request

from registry_edge.proxy.request import InboundRequest

logger = logging.getLogger(__name__)

proxy_bp = Blueprint("proxy", __name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Bodies up to this size are buffered so failed attempts can be retried;
# larger or unsized uploads are streamed upstream once
BUFFERED_BODY_LIMIT = 1024 * 1024

BODYLESS_METHODS = frozenset(["GET", "HEAD", "DELETE", "OPTIONS"])


async def _stream(body: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    async for chunk in body:
        yield chunk


async def _request_body() -> Union[bytes, AsyncIterator[bytes]]:
    """Buffer small bodies and stream the rest."""
    length = request.content_length
    chunked = "chunked" in request.headers.get("Transfer-Encoding", "").lower()

    if length is not None and length <= BUFFERED_BODY_LIMIT:
        return await request.get_data()
    if length is None and not chunked and request.method in BODYLESS_METHODS:
        return await request.get_data()

    logger.debug(f"Streaming request body upstream (content-length {length})")
    return _stream(request.body)


async def _inbound_request() -> InboundRequest:
    """Snapshot the current Quart request for the proxy pipeline."""
    headers = CIMultiDict()
    for name, value in request.headers.items():
        headers.add(name, value)

    return InboundRequest(
        method=request.method,
        path=request.path,
        query_string=request.query_string.decode("latin-1"),
        headers=headers,
        body=await _request_body(),
        remote_addr=request.remote_addr,
        scheme=request.scheme,
        host=request.host,
    )


@proxy_bp.route("/", defaults={"path": ""}, methods=PROXY_METHODS)
@proxy_bp.route("/<path:path>", methods=PROXY_METHODS)
async def proxy(path: str):
    """Forward the request upstream."""
    handler = current_app.config["PROXY_HANDLER"]
    result = await handler.handle(await _inbound_request())

    response = Response(
        result.body,
        status=result.status,
        headers=list(result.headers.items()),
    )
    # Keep upstream framing; Quart must not derive its own length
    if "content-length" in result.headers:
        response.headers["Content-Length"] = result.headers["content-length"]
    return response
