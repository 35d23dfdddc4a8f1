"""Edge proxy request handler.

Sequences the pipeline for each inbound request:

    config -> access check -> route -> outbound request -> upstream call
    -> response rewrite -> metrics

and is the only place where failures are turned into HTTP responses.
"""

import json
import logging
import traceback
from enum import Enum
from typing import Mapping, Optional

import aiohttp
from multidict import CIMultiDict

from registry_edge.config import ProxyConfig, resolve_config
from registry_edge.errors import ConfigError, ErrorType, ProxyError
from registry_edge.metrics import MetricsCollector
from registry_edge.proxy.access import AccessDecision, evaluate_access
from registry_edge.proxy.context import RequestContext
from registry_edge.proxy.request import InboundRequest, build_outbound_request
from registry_edge.proxy.response import ProxyResponse, rewrite_response
from registry_edge.proxy.routing import BackendRouter
from registry_edge.proxy.upstream import UpstreamClient
from registry_edge.request_log import RequestLogger

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Pipeline position of a request."""
    START = "start"
    CONFIG_VALIDATED = "config_validated"
    ACCESS_CHECKED = "access_checked"
    ROUTED = "routed"
    FORWARDED = "forwarded"
    RESPONSE_REWRITTEN = "response_rewritten"
    COMPLETED = "completed"
    ERROR = "error"


class ProxyHandler:
    """Handles proxied requests against the configured upstreams."""

    def __init__(
        self,
        raw_config: Mapping,
        metrics: Optional[MetricsCollector] = None,
        upstream: Optional[UpstreamClient] = None,
        router: Optional[BackendRouter] = None,
    ):
        self.raw_config = raw_config
        self.metrics = metrics or MetricsCollector()
        self.upstream = upstream or UpstreamClient(self.metrics)
        self.router = router or BackendRouter()

    async def close(self) -> None:
        await self.upstream.close()

    async def handle(self, inbound: InboundRequest) -> ProxyResponse:
        """Proxy one request. Always returns a response, never raises."""
        ctx = RequestContext.from_request(inbound)
        log = RequestLogger(ctx.request_id)
        url = _request_url(inbound)
        stage = Stage.START

        self.metrics.record_request_start(ctx.request_id)
        log.request_start(inbound.method, url, ctx.client_ip, ctx.user_agent, ctx.region)

        try:
            try:
                config = resolve_config(self.raw_config)
            except ConfigError as e:
                log.config_error(e.message)
                raise
            log.debug_enabled = config.debug
            stage = Stage.CONFIG_VALIDATED

            decision = evaluate_access(
                config, inbound.path, ctx.user_agent, ctx.client_ip, ctx.region
            )
            if not decision.allowed:
                stage = Stage.ERROR
                response = self._denied_response(decision, config, ctx, log, inbound)
                return self._complete(response, inbound, url, ctx, log)
            stage = Stage.ACCESS_CHECKED

            # Mirror selection contacts upstream, so it runs only for allowed requests
            default_host = None
            if config.mirror_mode:
                default_host = await self.router.select_mirror(config, self.upstream.probe)
            route = self.router.route(inbound.path, config, default_host)
            log.proxy_routing(ctx.origin_hostname, route.backend_host, route.routing_reason.value)
            stage = Stage.ROUTED

            outbound = build_outbound_request(inbound, route, ctx.origin_hostname, config)
            log.proxy_forward(outbound.url, route.backend_host)
            upstream = await self.upstream.fetch(
                outbound, config.request_timeout, config.max_retries, log
            )
            stage = Stage.FORWARDED

            response = rewrite_response(upstream, inbound.method, route, ctx, config)
            stage = Stage.RESPONSE_REWRITTEN
            log.proxy_response(
                response.status, ctx.elapsed_ms, response.content_type, response.body_rewritten
            )
            log.debug(
                "response_headers",
                backendHost=route.backend_host,
                headers=dict(response.headers),
            )
            stage = Stage.COMPLETED

        except ProxyError as e:
            response = self._error_response(
                e.error_type, e.status_code, e.message, ctx, log, url, stage, e.headers
            )
        except aiohttp.ClientError as e:
            response = self._error_response(
                ErrorType.FETCH_EXCEPTION, 500, f"Upstream request failed: {e}",
                ctx, log, url, stage,
            )
        except Exception as e:
            logger.exception(f"Unhandled error proxying {inbound.method} {inbound.path}")
            response = self._error_response(
                ErrorType.UNKNOWN_ERROR, 500, f"Internal Server Error: {e}",
                ctx, log, url, stage, stack=traceback.format_exc(),
                public_message="Internal Server Error",
            )

        return self._complete(response, inbound, url, ctx, log)

    def _complete(
        self,
        response: ProxyResponse,
        inbound: InboundRequest,
        url: str,
        ctx: RequestContext,
        log: RequestLogger,
    ) -> ProxyResponse:
        # Locally generated bodies are not transferred bytes
        counted = response.headers if response.from_upstream else None
        duration = self.metrics.record_request_end(ctx.request_id, counted)
        log.request_complete(
            inbound.method, url, response.status, duration, ctx.user_agent, ctx.client_ip
        )
        return response

    def _denied_response(
        self,
        decision: AccessDecision,
        config: ProxyConfig,
        ctx: RequestContext,
        log: RequestLogger,
        inbound: InboundRequest,
    ) -> ProxyResponse:
        reason = decision.reason.value
        self.metrics.record_denied(reason)
        log.access_denied(reason, ctx.client_ip, ctx.user_agent, inbound.path)

        if config.url302:
            return ProxyResponse(
                status=302,
                headers=CIMultiDict({"Location": config.url302, "Content-Length": "0"}),
            )

        body = f"Access Denied: {reason}".encode()
        return ProxyResponse(
            status=403,
            headers=CIMultiDict({
                "Content-Type": "text/plain; charset=utf-8",
                "Content-Length": str(len(body)),
            }),
            body=body,
        )

    def _error_response(
        self,
        error_type: ErrorType,
        status_code: int,
        message: str,
        ctx: RequestContext,
        log: RequestLogger,
        url: str,
        stage: Stage,
        headers: Optional[dict[str, str]] = None,
        stack: Optional[str] = None,
        public_message: Optional[str] = None,
    ) -> ProxyResponse:
        """Record a failure and build its JSON response.

        public_message replaces message in the response body when the
        detail must stay in the logs.
        """
        self.metrics.record_error(error_type.value)
        log.request_error(
            message, error_type.value, status_code, ctx.client_ip, ctx.user_agent, url,
            stack=stack,
        )
        logger.debug(f"Request {ctx.request_id} failed at stage {stage.value}")

        body = json.dumps({
            "error": error_type.value,
            "message": public_message or message,
            "requestId": ctx.request_id,
        }).encode()
        response_headers = CIMultiDict({
            "Content-Type": "application/json",
            "Content-Length": str(len(body)),
        })
        response_headers.update(headers or {})
        return ProxyResponse(status=status_code, headers=response_headers, body=body)


def _request_url(inbound: InboundRequest) -> str:
    url = f"{inbound.scheme}://{inbound.host}{inbound.path}"
    if inbound.query_string:
        url = f"{url}?{inbound.query_string}"
    return url
