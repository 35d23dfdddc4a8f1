"""Per-request structured logging.

Each record is a JSON document written through the standard logging module,
so the sink and formatting stay with the logging configuration.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger("registry_edge.requests")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def safe_url(url: str) -> str:
    """Drop query string and fragment, which may carry credentials."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RequestLogger:
    """Structured logger bound to a single request."""

    MAX_LOGS_PER_REQUEST = 100

    def __init__(self, request_id: Optional[str] = None, debug: bool = False):
        self.request_id = request_id or str(uuid.uuid4())
        self.debug_enabled = debug
        self.start_time = time.monotonic()
        self.log_count = 0

    def _log(self, level: str, event: str, **data) -> None:
        if self.log_count >= self.MAX_LOGS_PER_REQUEST:
            if self.log_count == self.MAX_LOGS_PER_REQUEST:
                self.log_count += 1
                logger.warning(json.dumps({
                    "timestamp": _now(),
                    "requestId": self.request_id,
                    "level": "warn",
                    "event": "log_limit_reached",
                    "message": "Log limit reached, suppressing further logs",
                    "maxLogs": self.MAX_LOGS_PER_REQUEST,
                }))
            return

        self.log_count += 1
        entry = {
            "timestamp": _now(),
            "requestId": self.request_id,
            "level": level,
            "event": event,
            **data,
        }
        logger.log(_LEVELS[level], json.dumps(entry, default=str))

    def request_start(self, method: str, url: str, client_ip: str, user_agent: str, region: str) -> None:
        self._log(
            "info", "request_start",
            method=method, url=safe_url(url), clientIp=client_ip,
            userAgent=user_agent, country=region,
        )

    def proxy_routing(self, origin_hostname: str, backend_host: str, reason: str) -> None:
        self._log(
            "info", "proxy_routing",
            originalHostname=origin_hostname, selectedHostname=backend_host,
            routingReason=reason,
        )

    def proxy_forward(self, target_url: str, backend_host: str) -> None:
        self._log("info", "proxy_forward", targetUrl=safe_url(target_url), proxyHostname=backend_host)

    def upstream_retry(
        self, attempt: int, delay: float, previous_outcome: str, previous_latency_ms: float
    ) -> None:
        self._log(
            "warn", "upstream_retry",
            attempt=attempt, delaySeconds=delay, previousOutcome=previous_outcome,
            previousLatency=round(previous_latency_ms, 2),
        )

    def proxy_response(self, status: int, duration_ms: float, content_type: str, rewritten: bool) -> None:
        self._log(
            "info", "proxy_response",
            status=status, duration=round(duration_ms, 2),
            contentType=content_type, bodyRewritten=rewritten,
        )

    def access_denied(self, reason: str, client_ip: str, user_agent: str, pathname: str) -> None:
        self._log(
            "warn", "access_denied",
            reason=reason, clientIp=client_ip, userAgent=user_agent, pathname=pathname,
        )

    def config_error(self, message: str) -> None:
        self._log("error", "config_error", error=message, errorType="CONFIG_ERROR")

    def request_error(
        self,
        message: str,
        error_type: str,
        status_code: int,
        client_ip: str,
        user_agent: str,
        url: str,
        stack: Optional[str] = None,
    ) -> None:
        record = {
            "message": message,
            "type": error_type,
            "statusCode": status_code,
            "clientIp": client_ip,
            "userAgent": user_agent,
            "url": safe_url(url),
        }
        if stack and self.debug_enabled:
            record["stack"] = stack
        self._log("error", "request_error", **record)

    def request_complete(
        self, method: str, url: str, status: int, duration_ms: float,
        user_agent: str, client_ip: str,
    ) -> None:
        self._log(
            "info", "request_complete",
            method=method, url=safe_url(url), status=status,
            duration=round(duration_ms, 2), userAgent=user_agent, clientIp=client_ip,
        )

    def debug(self, event: str, **data) -> None:
        if self.debug_enabled:
            self._log("debug", event, **data)
