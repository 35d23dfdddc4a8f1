"""Tests for per-request structured logging."""

import json
import logging

import pytest

from registry_edge.request_log import RequestLogger, safe_url


def records(caplog):
    return [
        json.loads(r.getMessage())
        for r in caplog.records
        if r.name == "registry_edge.requests"
    ]


@pytest.fixture(autouse=True)
def capture(caplog):
    caplog.set_level(logging.DEBUG, logger="registry_edge.requests")


class TestSafeUrl:
    """Tests for safe_url."""

    @pytest.mark.parametrize("url,expected", [
        ("https://h.example/v2/token?account=bob&secret=x", "https://h.example/v2/token"),
        ("https://h.example/v2/#frag", "https://h.example/v2/"),
        ("https://h.example/v2/", "https://h.example/v2/"),
    ])
    def test_strips_query_and_fragment(self, url, expected):
        assert safe_url(url) == expected


class TestRequestLogger:
    """Tests for RequestLogger."""

    def test_record_shape(self, caplog):
        log = RequestLogger("req-1")

        log.request_start("GET", "https://h.example/v2/?x=1", "203.0.113.7", "docker/24.0", "DE")

        (entry,) = records(caplog)
        assert entry["requestId"] == "req-1"
        assert entry["event"] == "request_start"
        assert entry["level"] == "info"
        assert entry["url"] == "https://h.example/v2/"
        assert entry["clientIp"] == "203.0.113.7"
        assert entry["country"] == "DE"
        assert "timestamp" in entry

    def test_levels(self, caplog):
        log = RequestLogger("req-1")

        log.access_denied("ip_blacklisted", "10.0.0.5", "docker", "/v2/")
        log.config_error("PROXY_HOSTNAME is required")

        levels = [r.levelno for r in caplog.records if r.name == "registry_edge.requests"]
        assert levels == [logging.WARNING, logging.ERROR]

    def test_retry_carries_previous_latency(self, caplog):
        log = RequestLogger("req-1")

        log.upstream_retry(2, 0.5, "timeout", 1234.5678)

        (entry,) = records(caplog)
        assert entry["event"] == "upstream_retry"
        assert entry["previousOutcome"] == "timeout"
        assert entry["previousLatency"] == 1234.57

    def test_log_cap(self, caplog):
        """Test a request stops logging after the cap and says so once."""
        log = RequestLogger("req-1")

        for _ in range(RequestLogger.MAX_LOGS_PER_REQUEST + 20):
            log.proxy_forward("https://backend.example/v2/", "backend.example")

        entries = records(caplog)
        assert len(entries) == RequestLogger.MAX_LOGS_PER_REQUEST + 1
        assert entries[-1]["event"] == "log_limit_reached"
        assert entries[-1]["maxLogs"] == RequestLogger.MAX_LOGS_PER_REQUEST

    def test_debug_suppressed_unless_enabled(self, caplog):
        RequestLogger("quiet").debug("response_headers", headers={})
        RequestLogger("loud", debug=True).debug("response_headers", headers={})

        assert [e["requestId"] for e in records(caplog)] == ["loud"]

    def test_stack_only_in_debug(self, caplog):
        args = ("boom", "UNKNOWN_ERROR", 500, "1.2.3.4", "curl", "https://h.example/v2/")

        RequestLogger("quiet").request_error(*args, stack="Traceback ...")
        RequestLogger("loud", debug=True).request_error(*args, stack="Traceback ...")

        quiet, loud = records(caplog)
        assert "stack" not in quiet
        assert loud["stack"] == "Traceback ..."
        assert loud["statusCode"] == 500
        assert loud["type"] == "UNKNOWN_ERROR"

    def test_generated_request_id(self):
        assert RequestLogger().request_id != RequestLogger().request_id
