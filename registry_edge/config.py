"""Configuration management for the registry edge proxy.

Two layers:

- ServerConfig: process settings (bind address, workers) plus the raw proxy
  key/value bag, loaded once from the environment or a YAML file.
- ProxyConfig: the validated, immutable view of the proxy bag, resolved on
  every request by resolve_config().
"""

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

import yaml

from registry_edge.errors import ConfigError
from registry_edge.regex_cache import RegexCache, get_regex_cache

DEFAULT_AUTH_HOSTNAME = "auth.docker.io"
DEFAULT_INDEX_HOSTNAME = "index.docker.io"
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3

# Every key of the proxy bag this service understands
PROXY_KEYS = (
    "PROXY_HOSTNAME",
    "PROXY_PROTOCOL",
    "AUTH_PROXY_HOSTNAME",
    "INDEX_PROXY_HOSTNAME",
    "MIRROR_HOSTNAMES",
    "REQUEST_TIMEOUT",
    "MAX_RETRIES",
    "PATHNAME_REGEX",
    "UA_WHITELIST_REGEX",
    "UA_BLACKLIST_REGEX",
    "IP_WHITELIST_REGEX",
    "IP_BLACKLIST_REGEX",
    "REGION_WHITELIST_REGEX",
    "REGION_BLACKLIST_REGEX",
    "URL302",
    "DEBUG",
    "FORWARD_CLIENT_IP",
)

# Config key -> ProxyConfig attribute for the access-control patterns
REGEX_KEYS = {
    "PATHNAME_REGEX": "pathname_regex",
    "UA_WHITELIST_REGEX": "ua_whitelist_regex",
    "UA_BLACKLIST_REGEX": "ua_blacklist_regex",
    "IP_WHITELIST_REGEX": "ip_whitelist_regex",
    "IP_BLACKLIST_REGEX": "ip_blacklist_regex",
    "REGION_WHITELIST_REGEX": "region_whitelist_regex",
    "REGION_BLACKLIST_REGEX": "region_blacklist_regex",
}

_TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass(frozen=True)
class ProxyConfig:
    """Validated proxy configuration.

    A regex field set to None means the rule is absent and never denies.
    An empty proxy_hostname means mirror mode: the default backend is picked
    from mirror_hostnames at request time.
    """
    proxy_hostname: str
    proxy_protocol: str = "https"
    auth_hostname: str = DEFAULT_AUTH_HOSTNAME
    index_hostname: str = DEFAULT_INDEX_HOSTNAME
    mirror_hostnames: tuple[str, ...] = ()
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT_MS / 1000
    max_retries: int = DEFAULT_MAX_RETRIES
    pathname_regex: Optional[str] = None
    ua_whitelist_regex: Optional[str] = None
    ua_blacklist_regex: Optional[str] = None
    ip_whitelist_regex: Optional[str] = None
    ip_blacklist_regex: Optional[str] = None
    region_whitelist_regex: Optional[str] = None
    region_blacklist_regex: Optional[str] = None
    url302: Optional[str] = None
    debug: bool = False
    forward_client_ip: bool = False

    @property
    def mirror_mode(self) -> bool:
        return not self.proxy_hostname


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _parse_int(raw: Mapping, key: str, default: int) -> int:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _get_str(raw: Mapping, key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_config(raw: Mapping, cache: Optional[RegexCache] = None) -> ProxyConfig:
    """Validate a raw configuration bag and build a ProxyConfig.

    Args:
        raw: Key/value mapping (environment, YAML section, or plain dict)
        cache: Regex cache used to test-compile patterns

    Returns:
        The resolved ProxyConfig

    Raises:
        ConfigError: Naming the offending key on any validation failure
    """
    if cache is None:
        cache = get_regex_cache()

    mirrors = tuple(
        host.strip()
        for host in str(raw.get("MIRROR_HOSTNAMES") or "").split(",")
        if host.strip()
    )
    hostname = _get_str(raw, "PROXY_HOSTNAME") or ""
    if not hostname and not mirrors:
        raise ConfigError("Missing required configurations: PROXY_HOSTNAME")

    protocol = (_get_str(raw, "PROXY_PROTOCOL") or "https").lower()
    if protocol not in ("http", "https"):
        raise ConfigError(f"PROXY_PROTOCOL must be 'http' or 'https', got {protocol!r}")

    timeout_ms = _parse_int(raw, "REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_MS)
    if timeout_ms <= 0:
        raise ConfigError(f"REQUEST_TIMEOUT must be positive, got {timeout_ms}")

    max_retries = _parse_int(raw, "MAX_RETRIES", DEFAULT_MAX_RETRIES)
    if max_retries < 0:
        raise ConfigError(f"MAX_RETRIES must be non-negative, got {max_retries}")

    patterns = {}
    for key, attr in REGEX_KEYS.items():
        pattern = _get_str(raw, key)
        if pattern is not None:
            try:
                cache.get(pattern)
            except re.error as e:
                raise ConfigError(f"Invalid regex in {key}: {e}")
        patterns[attr] = pattern

    return ProxyConfig(
        proxy_hostname=hostname,
        proxy_protocol=protocol,
        auth_hostname=_get_str(raw, "AUTH_PROXY_HOSTNAME") or DEFAULT_AUTH_HOSTNAME,
        index_hostname=_get_str(raw, "INDEX_PROXY_HOSTNAME") or DEFAULT_INDEX_HOSTNAME,
        mirror_hostnames=mirrors,
        request_timeout=timeout_ms / 1000,
        max_retries=max_retries,
        url302=_get_str(raw, "URL302"),
        debug=_parse_bool(raw.get("DEBUG", False)),
        forward_client_ip=_parse_bool(raw.get("FORWARD_CLIENT_IP", False)),
        **patterns,
    )


@dataclass
class ServerConfig:
    """Process-level configuration."""
    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    workers: int = 4

    # Raw proxy bag, resolved per request
    proxy_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.host = os.getenv("HOST", config.host)
        config.port = int(os.getenv("PORT", config.port))
        config.debug = os.getenv("DEBUG", "false").lower() == "true"
        config.workers = int(os.getenv("WORKERS", config.workers))

        config.proxy_env = {
            key: os.environ[key] for key in PROXY_KEYS if key in os.environ
        }

        return config

    @classmethod
    def from_yaml(cls, path: str) -> "ServerConfig":
        """Load configuration from a YAML file layered over the environment."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls.from_env()

        if "server" in data:
            config.host = data["server"].get("host", config.host)
            config.port = data["server"].get("port", config.port)
            config.debug = data["server"].get("debug", config.debug)
            config.workers = data["server"].get("workers", config.workers)

        if "proxy" in data:
            for key, value in (data["proxy"] or {}).items():
                key = key.upper()
                if key not in PROXY_KEYS:
                    raise ConfigError(f"Unknown proxy configuration key: {key}")
                if isinstance(value, list):
                    value = ",".join(str(v) for v in value)
                config.proxy_env[key] = str(value).lower() if isinstance(value, bool) else str(value)

        return config
