"""Access control for proxied requests.

Rules are evaluated in a fixed order and the first failing rule decides the
denial reason. A rule whose pattern is not configured is skipped.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from registry_edge.config import ProxyConfig
from registry_edge.regex_cache import RegexCache, get_regex_cache


class DenialReason(str, Enum):
    PATHNAME_MISMATCH = "pathname_mismatch"
    UA_NOT_WHITELISTED = "ua_not_whitelisted"
    UA_BLACKLISTED = "ua_blacklisted"
    IP_NOT_WHITELISTED = "ip_not_whitelisted"
    IP_BLACKLISTED = "ip_blacklisted"
    REGION_NOT_WHITELISTED = "region_not_whitelisted"
    REGION_BLACKLISTED = "region_blacklisted"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of access evaluation."""
    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason) -> "AccessDecision":
        return cls(allowed=False, reason=reason)


# (config attribute, request attribute, deny when pattern matches, reason)
_RULES = (
    ("pathname_regex", "path", False, DenialReason.PATHNAME_MISMATCH),
    ("ua_whitelist_regex", "user_agent", False, DenialReason.UA_NOT_WHITELISTED),
    ("ua_blacklist_regex", "user_agent", True, DenialReason.UA_BLACKLISTED),
    ("ip_whitelist_regex", "client_ip", False, DenialReason.IP_NOT_WHITELISTED),
    ("ip_blacklist_regex", "client_ip", True, DenialReason.IP_BLACKLISTED),
    ("region_whitelist_regex", "region", False, DenialReason.REGION_NOT_WHITELISTED),
    ("region_blacklist_regex", "region", True, DenialReason.REGION_BLACKLISTED),
)


def evaluate_access(
    config: ProxyConfig,
    path: str,
    user_agent: Optional[str] = None,
    client_ip: Optional[str] = None,
    region: Optional[str] = None,
    cache: Optional[RegexCache] = None,
) -> AccessDecision:
    """Decide whether a request may be forwarded.

    Missing request values are matched as empty strings. The user-agent is
    lower-cased before matching; all other comparisons are case-sensitive.
    A configured whitelist that does not match denies.
    """
    if cache is None:
        cache = get_regex_cache()
    values = {
        "path": path or "",
        "user_agent": (user_agent or "").lower(),
        "client_ip": client_ip or "",
        "region": region or "",
    }

    for config_attr, value_key, deny_on_match, reason in _RULES:
        pattern = cache.get_optional(getattr(config, config_attr))
        if pattern is None:
            continue

        matched = pattern.search(values[value_key]) is not None
        if matched == deny_on_match:
            return AccessDecision.deny(reason)

    return AccessDecision.allow()
