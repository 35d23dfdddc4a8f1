"""Request-scoped state passed through the proxy pipeline."""

import time
import uuid
from dataclasses import dataclass, field

from registry_edge.proxy.request import InboundRequest


@dataclass
class RequestContext:
    """Identity and timing of one inbound request."""
    request_id: str
    origin_hostname: str
    origin_scheme: str = "https"
    client_ip: str = ""
    region: str = ""
    user_agent: str = ""
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def from_request(cls, inbound: InboundRequest) -> "RequestContext":
        """Build the context, reusing the edge's request id when present."""
        return cls(
            request_id=inbound.headers.get("cf-request-id") or str(uuid.uuid4()),
            origin_hostname=inbound.host,
            origin_scheme=inbound.origin_scheme,
            client_ip=inbound.client_ip,
            region=inbound.region,
            user_agent=inbound.user_agent,
        )

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000
