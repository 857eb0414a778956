"""Data models for upstream health probing and notifications."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EntityKind(str, Enum):
    """Kind of configured entity that owns an upstream."""

    PROXY = "proxy"
    STREAM = "stream"


class HealthStatus(str, Enum):
    """Reachability of a single upstream."""

    UP = "up"
    DOWN = "down"


class NotificationEvent(str, Enum):
    """Event type carried by a webhook notification."""

    UPSTREAM_DOWN = "upstream_down"
    UPSTREAM_UP = "upstream_up"


@dataclass(frozen=True)
class Upstream:
    """A single weighted backend endpoint."""

    server: str
    port: int
    weight: int = 1

    @property
    def key(self) -> str:
        return f"{self.server}:{self.port}"


@dataclass(frozen=True)
class ProxyLocation:
    """HTTP location that forwards traffic to upstreams."""

    path: str
    upstreams: tuple[Upstream, ...] = ()
    balance_method: str = "round_robin"


@dataclass(frozen=True)
class StaticLocation:
    """HTTP location served from a local directory."""

    path: str


@dataclass(frozen=True)
class RedirectLocation:
    """HTTP location answering with a redirect."""

    path: str


Location = ProxyLocation | StaticLocation | RedirectLocation


@dataclass(frozen=True)
class StreamPort:
    """TCP/UDP listener forwarding raw traffic to upstreams."""

    port: int
    protocol: str = "tcp"
    upstreams: tuple[Upstream, ...] = ()
    balance_method: str = "round_robin"


@dataclass(frozen=True)
class Host:
    """A configured host as read from the configuration store.

    Attributes:
        id: Primary key of the host row.
        domains: Domain names served by the host; the first one is its label.
        enabled: Whether the host is active.
        group_id: Owning host group, or None.
        webhook_url: Host-level webhook URL, or None.
        locations: Parsed HTTP locations.
        stream_ports: Parsed stream ports.
    """

    id: int
    domains: tuple[str, ...]
    enabled: bool = True
    group_id: int | None = None
    webhook_url: str | None = None
    locations: tuple[Location, ...] = ()
    stream_ports: tuple[StreamPort, ...] = ()

    @property
    def label(self) -> str:
        return self.domains[0] if self.domains else f"host:{self.id}"


@dataclass(frozen=True)
class HostGroup:
    """A group of hosts sharing a webhook URL."""

    id: int
    name: str
    webhook_url: str | None = None


@dataclass(frozen=True)
class ProbeTarget:
    """One upstream to probe in the current cycle.

    Attributes:
        entity_id: Id of the owning host.
        entity_kind: Whether the upstream belongs to a proxy location or a stream port.
        upstream_key: Stable "server:port" key joining probes with stored history.
        server: Hostname or IP address to connect to.
        port: TCP port to connect to.
        entity_label: Human readable name used in notifications.
    """

    entity_id: int
    entity_kind: EntityKind
    upstream_key: str
    server: str
    port: int
    entity_label: str = ""


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single reachability probe.

    ``response_ms`` is the elapsed time for both outcomes; ``error`` is set
    only when the upstream is down.
    """

    status: HealthStatus
    response_ms: int
    error: str | None = None

    @property
    def is_up(self) -> bool:
        return self.status is HealthStatus.UP


@dataclass(frozen=True)
class HealthRecord:
    """Persisted result of one probe. Never mutated once stored."""

    entity_id: int
    entity_kind: EntityKind
    upstream_key: str
    status: HealthStatus
    response_ms: int | None
    checked_at: datetime

    def __post_init__(self) -> None:
        if self.status is HealthStatus.DOWN and self.response_ms is not None:
            raise ValueError("response_ms must be None for a down record")
        if self.status is HealthStatus.UP and (self.response_ms is None or self.response_ms < 0):
            raise ValueError("response_ms must be a non-negative number for an up record")


@dataclass(frozen=True)
class NotificationPayload:
    """Webhook body describing an upstream transition."""

    event: NotificationEvent
    entity_label: str
    upstream_key: str
    group_name: str | None
    timestamp: datetime
    response_ms: int | None
    message: str

    def to_dict(self) -> dict:
        """Serialize to the JSON shape receivers expect."""
        return {
            "event": self.event.value,
            "host": self.entity_label,
            "upstream": self.upstream_key,
            "group": self.group_name,
            "timestamp": self.timestamp.isoformat(),
            "response_ms": self.response_ms,
            "message": self.message,
        }
