"""Flatten configured hosts into the list of upstreams to probe."""

import json
import logging
import sqlite3

from .database import get_enabled_host_rows
from .models import (
    EntityKind,
    Host,
    Location,
    ProbeTarget,
    ProxyLocation,
    RedirectLocation,
    StaticLocation,
    StreamPort,
    Upstream,
)

logger = logging.getLogger(__name__)


class MalformedConfigError(ValueError):
    """Raised when a stored location, stream port or upstream can't be parsed."""

    pass


def _load_json_list(raw: object, field_name: str) -> list:
    """Decode a JSON column that should hold a list. NULL means empty."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedConfigError(f"'{field_name}' is not valid JSON: {e}")
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedConfigError(f"'{field_name}' must be a JSON list")
    return value


def _parse_port(value: object, owner: str) -> int:
    """Parse a TCP/UDP port, rejecting fractional and out-of-range values."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise MalformedConfigError(f"{owner} has invalid port {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError, OverflowError):
        raise MalformedConfigError(f"{owner} has invalid port {value!r}")
    if not (1 <= port <= 65535):
        raise MalformedConfigError(f"{owner} port {port} out of range")
    return port


def parse_upstream(data: object) -> Upstream:
    """Parse a ``{server, port, weight}`` entry."""
    if not isinstance(data, dict):
        raise MalformedConfigError("upstream entry must be an object")

    server = data.get("server")
    if not isinstance(server, str) or not server.strip():
        raise MalformedConfigError("upstream is missing 'server'")
    port = _parse_port(data.get("port"), f"upstream {server}")

    try:
        weight = int(data.get("weight", 1))
    except (TypeError, ValueError, OverflowError):
        weight = 1

    return Upstream(server=server.strip(), port=port, weight=weight)


def _parse_upstreams(data: object, owner: str) -> tuple[Upstream, ...]:
    """Parse an upstream list, skipping entries that are malformed."""
    if data is None:
        return ()
    if not isinstance(data, list):
        raise MalformedConfigError(f"{owner} 'upstreams' must be a list")

    upstreams = []
    for index, entry in enumerate(data):
        try:
            upstreams.append(parse_upstream(entry))
        except MalformedConfigError as e:
            logger.warning("Skipping upstream %d of %s: %s", index, owner, e)
    return tuple(upstreams)


def parse_location(data: object) -> Location:
    """Parse a stored location into its typed variant."""
    if not isinstance(data, dict):
        raise MalformedConfigError("location entry must be an object")

    path = str(data.get("path", "/"))
    kind = data.get("type", "proxy")

    if kind == "proxy":
        return ProxyLocation(
            path=path,
            upstreams=_parse_upstreams(data.get("upstreams"), f"location {path}"),
            balance_method=str(data.get("balanceMethod") or "round_robin"),
        )
    if kind == "static":
        return StaticLocation(path=path)
    if kind == "redirect":
        return RedirectLocation(path=path)
    raise MalformedConfigError(f"location {path} has unknown type {kind!r}")


def parse_stream_port(data: object) -> StreamPort:
    """Parse a stored stream port."""
    if not isinstance(data, dict):
        raise MalformedConfigError("stream port entry must be an object")

    port = _parse_port(data.get("port"), "stream port")

    protocol = str(data.get("protocol") or "tcp")
    if protocol not in ("tcp", "udp"):
        raise MalformedConfigError(f"stream port {port} has unknown protocol {protocol!r}")

    return StreamPort(
        port=port,
        protocol=protocol,
        upstreams=_parse_upstreams(data.get("upstreams"), f"stream port {port}"),
        balance_method=str(data.get("balanceMethod") or "round_robin"),
    )


def parse_host(row: sqlite3.Row | dict) -> Host:
    """Build a typed Host from a raw hosts row.

    Individual malformed locations or stream ports are skipped with a
    warning; a malformed JSON column drops the whole column.
    """
    host_id = row["id"]

    try:
        domains = tuple(str(d) for d in _load_json_list(row["domains"], "domains"))
    except MalformedConfigError as e:
        logger.warning("Host %s: %s", host_id, e)
        domains = ()

    locations: list[Location] = []
    try:
        raw_locations = _load_json_list(row["locations"], "locations")
    except MalformedConfigError as e:
        logger.warning("Host %s: %s", host_id, e)
        raw_locations = []
    for index, entry in enumerate(raw_locations):
        try:
            locations.append(parse_location(entry))
        except MalformedConfigError as e:
            logger.warning("Host %s: skipping location %d: %s", host_id, index, e)

    stream_ports: list[StreamPort] = []
    try:
        raw_streams = _load_json_list(row["stream_ports"], "stream_ports")
    except MalformedConfigError as e:
        logger.warning("Host %s: %s", host_id, e)
        raw_streams = []
    for index, entry in enumerate(raw_streams):
        try:
            stream_ports.append(parse_stream_port(entry))
        except MalformedConfigError as e:
            logger.warning("Host %s: skipping stream port %d: %s", host_id, index, e)

    return Host(
        id=host_id,
        domains=domains,
        enabled=bool(row["enabled"]),
        group_id=row["group_id"],
        webhook_url=row["webhook_url"],
        locations=tuple(locations),
        stream_ports=tuple(stream_ports),
    )


def targets_for_host(host: Host) -> list[ProbeTarget]:
    """Flatten one host into probe targets.

    Proxy location upstreams come first, then stream port upstreams. Weight
    and balancing method are ignored: every listed upstream is probed. A
    repeated upstream within the same host and kind yields a single target.
    A disabled host yields none.
    """
    if not host.enabled:
        return []

    targets: list[ProbeTarget] = []
    seen: set[tuple[EntityKind, str]] = set()

    def add(kind: EntityKind, upstream: Upstream, label: str) -> None:
        if (kind, upstream.key) in seen:
            return
        seen.add((kind, upstream.key))
        targets.append(
            ProbeTarget(
                entity_id=host.id,
                entity_kind=kind,
                upstream_key=upstream.key,
                server=upstream.server,
                port=upstream.port,
                entity_label=label,
            )
        )

    for location in host.locations:
        # Static and redirect locations have no upstreams to probe
        if isinstance(location, ProxyLocation):
            for upstream in location.upstreams:
                add(EntityKind.PROXY, upstream, host.label)

    for stream_port in host.stream_ports:
        for upstream in stream_port.upstreams:
            add(EntityKind.STREAM, upstream, f"stream:{stream_port.port}")

    return targets


def enumerate_targets(conn: sqlite3.Connection) -> list[ProbeTarget]:
    """Return every probe target of every enabled host.

    Raises:
        DatabaseError: If the hosts can't be read.
    """
    targets: list[ProbeTarget] = []
    for row in get_enabled_host_rows(conn):
        try:
            host = parse_host(row)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            logger.warning("Skipping malformed host row %s: %s", row["id"], e)
            continue
        targets.extend(targets_for_host(host))
    return targets
