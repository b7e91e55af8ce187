"""Deployment topology resolution.

The engine runs either as a single standalone node or as a cluster
coordinated by an external ensemble. :func:`resolve_topology` turns the
optional coordination settings into an immutable :class:`ClusterTopology`;
absent or disabled settings always mean standalone, while a malformed
endpoint list is reported instead of silently dropping clustering.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ConfigError

DEFAULT_COORDINATION_PORT = 2181
DEFAULT_TIMEOUT_MS = 10000


class TopologyMode(str, Enum):
    """How the engine is deployed."""

    STANDALONE = "standalone"
    DISTRIBUTED = "distributed"


class EntityKind(str, Enum):
    """Index unit created for a topology mode."""

    CORE = "core"
    COLLECTION = "collection"


@dataclass(frozen=True)
class CoordinationConfig:
    """Coordination-service settings as supplied by configuration."""

    enabled: bool = False
    connect_string: str = ""
    chroot: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    secure: bool = False
    ca_path: Path | None = None
    cert_path: Path | None = None
    key_path: Path | None = None
    cert_dir: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "connect_string": self.connect_string,
            "chroot": self.chroot,
            "timeout_ms": self.timeout_ms,
            "secure": self.secure,
            "ca_path": str(self.ca_path) if self.ca_path else None,
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
            "cert_dir": str(self.cert_dir) if self.cert_dir else None,
        }


@dataclass(frozen=True)
class TLSMaterial:
    """Client TLS files used to reach the coordination service."""

    ca_path: Path | None = None
    cert_path: Path | None = None
    key_path: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ca_path": str(self.ca_path) if self.ca_path else None,
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
        }


@dataclass(frozen=True)
class SearchEntity:
    """A named index unit to provision."""

    name: str
    kind: EntityKind
    shard_count: int = 1
    replication_factor: int = 1

    def __post_init__(self) -> None:
        """Validate the entity definition."""
        if not self.name:
            raise ConfigError("Search entity name must be non-empty.")
        if self.shard_count < 1 or self.replication_factor < 1:
            raise ConfigError(
                f"Entity '{self.name}' needs shard_count and replication_factor >= 1."
            )


@dataclass(frozen=True)
class ClusterTopology:
    """Resolved deployment topology; immutable for the duration of a run."""

    mode: TopologyMode = TopologyMode.STANDALONE
    coordination_endpoints: tuple[str, ...] = ()
    chroot_path: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    tls_material: TLSMaterial | None = None
    cert_dir: Path | None = None

    def __post_init__(self) -> None:
        """Enforce the distributed/standalone invariants."""
        if self.mode is TopologyMode.DISTRIBUTED and not self.coordination_endpoints:
            raise ConfigError("Distributed topology requires at least one coordination endpoint.")
        if self.mode is TopologyMode.STANDALONE and self.tls_material is not None:
            raise ConfigError("TLS material is only meaningful for a distributed topology.")

    @property
    def is_distributed(self) -> bool:
        """Return ``True`` for a coordinated cluster."""
        return self.mode is TopologyMode.DISTRIBUTED

    @property
    def entity_kind(self) -> EntityKind:
        """Return the entity kind created under this topology."""
        return EntityKind.COLLECTION if self.is_distributed else EntityKind.CORE

    @property
    def connect_string(self) -> str | None:
        """Return the effective connect string (endpoints plus chroot)."""
        if not self.is_distributed:
            return None
        return ",".join(self.coordination_endpoints) + (self.chroot_path or "")

    def entity(
        self,
        name: str,
        *,
        shard_count: int = 1,
        replication_factor: int = 1,
    ) -> SearchEntity:
        """Return a :class:`SearchEntity` whose kind matches this topology."""
        return SearchEntity(
            name=name,
            kind=self.entity_kind,
            shard_count=shard_count,
            replication_factor=replication_factor,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode.value,
            "coordination_endpoints": list(self.coordination_endpoints),
            "chroot_path": self.chroot_path,
            "connect_string": self.connect_string,
            "timeout_ms": self.timeout_ms,
            "tls_material": self.tls_material.to_dict() if self.tls_material else None,
            "cert_dir": str(self.cert_dir) if self.cert_dir else None,
        }


STANDALONE = ClusterTopology()


def resolve_topology(config: CoordinationConfig | None) -> ClusterTopology:
    """Resolve *config* into a :class:`ClusterTopology`.

    Absent, disabled or empty configuration yields the standalone topology
    and never raises. An enabled configuration with a malformed endpoint
    list raises :class:`ConfigError`.
    """
    if config is None or not config.enabled:
        return STANDALONE
    connect_string = (config.connect_string or "").strip()
    if not connect_string:
        return STANDALONE

    hosts_part, slash, embedded = connect_string.partition("/")
    endpoints = parse_endpoints(hosts_part)
    embedded_chroot = _normalise_chroot(slash + embedded) if slash else None
    chroot_path = _compose_chroot(embedded_chroot, _normalise_chroot(config.chroot))

    if config.timeout_ms <= 0:
        raise ConfigError(f"Coordination timeout must be positive. Got {config.timeout_ms}.")

    tls_material: TLSMaterial | None = None
    if config.secure and any((config.ca_path, config.cert_path, config.key_path)):
        tls_material = TLSMaterial(
            ca_path=config.ca_path,
            cert_path=config.cert_path,
            key_path=config.key_path,
        )

    return ClusterTopology(
        mode=TopologyMode.DISTRIBUTED,
        coordination_endpoints=endpoints,
        chroot_path=chroot_path,
        timeout_ms=config.timeout_ms,
        tls_material=tls_material,
        cert_dir=config.cert_dir,
    )


def parse_endpoints(raw: str) -> tuple[str, ...]:
    """Parse a comma-separated ``host[:port]`` list into normalised endpoints."""
    endpoints: list[str] = []
    for index, item in enumerate(raw.split(",")):
        entry = item.strip()
        if not entry:
            raise ConfigError(f"Coordination endpoint #{index + 1} is empty in '{raw}'.")
        host, colon, port_text = entry.rpartition(":")
        if not colon:
            host, port_text = entry, str(DEFAULT_COORDINATION_PORT)
        host = host.strip()
        if not host:
            raise ConfigError(f"Coordination endpoint '{entry}' has an empty host.")
        if not (port_text.isascii() and port_text.isdigit()):
            raise ConfigError(f"Coordination endpoint '{entry}' has a non-numeric port.")
        port = int(port_text)
        if not 0 < port < 65536:
            raise ConfigError(f"Coordination endpoint '{entry}' port is out of range.")
        endpoints.append(f"{host}:{port}")
    return tuple(endpoints)


def _normalise_chroot(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip().rstrip("/")
    if not text:
        return None
    return text if text.startswith("/") else f"/{text}"


def _compose_chroot(embedded: str | None, configured: str | None) -> str | None:
    # Append the configured chroot unless the connect string already ends with it.
    if configured is None:
        return embedded
    if embedded is None:
        return configured
    if embedded.endswith(configured):
        return embedded
    return embedded + configured


__all__ = [
    "ClusterTopology",
    "CoordinationConfig",
    "EntityKind",
    "STANDALONE",
    "SearchEntity",
    "TLSMaterial",
    "TopologyMode",
    "parse_endpoints",
    "resolve_topology",
]
