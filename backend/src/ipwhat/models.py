"""Data models for IP What using Pydantic."""

import ipaddress
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def now_ms() -> int:
    """Wall-clock time in integer milliseconds since the epoch."""
    return int(time.time() * 1000)


class AddressFamily(str, Enum):
    """Address families probed independently every cycle."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.IPV4 else "IPv6"


class ErrorKind(str, Enum):
    """Why a probe or enrichment check did not produce a positive result."""

    TIMEOUT = "timeout"  # No response within the budget
    CONNECTION_FAILED = "connection_failed"  # Slow opaque failure, treated as unreachable
    ENRICHMENT_UNAVAILABLE = "enrichment_unavailable"  # Optional check failed


class Direction(str, Enum):
    """Direction of a reachability transition."""

    UP = "up"
    DOWN = "down"


class AlertSeverity(str, Enum):
    """Severity of the aggregate per-cycle alert."""

    DOWN = "down"
    RESTORED = "restored"


@dataclass(frozen=True)
class Target:
    """A literal address to probe for one family."""

    family: AddressFamily
    address: str

    def url(self, scheme: str = "http") -> str:
        """URL for the literal, bracketed for IPv6 so no resolver is involved."""
        host = f"[{self.address}]" if self.family is AddressFamily.IPV6 else self.address
        return f"{scheme}://{host}/"


# ============================================
# Probe Models
# ============================================


class ProbeResult(BaseModel):
    """Outcome of one reachability probe."""

    model_config = ConfigDict(frozen=True)

    connected: bool
    latency_ms: int | None = None
    timestamp: int = Field(default_factory=now_ms)
    error_kind: ErrorKind | None = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "ProbeResult":
        if self.connected and self.error_kind is not None:
            raise ValueError("a connected probe cannot carry an error kind")
        if not self.connected and self.error_kind is None:
            raise ValueError("an unreachable probe needs an error kind")
        if not self.connected and self.latency_ms is not None:
            raise ValueError("latency is only recorded for measured outcomes")
        return self


class FamilyStatus(BaseModel):
    """Latest reachability status for one family."""

    connected: bool
    latency_ms: int | None = None
    last_checked: int
    error_kind: ErrorKind | None = None

    @classmethod
    def from_probe(cls, result: ProbeResult) -> "FamilyStatus":
        return cls(
            connected=result.connected,
            latency_ms=result.latency_ms,
            last_checked=result.timestamp,
            error_kind=result.error_kind,
        )


class DnsCheckResult(BaseModel):
    """Result of resolving the configured FQDN."""

    fqdn: str
    resolved: bool | None = None
    ipv4_addresses: list[str] = Field(default_factory=list)
    ipv6_addresses: list[str] = Field(default_factory=list)
    latency_ms: int | None = None
    error_kind: ErrorKind | None = None


class StatusSnapshot(BaseModel):
    """Everything a reader needs to render the current state."""

    last_check: int | None = None
    ipv4: FamilyStatus | None = None
    ipv6: FamilyStatus | None = None
    public_ipv4: str | None = None
    public_ipv6: str | None = None
    dns: DnsCheckResult | None = None
    cycle_count: int = 0

    def family(self, family: AddressFamily) -> FamilyStatus | None:
        return self.ipv4 if family is AddressFamily.IPV4 else self.ipv6


# ============================================
# History Models
# ============================================


class HistoryEntry(BaseModel):
    """One monitoring cycle. A null verdict means the family was not probed."""

    model_config = ConfigDict(frozen=True)

    timestamp: int
    ipv4: bool | None = None
    ipv6: bool | None = None
    ipv4_latency_ms: int | None = None
    ipv6_latency_ms: int | None = None
    ipv4_jitter: int | None = None
    ipv6_jitter: int | None = None
    ipv4_packet_loss: int | None = None
    ipv6_packet_loss: int | None = None

    @classmethod
    def from_probes(
        cls,
        timestamp: int,
        ipv4: ProbeResult | None,
        ipv6: ProbeResult | None,
    ) -> "HistoryEntry":
        """Build an entry without derived statistics."""
        return cls(
            timestamp=timestamp,
            ipv4=ipv4.connected if ipv4 else None,
            ipv6=ipv6.connected if ipv6 else None,
            ipv4_latency_ms=ipv4.latency_ms if ipv4 else None,
            ipv6_latency_ms=ipv6.latency_ms if ipv6 else None,
        )

    def verdict(self, family: AddressFamily) -> bool | None:
        return self.ipv4 if family is AddressFamily.IPV4 else self.ipv6

    def latency(self, family: AddressFamily) -> int | None:
        if family is AddressFamily.IPV4:
            return self.ipv4_latency_ms
        return self.ipv6_latency_ms


class ConnectivityEvent(BaseModel):
    """A reachability transition for one family."""

    model_config = ConfigDict(frozen=True)

    timestamp: int
    family: AddressFamily
    direction: Direction
    message: str

    @classmethod
    def transition(
        cls, family: AddressFamily, connected: bool, timestamp: int
    ) -> "ConnectivityEvent":
        direction = Direction.UP if connected else Direction.DOWN
        word = "connected" if connected else "disconnected"
        return cls(
            timestamp=timestamp,
            family=family,
            direction=direction,
            message=f"{family.label} {word}",
        )


@dataclass(frozen=True)
class VerdictState:
    """Per-family verdicts as of the previous cycle. None means no baseline yet."""

    ipv4: bool | None = None
    ipv6: bool | None = None

    def get(self, family: AddressFamily) -> bool | None:
        return self.ipv4 if family is AddressFamily.IPV4 else self.ipv6


# ============================================
# Settings Models
# ============================================


class MonitorSettings(BaseModel):
    """User-editable monitoring settings, re-read at the start of every cycle."""

    ipv4_target: str
    ipv6_target: str
    timeout_ms: int = Field(ge=1)
    check_interval_seconds: int = Field(ge=1)
    dns_fqdn: str = Field(min_length=1)

    @field_validator("ipv4_target")
    @classmethod
    def _validate_ipv4(cls, value: str) -> str:
        value = value.strip()
        if value:
            ipaddress.IPv4Address(value)
        return value

    @field_validator("ipv6_target")
    @classmethod
    def _validate_ipv6(cls, value: str) -> str:
        value = value.strip().strip("[]")
        if value:
            ipaddress.IPv6Address(value)
        return value

    @field_validator("dns_fqdn")
    @classmethod
    def _strip_fqdn(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("dns_fqdn must not be blank")
        return value

    def target(self, family: AddressFamily) -> Target | None:
        """The probe target, or None when the family is switched off (blank)."""
        address = self.ipv4_target if family is AddressFamily.IPV4 else self.ipv6_target
        if not address:
            return None
        return Target(family=family, address=address)


class MonitorSettingsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their stored value."""

    ipv4_target: str | None = None
    ipv6_target: str | None = None
    timeout_ms: int | None = None
    check_interval_seconds: int | None = None
    dns_fqdn: str | None = None


# ============================================
# Alert Models
# ============================================


class Alert(BaseModel):
    """Aggregate notification raised once per cycle with transitions."""

    id: str
    title: str
    message: str
    severity: AlertSeverity
    timestamp: int = Field(default_factory=now_ms)
    events: list[ConnectivityEvent] = Field(default_factory=list)


# ============================================
# Health Models
# ============================================


class ComponentHealth(BaseModel):
    """Health status of a component."""

    name: str
    healthy: bool
    message: str = "OK"
    last_check: datetime = Field(default_factory=datetime.utcnow)


class HealthStatus(BaseModel):
    """Overall application health status."""

    status: str = "healthy"  # healthy, degraded, unhealthy
    uptime_seconds: float
    version: str

    components: list[ComponentHealth] = Field(default_factory=list)

    last_check: int | None = None
    cycle_count: int = 0
    db_connected: bool = True
    details: dict[str, Any] = Field(default_factory=dict)
