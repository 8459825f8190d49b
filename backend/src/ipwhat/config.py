"""Configuration module for IP What using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProbeSettings(BaseSettings):
    """Reachability probe defaults.

    These seed the user-editable settings namespace; once a value has been
    saved through the API the stored value wins.
    """

    model_config = SettingsConfigDict(env_prefix="PROBE_")

    # Cloudflare resolvers serve HTTP on port 80 on both families
    ipv4_target: str = "1.1.1.1"
    ipv6_target: str = "2606:4700:4700::1111"
    timeout_ms: int = 5000
    check_interval_seconds: int = 30
    dns_fqdn: str = "www.cloudflare.com"
    scheme: Literal["http", "https"] = "http"
    fast_failure_ratio: float = Field(
        default=0.8,
        description="Opaque failures faster than this fraction of the timeout count as reachable",
    )


class ScheduleSettings(BaseSettings):
    """Monitoring cadence settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULE_")

    tick_seconds: int = 60
    # When false the check_interval setting is display-only
    follow_check_interval: bool = False
    min_tick_seconds: int = 5
    run_on_start: bool = True


class HistorySettings(BaseSettings):
    """History and event log retention."""

    model_config = SettingsConfigDict(env_prefix="HISTORY_")

    retention_hours: int = 24
    max_events: int = 100
    stats_window: int = 20
    min_jitter_samples: int = 5


class EnrichmentSettings(BaseSettings):
    """Optional public-IP and DNS checks run alongside the probes."""

    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_")

    public_ip_enabled: bool = True
    dns_check_enabled: bool = True
    ipv4_services: list[str] = Field(
        default=[
            "https://checkip.amazonaws.com/",
            "https://icanhazip.com/",
            "https://ifconfig.me/ip",
        ],
        description="Echo services tried in order for the public IPv4 address",
    )
    ipv6_services: list[str] = Field(
        default=[
            "https://v6.ident.me/",
            "https://ipv6.icanhazip.com/",
        ],
        description="Echo services tried in order for the public IPv6 address",
    )


class NotificationSettings(BaseSettings):
    """Connectivity change notification settings."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    enabled: bool = True
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 5.0
    max_alert_history: int = 100


class DatabaseSettings(BaseSettings):
    """Database settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: Path = Path("ipwhat.db")
    # WAL mode for better concurrent access
    wal_mode: bool = True


class ServerSettings(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = "0.0.0.0"
    port: int = 8080
    workers: int = 1  # The monitor is single-writer, keep one worker


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console"] = "json"
    # Include request and cycle correlation IDs
    correlation_id: bool = True


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Sub-configurations
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    notify: NotificationSettings = Field(default_factory=NotificationSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # Application settings
    debug: bool = False
    app_name: str = "IP What"
    version: str = "1.0.0"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Settings are loaded once and cached. To reload, call get_settings.cache_clear().
    """
    return Settings()
