"""Runtime configuration for client, worker and admin commands."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from gearline.servers import DEFAULT_PORT


@dataclass(slots=True)
class ClientSettings:
    """Task submission settings."""

    connect_timeout_ms: int = 1_000
    poll_ceiling_seconds: float = 10.0


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str | None = None
    connect_timeout_ms: int = 1_000
    retry_seconds: float = 5.0
    idle_wait_seconds: float = 60.0


@dataclass(slots=True)
class AdminSettings:
    """Administrative protocol settings."""

    timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    servers: tuple[str, ...] = (f"localhost:{DEFAULT_PORT}",)
    log_level: str = "WARNING"
    client: ClientSettings = field(default_factory=ClientSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    admin: AdminSettings = field(default_factory=AdminSettings)

    @classmethod
    def from_env(cls, servers: tuple[str, ...] = ()) -> Settings:
        """Load settings from environment; explicit ``servers`` win over the env list."""

        connect_timeout_ms = int(os.getenv("GEARLINE_CONNECT_TIMEOUT_MS", "1000"))
        return cls(
            servers=_normalize_servers(servers) or _collect_servers(),
            log_level=os.getenv("GEARLINE_LOG_LEVEL", "WARNING").strip().upper(),
            client=ClientSettings(
                connect_timeout_ms=connect_timeout_ms,
                poll_ceiling_seconds=float(os.getenv("GEARLINE_POLL_CEILING_SECONDS", "10")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("GEARLINE_WORKER_ID") or None,
                connect_timeout_ms=connect_timeout_ms,
                retry_seconds=float(os.getenv("GEARLINE_WORKER_RETRY_SECONDS", "5")),
                idle_wait_seconds=float(os.getenv("GEARLINE_WORKER_IDLE_WAIT_SECONDS", "60")),
            ),
            admin=AdminSettings(
                timeout_seconds=float(os.getenv("GEARLINE_ADMIN_TIMEOUT_SECONDS", "5")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if not self.servers:
            raise ValueError("At least one job server is required. Set GEARLINE_SERVERS.")
        if self.client.connect_timeout_ms <= 0:
            raise ValueError("GEARLINE_CONNECT_TIMEOUT_MS must be > 0.")
        if self.client.poll_ceiling_seconds <= 0:
            raise ValueError("GEARLINE_POLL_CEILING_SECONDS must be > 0.")
        if self.worker.retry_seconds <= 0:
            raise ValueError("GEARLINE_WORKER_RETRY_SECONDS must be > 0.")
        if self.worker.idle_wait_seconds <= 0:
            raise ValueError("GEARLINE_WORKER_IDLE_WAIT_SECONDS must be > 0.")
        if self.admin.timeout_seconds <= 0:
            raise ValueError("GEARLINE_ADMIN_TIMEOUT_SECONDS must be > 0.")


def _collect_servers() -> tuple[str, ...]:
    raw = os.getenv("GEARLINE_SERVERS", "").strip()
    if not raw:
        return (f"localhost:{DEFAULT_PORT}",)
    return _normalize_servers(raw.split(","))


def _normalize_servers(values: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)
