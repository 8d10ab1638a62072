"""
Per-mapping and system health.

A mapping's status is derived from its error counters, its breaker and how
long ago it last did anything. The background loop only samples and logs
status changes; the HTTP endpoints and the ``health`` command compute fresh
values on demand.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from discord.ext import tasks

from .registry import MappingRegistry
from .resilience import CircuitBreaker, ErrorHandler

log = logging.getLogger("red.forum_sync.health")

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

UNHEALTHY_ERRORS = 10
DEGRADED_ERRORS = 5
INACTIVITY_LIMIT = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MappingHealth:
    mapping_id: str
    repository: str
    channel_id: int
    status: str
    last_check: datetime
    thread_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    rejected: int = 0
    last_error: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    circuit: str = "closed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mapping_id": self.mapping_id,
            "repository": self.repository,
            "channel_id": str(self.channel_id),
            "status": self.status,
            "last_check": self.last_check.isoformat(),
            "metrics": {
                "thread_count": self.thread_count,
                "error_count": self.error_count,
                "consecutive_errors": self.consecutive_errors,
                "rejected": self.rejected,
                "last_error": self.last_error.isoformat() if self.last_error else None,
                "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            },
            "circuit": self.circuit,
        }


@dataclass
class SystemHealth:
    status: str
    timestamp: datetime
    uptime: float
    mappings: List[MappingHealth] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for m in self.mappings if m.status == status)


class HealthMonitor:
    def __init__(
        self,
        registry: MappingRegistry,
        error_handler: ErrorHandler,
        breaker: CircuitBreaker,
        *,
        interval: float = 60,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.error_handler = error_handler
        self.breaker = breaker
        self._now = now
        self.started_at = now()
        self._last_activity: Dict[str, datetime] = {}
        self._last_status: Dict[str, str] = {}
        self.health_loop = tasks.loop(seconds=interval)(self._sample)

    # ----------------------
    # Lifecycle
    # ----------------------
    def start(self) -> None:
        if not self.health_loop.is_running():
            self.health_loop.start()
            log.debug("Health monitor started (every %ss)", self.health_loop.seconds)

    def stop(self) -> None:
        if self.health_loop.is_running():
            self.health_loop.cancel()
            log.debug("Health monitor stopped")

    async def _sample(self) -> None:
        try:
            for mapping in self.registry.all_mappings():
                health = self.get_mapping_health(mapping.id)
                if health is None:
                    continue
                previous = self._last_status.get(mapping.id)
                if previous is not None and previous != health.status:
                    level = logging.INFO if health.status == HEALTHY else logging.WARNING
                    log.log(level, "Mapping %s is now %s (was %s)", mapping.id, health.status, previous)
                self._last_status[mapping.id] = health.status
        except Exception:
            log.exception("Error in health check loop")

    # ----------------------
    # Recording
    # ----------------------
    def record_activity(self, mapping_id: str) -> None:
        self._last_activity[mapping_id] = self._now()

    def reset_mapping_health(self, mapping_id: str) -> None:
        self._last_activity.pop(mapping_id, None)
        self._last_status.pop(mapping_id, None)
        self.error_handler.reset_metrics(mapping_id)
        self.breaker.reset(mapping_id)

    # ----------------------
    # Queries
    # ----------------------
    def get_mapping_health(self, mapping_id: str) -> Optional[MappingHealth]:
        mapping = self.registry.get_mapping(mapping_id)
        store = self.registry.get_store(mapping_id)
        if mapping is None or store is None:
            return None

        now = self._now()
        metrics = self.error_handler.get_metrics(mapping_id)
        consecutive = metrics.consecutive_errors if metrics else 0
        last_activity = self._last_activity.get(mapping_id)

        if consecutive > UNHEALTHY_ERRORS:
            status = UNHEALTHY
        elif consecutive > DEGRADED_ERRORS or self.breaker.is_open(mapping_id):
            status = DEGRADED
        elif last_activity is not None and now - last_activity > INACTIVITY_LIMIT:
            status = DEGRADED
        else:
            status = HEALTHY

        return MappingHealth(
            mapping_id=mapping_id,
            repository=mapping.repo_key,
            channel_id=mapping.channel_id,
            status=status,
            last_check=now,
            thread_count=len(store.threads),
            error_count=metrics.total_errors if metrics else 0,
            consecutive_errors=consecutive,
            rejected=metrics.rejected if metrics else 0,
            last_error=metrics.last_error_time if metrics else None,
            last_activity=last_activity,
            circuit=self.breaker.state(mapping_id).status.value,
        )

    def get_system_health(self) -> SystemHealth:
        mappings = self.registry.all_mappings()
        healths = [h for h in (self.get_mapping_health(m.id) for m in mappings) if h is not None]
        now = self._now()
        total = len(mappings)

        unhealthy = sum(1 for h in healths if h.status == UNHEALTHY)
        degraded = sum(1 for h in healths if h.status == DEGRADED)
        if unhealthy > total * 0.5:
            status = UNHEALTHY
        elif unhealthy > 0 or degraded > total * 0.3:
            status = DEGRADED
        else:
            status = HEALTHY

        return SystemHealth(
            status=status,
            timestamp=now,
            uptime=(now - self.started_at).total_seconds(),
            mappings=healths,
        )

    def get_health_check(self) -> Dict[str, str]:
        health = self.get_system_health()
        return {"status": health.status, "timestamp": health.timestamp.isoformat()}

    def get_metrics(self) -> Dict[str, Any]:
        health = self.get_system_health()
        return {
            "system": {
                "status": health.status,
                "uptime": health.uptime,
                "mappings": {
                    "total": len(self.registry),
                    "healthy": health.count(HEALTHY),
                    "degraded": health.count(DEGRADED),
                    "unhealthy": health.count(UNHEALTHY),
                },
            },
            "mappings": [
                {
                    "id": h.mapping_id,
                    "repository": h.repository,
                    "status": h.status,
                    "threads": h.thread_count,
                    "errors": h.error_count,
                    "rejected": h.rejected,
                    "circuit": h.circuit,
                    "last_activity": h.last_activity.isoformat() if h.last_activity else None,
                }
                for h in health.mappings
            ],
        }
