from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Optional

from fastapi import Request

logger = logging.getLogger("inbox_engine")
engine_logger = logging.getLogger("inbox_engine.engine")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._engine_events: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_event(self, event: str) -> None:
        with self._lock:
            self._engine_events[event] = self._engine_events.get(event, 0) + 1

    def event_count(self, event: str) -> int:
        with self._lock:
            return self._engine_events.get(event, 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP inbox_engine_requests_total Total HTTP requests",
            "# TYPE inbox_engine_requests_total counter",
            f"inbox_engine_requests_total {snap.requests_total}",
            "# HELP inbox_engine_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE inbox_engine_requests_5xx_total counter",
            f"inbox_engine_requests_5xx_total {snap.requests_5xx}",
            "# HELP inbox_engine_request_avg_latency_ms Average request latency ms",
            "# TYPE inbox_engine_request_avg_latency_ms gauge",
            f"inbox_engine_request_avg_latency_ms {avg_latency:.2f}",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'inbox_engine_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
            if self._engine_events:
                lines.append("# HELP inbox_engine_engine_events_total Reconciliation engine events")
                lines.append("# TYPE inbox_engine_engine_events_total counter")
            for event, count in sorted(self._engine_events.items()):
                lines.append(f'inbox_engine_engine_events_total{{event="{event}"}} {count}')
        return "\n".join(lines) + "\n"


class Diagnostics:
    """Structured event sink handed to engine operations."""

    def __init__(
        self,
        metrics: Optional[MetricsRegistry] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.metrics = metrics
        self.log = log or engine_logger

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        if self.metrics is not None:
            self.metrics.record_event(event)
        if not self.log.isEnabledFor(level):
            return
        rendered = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
        self.log.log(level, "%s %s", event, rendered)


def ensure_diagnostics(diagnostics: Optional[Diagnostics]) -> Diagnostics:
    return diagnostics if diagnostics is not None else Diagnostics()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
