"""Prometheus exporter driven by structured fleet and workflow events."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .observability import EventLogger


class MetricsExporter(Protocol):
    """Protocol for metrics exporters that consume structured events."""

    def handle_event(self, event_type: str, record: Mapping[str, Any]) -> None:
        """Process a structured metrics ``record`` for ``event_type``."""


def _non_negative(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
        return float(value)
    return None


class PrometheusMetricsExporter:
    """Translate runtime events into Prometheus counters and histograms."""

    def __init__(
        self,
        namespace: str = "fleetflow",
        *,
        registry: CollectorRegistry | None = None,
    ) -> None:
        target = registry if registry is not None else REGISTRY

        self._agent_call_total = Counter(
            f"{namespace}_agent_call_total",
            "Total agent capability calls.",
            ("member", "status"),
            registry=target,
        )
        self._agent_call_latency_ms = Histogram(
            f"{namespace}_agent_call_latency_ms",
            "Latency of agent capability calls (ms).",
            ("member",),
            registry=target,
        )
        self._fleet_run_total = Counter(
            f"{namespace}_fleet_run_total",
            "Fleet run outcomes.",
            ("fleet", "mode", "status"),
            registry=target,
        )
        self._consensus_total = Counter(
            f"{namespace}_consensus_total",
            "Consensus computations.",
            ("algorithm", "human_review"),
            registry=target,
        )
        self._workflow_run_total = Counter(
            f"{namespace}_workflow_run_total",
            "Workflow run outcomes.",
            ("workflow", "status"),
            registry=target,
        )
        self._step_total = Counter(
            f"{namespace}_step_total",
            "Workflow step executions.",
            ("step_type", "status"),
            registry=target,
        )
        self._step_latency_ms = Histogram(
            f"{namespace}_step_latency_ms",
            "Latency of workflow steps (ms).",
            ("step_type",),
            registry=target,
        )

    def handle_event(self, event_type: str, record: Mapping[str, Any]) -> None:
        if event_type in {"task_completed", "task_failed"}:
            member = str(record.get("member") or "unknown")
            status = "ok" if event_type == "task_completed" else "error"
            self._agent_call_total.labels(member=member, status=status).inc()
            latency_ms = _non_negative(record.get("latency_ms"))
            if latency_ms is not None:
                self._agent_call_latency_ms.labels(member=member).observe(latency_ms)

        elif event_type in {"fleet_completed", "fleet_failed", "fleet_cancelled"}:
            self._fleet_run_total.labels(
                fleet=str(record.get("fleet") or "unknown"),
                mode=str(record.get("mode") or "unknown"),
                status=event_type.removeprefix("fleet_"),
            ).inc()

        elif event_type == "consensus_reached":
            self._consensus_total.labels(
                algorithm=str(record.get("algorithm") or "unknown"),
                human_review="true" if record.get("human_review") else "false",
            ).inc()

        elif event_type in {"workflow_completed", "workflow_failed", "workflow_cancelled"}:
            self._workflow_run_total.labels(
                workflow=str(record.get("workflow") or "unknown"),
                status=event_type.removeprefix("workflow_"),
            ).inc()

        elif event_type in {"step_completed", "step_failed"}:
            step_type = str(record.get("step_type") or "unknown")
            status = "ok" if event_type == "step_completed" else "error"
            self._step_total.labels(step_type=step_type, status=status).inc()
            duration_ms = _non_negative(record.get("duration_ms"))
            if duration_ms is not None:
                self._step_latency_ms.labels(step_type=step_type).observe(duration_ms)


class MetricsEventLogger:
    """Adapt a :class:`MetricsExporter` to the ``EventLogger`` protocol."""

    def __init__(self, exporter: MetricsExporter) -> None:
        self._exporter = exporter

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        self._exporter.handle_event(event_type, record)


def metrics_logger(
    namespace: str = "fleetflow",
    *,
    registry: CollectorRegistry | None = None,
) -> EventLogger:
    """Build an event logger that feeds a fresh Prometheus exporter."""

    return MetricsEventLogger(PrometheusMetricsExporter(namespace, registry=registry))


__all__ = [
    "MetricsEventLogger",
    "MetricsExporter",
    "PrometheusMetricsExporter",
    "metrics_logger",
]
