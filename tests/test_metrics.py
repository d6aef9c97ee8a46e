from __future__ import annotations

import asyncio

import pytest

prometheus_client = pytest.importorskip("prometheus_client")

from fleetflow.fleet import FleetCoordinator  # noqa: E402
from fleetflow.loader import load_workflow  # noqa: E402
from fleetflow.metrics import metrics_logger, PrometheusMetricsExporter  # noqa: E402
from fleetflow.observability import CompositeLogger  # noqa: E402
from fleetflow.workflow import WorkflowExecutor  # noqa: E402


def test_fleet_run_updates_counters(scripted, registry_with, make_fleet, clock, capture) -> None:
    registry = prometheus_client.CollectorRegistry()
    fleet = make_fleet("voters", ["a", "b", "c"])
    agents = {
        "a": scripted("a", ["yes"]),
        "b": scripted("b", ["yes"]),
        "c": scripted("c", [RuntimeError("down")]),
    }
    coordinator = FleetCoordinator(
        registry_with(agents, fleet),
        event_logger=CompositeLogger([metrics_logger(registry=registry), capture]),
        clock=clock.time,
    )

    result = asyncio.run(coordinator.execute("ship it?", "voters"))

    assert result.decision == "yes"
    assert registry.get_sample_value(
        "fleetflow_fleet_run_total", {"fleet": "voters", "mode": "peer", "status": "completed"}
    ) == 1.0
    assert registry.get_sample_value(
        "fleetflow_agent_call_total", {"member": "a", "status": "ok"}
    ) == 1.0
    assert registry.get_sample_value(
        "fleetflow_agent_call_total", {"member": "c", "status": "error"}
    ) == 1.0
    assert registry.get_sample_value(
        "fleetflow_consensus_total", {"algorithm": "majority", "human_review": "false"}
    ) == 1.0
    assert registry.get_sample_value("fleetflow_agent_call_latency_ms_count", {"member": "b"}) == 1.0
    assert capture.of_type("fleet_completed")


def test_workflow_events_update_step_metrics(scripted, registry_with, clock) -> None:
    registry = prometheus_client.CollectorRegistry()
    definition = load_workflow(
        {
            "name": "tiny",
            "entrypoint": "work",
            "steps": {
                "work": {"type": "agent", "config": {"agent": "worker"}, "next": "done"},
                "done": {"type": "end"},
            },
        }
    )
    executor = WorkflowExecutor(
        registry_with({"worker": scripted("worker", ["ok"])}),
        event_logger=metrics_logger("flows", registry=registry),
        sleep_fn=clock.sleep,
        clock=clock.time,
    )

    asyncio.run(executor.run(definition, {}))

    assert registry.get_sample_value(
        "flows_workflow_run_total", {"workflow": "tiny", "status": "completed"}
    ) == 1.0
    assert registry.get_sample_value("flows_step_total", {"step_type": "agent", "status": "ok"}) == 1.0
    assert registry.get_sample_value("flows_step_total", {"step_type": "end", "status": "ok"}) == 1.0
    assert registry.get_sample_value("flows_step_latency_ms_count", {"step_type": "agent"}) == 1.0


def test_exporter_ignores_unknown_events_and_bad_latency() -> None:
    registry = prometheus_client.CollectorRegistry()
    exporter = PrometheusMetricsExporter(registry=registry)

    exporter.handle_event("something_else", {"member": "a"})
    exporter.handle_event("task_completed", {"member": "a", "latency_ms": -5})

    assert registry.get_sample_value("fleetflow_agent_call_total", {"member": "a", "status": "ok"}) == 1.0
    assert registry.get_sample_value("fleetflow_agent_call_latency_ms_count", {"member": "a"}) is None
