from __future__ import annotations

import itertools
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from brokerflow_api.engine import TaskGraphEngine
from brokerflow_api.schemas import (
    ArtifactCreate,
    InterfaceType,
    InterfaceTypeRules,
    TaskCreate,
    TaskStatus,
)
from brokerflow_api.store import InMemoryStore


_company_seq = itertools.count(1)


@dataclass(frozen=True)
class ConcurrencyStressConfig:
    completion_iterations: int = 4
    completion_parallelism: int = 8
    completion_root_count: int = 12
    isolation_iterations: int = 2
    isolation_company_count: int = 6
    isolation_parallelism: int = 6
    resynthesis_iterations: int = 4
    resynthesis_parallelism: int = 6
    resynthesis_attempts: int = 24


def run_concurrency_stress_suite(config: ConcurrencyStressConfig | None = None) -> dict[str, Any]:
    cfg = config or ConcurrencyStressConfig()

    completion_iterations = [_run_completion_iteration(index, cfg) for index in range(cfg.completion_iterations)]
    isolation_iterations = [_run_isolation_iteration(index, cfg) for index in range(cfg.isolation_iterations)]
    resynthesis_iterations = [_run_resynthesis_iteration(index, cfg) for index in range(cfg.resynthesis_iterations)]

    scenarios = [
        _scenario_report(
            name="parallel-completion-race",
            objective="Concurrent completions of sibling dependencies never lose the sink's unlock.",
            iterations=completion_iterations,
            metric_keys=[
                "attempts_total",
                "completed_count",
                "unexpected_error_count",
                "sink_transition_events",
                "synthesized_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="cross-company-isolation",
            objective="Completions in different companies proceed independently and stay within their graph.",
            iterations=isolation_iterations,
            metric_keys=[
                "attempts_total",
                "completed_count",
                "unexpected_error_count",
                "foreign_update_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="resynthesis-race",
            objective="Readers never observe a partially replaced submission set while re-derivation races.",
            iterations=resynthesis_iterations,
            metric_keys=[
                "attempts_total",
                "synthesis_count",
                "read_count",
                "empty_read_count",
                "mixed_read_count",
                "unexpected_error_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "propagation-race-stress",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "completion_iterations": cfg.completion_iterations,
            "completion_parallelism": cfg.completion_parallelism,
            "completion_root_count": cfg.completion_root_count,
            "isolation_iterations": cfg.isolation_iterations,
            "isolation_company_count": cfg.isolation_company_count,
            "isolation_parallelism": cfg.isolation_parallelism,
            "resynthesis_iterations": cfg.resynthesis_iterations,
            "resynthesis_parallelism": cfg.resynthesis_parallelism,
            "resynthesis_attempts": cfg.resynthesis_attempts,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _run_completion_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    engine = TaskGraphEngine(store, InterfaceTypeRules())
    company_id = _next_company("completion")

    root_ids = _create_roots(engine, company_id, cfg.completion_root_count)
    sink = engine.provision_task(
        TaskCreate(
            id=f"{company_id}-sink",
            company_id=company_id,
            name="Send submission",
            sort_order=99,
            dependencies=root_ids,
            interface_type=InterfaceType.EMAIL,
        )
    )
    for root_id in root_ids:
        store.record_artifacts(
            root_id,
            [ArtifactCreate(content=f'<artifact id="{root_id}-carrier">Hello from {root_id}</artifact>')],
        )

    lock = threading.Lock()
    metrics: Counter[str] = Counter()

    def worker(task_id: str) -> None:
        with lock:
            metrics["attempts_total"] += 1
        try:
            result = engine.complete_task(task_id)
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        with lock:
            metrics["completed_count"] += 1
            metrics["synthesized_count"] += len(result.synthesized)

    with ThreadPoolExecutor(max_workers=cfg.completion_parallelism) as executor:
        list(executor.map(worker, root_ids))

    final_sink = store.get_task(sink.id)
    sink_events = store.list_events(task_id=sink.id, event_type="task.status_changed")
    metrics["sink_transition_events"] = len(sink_events)
    submissions = store.list_submissions(task_id=sink.id)
    metrics["duration_ms"] = int((time.perf_counter() - started) * 1000)

    invariants = [
        _invariant(
            "COMPLETION-001",
            "Every concurrent completion succeeds.",
            metrics["unexpected_error_count"] == 0 and metrics["completed_count"] == cfg.completion_root_count,
            expected={"completed_count": cfg.completion_root_count, "unexpected_error_count": 0},
            actual={
                "completed_count": metrics["completed_count"],
                "unexpected_error_count": metrics["unexpected_error_count"],
            },
        ),
        _invariant(
            "COMPLETION-002",
            "The sink is unlocked once all of its dependencies are completed.",
            final_sink.status == TaskStatus.NEEDS_ATTENTION,
            expected={"status": TaskStatus.NEEDS_ATTENTION.value},
            actual={"status": final_sink.status.value},
        ),
        _invariant(
            "COMPLETION-003",
            "The sink transitions exactly once.",
            len(sink_events) == 1,
            expected={"sink_transition_events": 1},
            actual={"sink_transition_events": len(sink_events)},
        ),
        _invariant(
            "COMPLETION-004",
            "The unlocked submission task is synthesized exactly once with one submission per root.",
            metrics["synthesized_count"] == 1 and len(submissions) == cfg.completion_root_count,
            expected={"synthesized_count": 1, "submission_count": cfg.completion_root_count},
            actual={"synthesized_count": metrics["synthesized_count"], "submission_count": len(submissions)},
        ),
    ]
    return {"iteration": index, "metrics": dict(metrics), "invariants": invariants}


def _run_isolation_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    engine = TaskGraphEngine(store, InterfaceTypeRules())

    plans: list[tuple[str, list[str], str]] = []
    for _ in range(cfg.isolation_company_count):
        company_id = _next_company("isolation")
        root_ids = _create_roots(engine, company_id, 3)
        sink = engine.provision_task(
            TaskCreate(
                id=f"{company_id}-sink",
                company_id=company_id,
                name="Review quote",
                dependencies=root_ids,
            )
        )
        plans.append((company_id, root_ids, sink.id))

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    jobs = [(company_id, root_id) for company_id, root_ids, _ in plans for root_id in root_ids]

    def worker(job: tuple[str, str]) -> None:
        company_id, task_id = job
        with lock:
            metrics["attempts_total"] += 1
        try:
            result = engine.complete_task(task_id)
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1
            return
        foreign = [
            updated_id for updated_id in result.updated if store.get_task(updated_id).company_id != company_id
        ]
        with lock:
            metrics["completed_count"] += 1
            metrics["foreign_update_count"] += len(foreign)

    with ThreadPoolExecutor(max_workers=cfg.isolation_parallelism) as executor:
        list(executor.map(worker, jobs))

    unlocked = sum(1 for _, _, sink_id in plans if store.get_task(sink_id).status == TaskStatus.NEEDS_ATTENTION)
    metrics["duration_ms"] = int((time.perf_counter() - started) * 1000)

    invariants = [
        _invariant(
            "ISOLATION-001",
            "Every company's sink is unlocked.",
            unlocked == len(plans),
            expected={"unlocked_sinks": len(plans)},
            actual={"unlocked_sinks": unlocked},
        ),
        _invariant(
            "ISOLATION-002",
            "A completion never updates tasks of another company.",
            metrics["foreign_update_count"] == 0,
            expected={"foreign_update_count": 0},
            actual={"foreign_update_count": metrics["foreign_update_count"]},
        ),
        _invariant(
            "ISOLATION-003",
            "No unexpected errors are raised.",
            metrics["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics["unexpected_error_count"]},
        ),
    ]
    return {"iteration": index, "metrics": dict(metrics), "invariants": invariants}


def _run_resynthesis_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    engine = TaskGraphEngine(store, InterfaceTypeRules())
    company_id = _next_company("resynthesis")

    recipients = ["AcmeCo", "Beta Mutual", "Gamma Re"]
    primary = engine.provision_task(TaskCreate(id=f"{company_id}-draft", company_id=company_id, name="Draft"))
    consumer = engine.provision_task(
        TaskCreate(
            id=f"{company_id}-send",
            company_id=company_id,
            name="Send submission",
            dependencies=[primary.id],
            interface_type=InterfaceType.EMAIL,
        )
    )
    store.record_artifacts(primary.id, [ArtifactCreate(content=_render_pass(recipients, 0))])
    engine.synthesize_submissions(consumer.id)

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    generation = itertools.count(1)

    def writer() -> None:
        pass_number = next(generation)
        store.record_artifacts(primary.id, [ArtifactCreate(content=_render_pass(recipients, pass_number))])
        engine.synthesize_submissions(consumer.id)
        with lock:
            metrics["synthesis_count"] += 1

    def reader() -> None:
        submissions = store.list_submissions(task_id=consumer.id)
        passes = {submission.body.rsplit(" ", 1)[-1] for submission in submissions}
        with lock:
            metrics["read_count"] += 1
            if len(submissions) != len(recipients):
                metrics["empty_read_count"] += 1
            if len(passes) > 1:
                metrics["mixed_read_count"] += 1

    def worker(attempt: int) -> None:
        with lock:
            metrics["attempts_total"] += 1
        try:
            if attempt % 2 == 0:
                writer()
            else:
                reader()
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.resynthesis_parallelism) as executor:
        list(executor.map(worker, range(cfg.resynthesis_attempts)))

    final = store.list_submissions(task_id=consumer.id)
    metrics["duration_ms"] = int((time.perf_counter() - started) * 1000)

    invariants = [
        _invariant(
            "RESYNTHESIS-001",
            "Readers always see a complete submission set.",
            metrics["empty_read_count"] == 0,
            expected={"empty_read_count": 0},
            actual={"empty_read_count": metrics["empty_read_count"]},
        ),
        _invariant(
            "RESYNTHESIS-002",
            "Readers never see submissions from two different artifact passes.",
            metrics["mixed_read_count"] == 0,
            expected={"mixed_read_count": 0},
            actual={"mixed_read_count": metrics["mixed_read_count"]},
        ),
        _invariant(
            "RESYNTHESIS-003",
            "The final set holds one submission per recipient and no errors were raised.",
            len(final) == len(recipients) and metrics["unexpected_error_count"] == 0,
            expected={"submission_count": len(recipients), "unexpected_error_count": 0},
            actual={"submission_count": len(final), "unexpected_error_count": metrics["unexpected_error_count"]},
        ),
    ]
    return {"iteration": index, "metrics": dict(metrics), "invariants": invariants}


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append({"iteration": iteration["iteration"], "actual": invariant["actual"]})

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"

    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _create_roots(engine: TaskGraphEngine, company_id: str, count: int) -> list[str]:
    root_ids: list[str] = []
    for root_index in range(count):
        root = engine.provision_task(
            TaskCreate(
                id=f"{company_id}-root-{root_index:03d}",
                company_id=company_id,
                name=f"Prepare carrier package {root_index}",
                sort_order=root_index,
            )
        )
        root_ids.append(root.id)
    return root_ids


def _render_pass(recipients: list[str], pass_number: int) -> str:
    return "\n".join(
        f'<artifact id="{recipient}">Dear underwriter, pass {pass_number}</artifact>' for recipient in recipients
    )


def _next_company(prefix: str) -> str:
    return f"{prefix}-company-{next(_company_seq)}"


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": passed,
        "expected": expected,
        "actual": actual,
    }
