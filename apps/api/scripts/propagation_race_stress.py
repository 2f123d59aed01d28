#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_evidence_paths() -> tuple[Path, Path]:
    timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_dir = _repo_root() / "docs" / "evidence" / "propagation-race"
    return (
        base_dir / f"propagation-race-stress-{timestamp}.json",
        base_dir / f"propagation-race-stress-{timestamp}.md",
    )


def parse_args() -> argparse.Namespace:
    default_json, default_md = _default_evidence_paths()
    parser = argparse.ArgumentParser(description="Run the propagation race stress suite and write evidence files.")
    parser.add_argument("--output-json", type=Path, default=default_json, help="path to JSON evidence output")
    parser.add_argument("--output-md", type=Path, default=default_md, help="path to Markdown evidence output")
    parser.add_argument("--completion-iterations", type=int, default=4)
    parser.add_argument("--completion-parallelism", type=int, default=8)
    parser.add_argument("--completion-root-count", type=int, default=12)
    parser.add_argument("--isolation-iterations", type=int, default=2)
    parser.add_argument("--isolation-company-count", type=int, default=6)
    parser.add_argument("--isolation-parallelism", type=int, default=6)
    parser.add_argument("--resynthesis-iterations", type=int, default=4)
    parser.add_argument("--resynthesis-parallelism", type=int, default=6)
    parser.add_argument("--resynthesis-attempts", type=int, default=24)
    return parser.parse_args()


def _render_markdown(report: dict[str, Any], json_path: Path) -> str:
    lines: list[str] = []
    summary = report["summary"]
    lines.append("# Propagation Race Stress Evidence")
    lines.append("")
    lines.append(f"- Generated at (UTC): `{report['generated_at_utc']}`")
    lines.append(f"- Python: `{report['python']}`")
    lines.append(f"- JSON evidence: `{json_path}`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(f"- Overall status: `{summary['overall_status']}`")
    lines.append(f"- Scenarios: `{summary['scenario_count']}`")
    lines.append(f"- Invariants passed: `{summary['invariants_passed']}/{summary['invariants_total']}`")
    lines.append("")

    for scenario in report["scenarios"]:
        lines.append(f"## Scenario: {scenario['name']}")
        lines.append("")
        lines.append(f"- Objective: {scenario['objective']}")
        lines.append(f"- Status: `{scenario['status']}`")
        lines.append(f"- Iterations: `{scenario['iterations']}`")
        lines.append("")
        lines.append("### Invariants")
        lines.append("")
        for invariant in scenario["invariants"]:
            marker = "PASS" if invariant["passed"] else "FAIL"
            lines.append(f"- `{marker}` {invariant['id']}: {invariant['description']}")
            if not invariant["passed"]:
                lines.append(f"  failures: `{invariant['actual_failures']}`")
        lines.append("")

    lines.append("## Config")
    lines.append("")
    for key, value in report["config"].items():
        lines.append(f"- `{key}`: `{value}`")
    lines.append("")

    return "\n".join(lines)


def main() -> int:
    args = parse_args()

    if min(
        args.completion_iterations,
        args.completion_parallelism,
        args.completion_root_count,
        args.isolation_iterations,
        args.isolation_company_count,
        args.isolation_parallelism,
        args.resynthesis_iterations,
        args.resynthesis_parallelism,
        args.resynthesis_attempts,
    ) < 1:
        print("[propagation-race] all numeric options must be >= 1", file=sys.stderr)
        return 2

    try:
        from brokerflow_api.concurrency_stress import ConcurrencyStressConfig, run_concurrency_stress_suite
    except ModuleNotFoundError as exc:
        print(f"[propagation-race] missing dependency: {exc.name}", file=sys.stderr)
        print("[propagation-race] install the project before running the stress suite:", file=sys.stderr)
        print("  python3 -m venv .venv && .venv/bin/pip install -e .[dev]", file=sys.stderr)
        return 2

    config = ConcurrencyStressConfig(
        completion_iterations=args.completion_iterations,
        completion_parallelism=args.completion_parallelism,
        completion_root_count=args.completion_root_count,
        isolation_iterations=args.isolation_iterations,
        isolation_company_count=args.isolation_company_count,
        isolation_parallelism=args.isolation_parallelism,
        resynthesis_iterations=args.resynthesis_iterations,
        resynthesis_parallelism=args.resynthesis_parallelism,
        resynthesis_attempts=args.resynthesis_attempts,
    )
    report = run_concurrency_stress_suite(config)
    report["python"] = platform.python_version()

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_md.parent.mkdir(parents=True, exist_ok=True)

    args.output_json.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    args.output_md.write_text(_render_markdown(report, args.output_json) + "\n", encoding="utf-8")

    print(f"[propagation-race] evidence json: {args.output_json}")
    print(f"[propagation-race] evidence md:   {args.output_md}")
    print(f"[propagation-race] summary:       {report['summary']}")

    return 0 if report["summary"]["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
