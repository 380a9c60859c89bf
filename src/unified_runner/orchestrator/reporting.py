"""Human-readable and machine-readable renderings of a run."""

from __future__ import annotations

import html
import json
import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

from unified_runner.orchestrator.models import (
    ExecutionResult,
    RunnerCapabilities,
    RunPreferences,
    RunSummary,
)
from unified_runner.orchestrator.resolver import Batch

SUMMARY_FILENAME = "run-summary.json"
JUNIT_FILENAME = "junit.xml"
HTML_FILENAME = "run-report.html"
_OUTPUT_TAIL_LINES = 20


@dataclass(slots=True)
class WrittenReports:
    summary_path: Path
    junit_path: Path | None = None
    html_path: Path | None = None


def render_summary_lines(summary: RunSummary) -> list[str]:
    """Render the end-of-run status print."""

    total = len(summary.results)
    passed = sum(1 for result in summary.results if result.succeeded)
    failed = total - passed
    rate = f"{passed / total * 100:.1f}%" if total else "n/a"

    header = "Dry run" if summary.dry_run else "Run"
    lines = [
        f"{header} {summary.run_id}: {'SUCCEEDED' if summary.succeeded else 'FAILED'}",
        f"Tasks: total={total} passed={passed} failed={failed} success_rate={rate}",
        f"Duration: {summary.duration_ms / 1000:.2f}s",
    ]
    if summary.bailed:
        lines.append("Bailed after first failing batch; remaining batches skipped")

    for batch in summary.batches:
        mode = "parallel" if batch.parallel else "sequential"
        lines.append(
            f"Batch {batch.index + 1} [{batch.status.value}] ({mode}, {batch.duration_ms}ms): "
            f"{', '.join(batch.task_names)}",
        )

    for result in summary.results:
        lines.extend(_render_result_lines(result, dry_run=summary.dry_run))

    failure_classes = Counter(
        result.failure_class.value for result in summary.failed_results if result.failure_class
    )
    if failure_classes:
        lines.append(
            "Failure classes: "
            + " ".join(f"{name}={count}" for name, count in sorted(failure_classes.items())),
        )
    return lines


def _render_result_lines(result: ExecutionResult, *, dry_run: bool) -> list[str]:
    runner = result.runner_used.value if result.runner_used else "-"
    if dry_run:
        return [f"  {result.task_name} [{runner}] {result.stdout}"]

    status = "ok" if result.succeeded else "FAILED"
    lines = [
        f"  {result.task_name} [{runner}] {status} "
        f"attempts={len(result.attempts)} duration={result.duration_ms}ms",
    ]
    if result.succeeded:
        return lines

    for attempt in result.attempts:
        exit_code = "-" if attempt.exit_code is None else attempt.exit_code
        failure = attempt.failure_class.value if attempt.failure_class else "-"
        lines.append(
            f"    {attempt.runner.value}: exit={exit_code} class={failure} $ {attempt.command}",
        )
    if result.error:
        lines.append(f"    error: {result.error}")
    # Buffered output is shown only for failures.
    for line in _tail(result.stderr):
        lines.append(f"    | {line}")
    return lines


def render_status_lines(
    *,
    capabilities: RunnerCapabilities,
    preferences: RunPreferences,
) -> list[str]:
    lines = ["Runner capabilities:"]
    for backend, available in capabilities.available.items():
        lines.append(f"  {backend.value}: {'available' if available else 'missing'}")
    lines.append(
        "Preferences: "
        f"task_runner={preferences.task_runner.value} "
        f"package_manager={preferences.package_manager.value} "
        f"cache={preferences.cache_strategy.value}",
    )
    issues = capabilities.environment_issues()
    if issues:
        lines.append("Environment issues:")
        lines.extend(f"  - {issue}" for issue in issues)
    else:
        lines.append("Environment: ok")
    return lines


def render_plan_lines(batches: list[Batch]) -> list[str]:
    lines = [f"Batches: {len(batches)}"]
    for index, batch in enumerate(batches, start=1):
        lines.append(f"  {index}: {', '.join(batch)}")
    return lines


def summary_to_json(summary: RunSummary) -> str:
    return json.dumps(summary.to_dict(), indent=2, sort_keys=False)


def summary_to_junit(summary: RunSummary) -> str:
    """One ``testcase`` per task result; failures carry buffered stderr."""

    failures = len(summary.failed_results)
    suite = ET.Element(
        "testsuite",
        {
            "name": "unified-runner",
            "tests": str(len(summary.results)),
            "failures": str(failures),
            "errors": "0",
            "time": f"{summary.duration_ms / 1000:.3f}",
            "timestamp": summary.started_at.isoformat(),
        },
    )
    for result in summary.results:
        case = ET.SubElement(
            suite,
            "testcase",
            {
                "name": result.task_name,
                "classname": result.runner_used.value if result.runner_used else "unassigned",
                "time": f"{result.duration_ms / 1000:.3f}",
            },
        )
        if not result.succeeded:
            failure = ET.SubElement(
                case,
                "failure",
                {
                    "message": result.error or "task failed",
                    "type": result.failure_class.value if result.failure_class else "failure",
                },
            )
            failure.text = result.stderr
        elif result.stdout:
            system_out = ET.SubElement(case, "system-out")
            system_out.text = result.stdout
    ET.indent(suite)
    return ET.tostring(suite, encoding="unicode", xml_declaration=True)


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>unified-runner report {run_id}</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 40px; }}
    .summary {{ background: #f5f5f5; padding: 20px; border-radius: 8px; }}
    .task {{ margin: 16px 0; border: 1px solid #ddd; border-radius: 4px; }}
    .task-header {{ background: #e9e9e9; padding: 10px; font-weight: bold; }}
    .task-content {{ padding: 10px; }}
    .passed {{ color: #28a745; }}
    .failed {{ color: #dc3545; }}
    pre {{ background: #f8f8f8; padding: 10px; overflow: auto; }}
  </style>
</head>
<body>
  <h1>Run {run_id}: <span class="{status_class}">{status}</span></h1>
  <div class="summary">
    <p><strong>Requested:</strong> {requested}</p>
    <p><strong>Tasks:</strong> {total}</p>
    <p><strong>Passed:</strong> <span class="passed">{passed}</span></p>
    <p><strong>Failed:</strong> <span class="failed">{failed}</span></p>
    <p><strong>Duration:</strong> {duration}s</p>
    <p><strong>Success rate:</strong> {rate}</p>
  </div>
  <h2>Batches</h2>
  <ol>
{batches}
  </ol>
  <h2>Tasks</h2>
{tasks}
  <footer>Generated at {generated_at}</footer>
</body>
</html>
"""


def summary_to_html(summary: RunSummary) -> str:
    """Self-contained HTML page with per-task attempts and failure output."""

    total = len(summary.results)
    passed = sum(1 for result in summary.results if result.succeeded)
    batches = "\n".join(
        f"    <li>{html.escape(', '.join(batch.task_names))} [{batch.status.value}]</li>"
        for batch in summary.batches
    )
    return _HTML_TEMPLATE.format(
        run_id=html.escape(summary.run_id),
        status_class="passed" if summary.succeeded else "failed",
        status="SUCCEEDED" if summary.succeeded else "FAILED",
        requested=html.escape(", ".join(summary.requested_tasks)),
        total=total,
        passed=passed,
        failed=total - passed,
        duration=f"{summary.duration_ms / 1000:.2f}",
        rate=f"{passed / total * 100:.1f}%" if total else "n/a",
        batches=batches,
        tasks="\n".join(_html_task_card(result) for result in summary.results),
        generated_at=(summary.finished_at or summary.started_at).isoformat(),
    )


def _html_task_card(result: ExecutionResult) -> str:
    runner = result.runner_used.value if result.runner_used else "-"
    status = "ok" if result.succeeded else "FAILED"
    status_class = "passed" if result.succeeded else "failed"
    attempts = "".join(
        f"<li>{html.escape(attempt.runner.value)}: exit="
        f"{'-' if attempt.exit_code is None else attempt.exit_code} "
        f"<code>{html.escape(attempt.command)}</code></li>"
        for attempt in result.attempts
    )
    parts = [
        '  <div class="task">',
        f'    <div class="task-header">{html.escape(result.task_name)} [{runner}] '
        f'<span class="{status_class}">{status}</span></div>',
        '    <div class="task-content">',
        f"      <p><strong>Duration:</strong> {result.duration_ms}ms</p>",
        f"      <ul>{attempts}</ul>",
    ]
    if not result.succeeded:
        if result.error:
            parts.append(f"      <p>{html.escape(result.error)}</p>")
        if result.stderr:
            parts.append(f"      <pre>{html.escape(result.stderr)}</pre>")
    parts.extend(["    </div>", "  </div>"])
    return "\n".join(parts)


def write_reports(
    summary: RunSummary,
    output_dir: Path,
    *,
    junit: bool = False,
    html_report: bool = False,
) -> WrittenReports:
    output_dir.mkdir(parents=True, exist_ok=True)
    summary_path = output_dir / SUMMARY_FILENAME
    summary_path.write_text(summary_to_json(summary), "utf-8")
    written = WrittenReports(summary_path=summary_path)
    if junit:
        written.junit_path = output_dir / JUNIT_FILENAME
        written.junit_path.write_text(summary_to_junit(summary), "utf-8")
    if html_report:
        written.html_path = output_dir / HTML_FILENAME
        written.html_path.write_text(summary_to_html(summary), "utf-8")
    return written


def _tail(text: str) -> list[str]:
    lines = text.strip().splitlines()
    return lines[-_OUTPUT_TAIL_LINES:]
