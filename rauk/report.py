"""Analysis report (``rauk.report/1``) and its console rendering."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from tabulate import tabulate

from .aggregate import NoValidTracesError, TaskWcetSummary
from .recorder import VectorFailure, VectorTrace
from .rta import ResponseTime, SchedulabilityReport
from .trace_format import node_to_dict

REPORT_FORMAT_VERSION = "rauk.report/1"

_TABLE_HEADERS = ["task", "prio", "wcet", "block", "R", "deadline", "load", "status"]


def _micros(cycles: Optional[int], clock_hz: Optional[int]) -> Optional[float]:
    if cycles is None or not clock_hz:
        return None
    return round(cycles * 1_000_000 / clock_hz, 3)


def _task_entry(
    result: ResponseTime,
    summary: Optional[TaskWcetSummary],
    priority: Optional[int],
    clock_hz: Optional[int],
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "task": result.task,
        "priority": priority,
        "status": result.status,
        "schedulable": result.schedulable,
        "wcet": result.wcet,
        "blocking_time": result.blocking_time,
        "preemption": result.preemption,
        "response_time": result.value,
        "deadline": result.deadline,
        "load_factor": result.load_factor,
    }
    if summary is not None:
        entry["critical_sections"] = dict(sorted(summary.critical_sections.items()))
        entry["vector_count"] = summary.vector_count
    if clock_hz:
        entry["response_time_us"] = _micros(result.value, clock_hz)
        entry["wcet_us"] = _micros(result.wcet, clock_hz)
    if result.error:
        entry["error"] = result.error
    if result.warnings:
        entry["warnings"] = list(result.warnings)
    return entry


def build_report(
    analysis: SchedulabilityReport,
    summaries: Mapping[str, TaskWcetSummary],
    results: Iterable[Union[VectorTrace, VectorFailure]] = (),
    *,
    priorities: Optional[Mapping[str, int]] = None,
    aggregation_failures: Optional[Mapping[str, NoValidTracesError]] = None,
    clock_hz: Optional[int] = None,
) -> Dict[str, Any]:
    """Assemble the JSON-ready report document."""

    priorities = priorities or {}
    traces: List[Dict[str, Any]] = []
    diagnostics: List[Dict[str, Any]] = []
    for result in results:
        if isinstance(result, VectorTrace):
            traces.append({"vector": result.vector, "task": result.task_name, "trace": node_to_dict(result.root)})
        else:
            diagnostics.append(
                {
                    "vector": result.vector,
                    "task": result.task_name,
                    "status": result.status,
                    "type": result.error_type,
                    "message": result.message,
                }
            )
    for name, exc in sorted((aggregation_failures or {}).items()):
        diagnostics.append({"task": name, "status": "excluded", "type": type(exc).__name__, "message": str(exc)})

    document: Dict[str, Any] = {
        "format": REPORT_FORMAT_VERSION,
        "schedulable": analysis.schedulable,
        "utilization": analysis.utilization,
        "tasks": [
            _task_entry(result, summaries.get(result.task), priorities.get(result.task), clock_hz)
            for result in analysis.results
        ],
        "traces": traces,
        "diagnostics": diagnostics,
    }
    if clock_hz:
        document["clock_hz"] = clock_hz
    return document


def _cell(value: Any) -> Any:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.3f}"
    return value


def render_table(document: Mapping[str, Any]) -> str:
    rows: Sequence[List[Any]] = [
        [
            _cell(task.get("task")),
            _cell(task.get("priority")),
            _cell(task.get("wcet")),
            _cell(task.get("blocking_time")),
            _cell(task.get("response_time")),
            _cell(task.get("deadline")),
            _cell(task.get("load_factor")),
            task.get("status"),
        ]
        for task in document.get("tasks", [])
    ]
    table = tabulate(rows, headers=_TABLE_HEADERS, tablefmt="github")
    verdict = "schedulable" if document.get("schedulable") else "NOT schedulable"
    lines = [table, "", f"utilization: {document.get('utilization', 0.0):.3f}", f"task set: {verdict}"]
    diagnostics = document.get("diagnostics") or []
    if diagnostics:
        lines.append(f"diagnostics: {len(diagnostics)} (see report file)")
    return "\n".join(lines)


def write_report(path: Union[str, os.PathLike], document: Mapping[str, Any]) -> Path:
    file_path = Path(path)
    file_path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    return file_path


__all__ = ["REPORT_FORMAT_VERSION", "build_report", "render_table", "write_report"]
