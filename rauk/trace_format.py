"""Measurement file (``rauk.trace/1``) encoding and decoding.

A measurement file is a JSON object::

    {
      "format": "rauk.trace/1",
      "vectors": [
        {"vector": "test000002", "task_id": 1, "task": "EXTI1", "status": "ok",
         "trace": {"name": "EXTI1", "ttype": "Task", "start": 0, "end": 310,
                   "inner": [{"name": "res_a", "ttype": "ResourceLock", ...}]}},
        {"vector": "test000003", "task_id": 2, "task": "EXTI2", "status": "failed",
         "error": {"type": "HaltTimeout", "message": "..."}}
      ]
    }

The decoder is strict about the core schema so ``rauk analyze`` never works
on a half-understood file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Union

from .recorder import MeasurementRun, VectorFailure, VectorTrace
from .trace import CYCLE_MODULUS, TraceKind, TraceNode

TRACE_FORMAT_VERSION = "rauk.trace/1"

_KIND_BY_NAME = {kind.value: kind for kind in TraceKind}
_FAILURE_STATUSES = {"failed", "skipped"}


class TraceFormatError(ValueError):
    """Raised when a measurement document does not follow the schema."""


def _coerce_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise TraceFormatError(f"{field} must be an integer, got boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        base = 16 if value.lower().startswith("0x") else 10
        try:
            return int(value, base)
        except ValueError as exc:
            raise TraceFormatError(f"{field} must be integer-compatible (got {value!r})") from exc
    raise TraceFormatError(f"{field} must be integer-compatible (got {value!r})")


def _coerce_cycle(value: Any, field: str) -> int:
    cycle = _coerce_int(value, field)
    if not 0 <= cycle < CYCLE_MODULUS:
        raise TraceFormatError(f"{field} out of 32-bit range ({cycle})")
    return cycle


def node_to_dict(node: TraceNode) -> Dict[str, Any]:
    return {
        "name": node.label,
        "ttype": node.kind.value,
        "start": node.start_cycle,
        "end": node.end_cycle,
        "inner": [node_to_dict(child) for child in node.children],
    }


def node_from_dict(data: Mapping[str, Any], path: str = "trace") -> TraceNode:
    if not isinstance(data, Mapping):
        raise TraceFormatError(f"{path} must be an object")
    kind = _KIND_BY_NAME.get(str(data.get("ttype")))
    if kind is None:
        raise TraceFormatError(f"{path}.ttype must be one of {sorted(_KIND_BY_NAME)}")
    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise TraceFormatError(f"{path}.name must be a string")
    inner = data.get("inner") or []
    if not isinstance(inner, list):
        raise TraceFormatError(f"{path}.inner must be a list")
    return TraceNode(
        kind=kind,
        name=name,
        start_cycle=_coerce_cycle(data.get("start"), f"{path}.start"),
        end_cycle=_coerce_cycle(data.get("end"), f"{path}.end"),
        children=[node_from_dict(child, f"{path}.inner[{idx}]") for idx, child in enumerate(inner)],
    )


def encode_vector(result: Union[VectorTrace, VectorFailure]) -> Dict[str, Any]:
    if isinstance(result, VectorTrace):
        return {
            "vector": result.vector,
            "task_id": result.task_id,
            "task": result.task_name,
            "status": "ok",
            "trace": node_to_dict(result.root),
        }
    return {
        "vector": result.vector,
        "task_id": result.task_id,
        "task": result.task_name,
        "status": result.status,
        "error": {"type": result.error_type, "message": result.message},
    }


def decode_vector(entry: Mapping[str, Any], idx: int = 0) -> Union[VectorTrace, VectorFailure]:
    where = f"vectors[{idx}]"
    if not isinstance(entry, Mapping):
        raise TraceFormatError(f"{where} must be an object")
    vector = entry.get("vector")
    if not isinstance(vector, str):
        raise TraceFormatError(f"{where}.vector missing")
    status = entry.get("status", "ok")
    task_id_raw = entry.get("task_id")
    task_id = None if task_id_raw is None else _coerce_int(task_id_raw, f"{where}.task_id")
    task = entry.get("task")
    if status == "ok":
        if task_id is None or not isinstance(task, str):
            raise TraceFormatError(f"{where}: traced vectors need task_id and task")
        return VectorTrace(
            vector=vector,
            task_id=task_id,
            task_name=task,
            root=node_from_dict(entry.get("trace"), f"{where}.trace"),
        )
    if status not in _FAILURE_STATUSES:
        raise TraceFormatError(f"{where}.status {status!r} not recognised")
    error = entry.get("error") or {}
    if not isinstance(error, Mapping):
        raise TraceFormatError(f"{where}.error must be an object")
    return VectorFailure(
        vector=vector,
        error_type=str(error.get("type", "Error")),
        message=str(error.get("message", "")),
        task_id=task_id,
        task_name=task if isinstance(task, str) else None,
        status=status,
    )


def encode_measurements(results: Iterable[Union[VectorTrace, VectorFailure]]) -> Dict[str, Any]:
    return {
        "format": TRACE_FORMAT_VERSION,
        "vectors": [encode_vector(result) for result in results],
    }


def decode_measurements(document: Mapping[str, Any]) -> List[Union[VectorTrace, VectorFailure]]:
    if not isinstance(document, Mapping):
        raise TraceFormatError("measurement document must be an object")
    fmt = document.get("format")
    if fmt != TRACE_FORMAT_VERSION:
        raise TraceFormatError(f"unsupported measurement format {fmt!r}")
    vectors = document.get("vectors")
    if not isinstance(vectors, list):
        raise TraceFormatError("vectors must be a list")
    return [decode_vector(entry, idx) for idx, entry in enumerate(vectors)]


def run_results(run: MeasurementRun) -> List[Union[VectorTrace, VectorFailure]]:
    """Traces and failures of ``run`` ordered by vector name."""
    results: List[Union[VectorTrace, VectorFailure]] = [*run.traces, *run.failures]
    return sorted(results, key=lambda result: result.vector)


def write_measurements(path: Union[str, os.PathLike], run: MeasurementRun) -> Path:
    file_path = Path(path)
    document = encode_measurements(run_results(run))
    file_path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
    return file_path


def load_measurements(path: Union[str, os.PathLike]) -> List[Union[VectorTrace, VectorFailure]]:
    file_path = Path(path)
    try:
        document = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TraceFormatError(f"{file_path}: invalid JSON ({exc})") from exc
    return decode_measurements(document)


__all__ = [
    "TRACE_FORMAT_VERSION",
    "TraceFormatError",
    "node_to_dict",
    "node_from_dict",
    "encode_vector",
    "decode_vector",
    "encode_measurements",
    "decode_measurements",
    "run_results",
    "write_measurements",
    "load_measurements",
]
