"""
rauk - measurement-based WCET and response-time analysis for RTIC firmware.

Test vectors produced by KLEE are replayed on the target through a debug
probe; the instrumented firmware stops on ``bkpt`` instructions around every
task, dispatcher and critical section, and the cycle counter samples taken at
those stops become nested trace trees.  The longest observed trees feed a
fixed-priority response-time analysis.

    ktest.py        → .ktest test-vector codec
    probe/          → OpenOCD transport and breakpoint run control
    breakpoints.py  → breakpoint immediate alphabet
    trace.py        → trace trees and the pure event reducer
    symbols.py      → immutable debug-symbol map
    recorder.py     → per-vector replay on hardware
    aggregate.py    → per-task WCET summaries
    rta.py          → response-time analysis
    trace_format.py → measurement file (rauk.trace/1)
    report.py       → analysis report (rauk.report/1)
    settings.py     → rauk.toml settings
    cli.py          → `rauk` command line
"""

from .ktest import KTestObject, KTestRecord, decode_ktest, encode_ktest, load_ktest  # noqa: F401
from .trace import BreakpointEvent, TraceKind, TraceNode, TraceReducer, reduce_events  # noqa: F401
from .symbols import SymbolMap, TaskSpec, load_symbol_map  # noqa: F401
from .recorder import TraceRecorder, VectorFailure, VectorTrace, measure_vectors  # noqa: F401
from .aggregate import TaskWcetSummary, aggregate_measurements, aggregate_task  # noqa: F401
from .rta import (  # noqa: F401
    SchedulabilityReport,
    TaskDescriptor,
    analyze_task_set,
    build_descriptors,
    response_time,
)

__all__ = [
    "KTestObject",
    "KTestRecord",
    "decode_ktest",
    "encode_ktest",
    "load_ktest",
    "BreakpointEvent",
    "TraceKind",
    "TraceNode",
    "TraceReducer",
    "reduce_events",
    "SymbolMap",
    "TaskSpec",
    "load_symbol_map",
    "TraceRecorder",
    "VectorTrace",
    "VectorFailure",
    "measure_vectors",
    "TaskWcetSummary",
    "aggregate_task",
    "aggregate_measurements",
    "TaskDescriptor",
    "SchedulabilityReport",
    "response_time",
    "build_descriptors",
    "analyze_task_set",
]

__version__ = "0.1.0-dev"
