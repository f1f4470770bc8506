"""Execution - running plans as child processes and aggregating results."""

from orchestra.execution.executor import (
    ExecutionOptions,
    ParallelExecutor,
    SequentialExecutor,
    create_executor,
    execute_plan,
)
from orchestra.execution.process import CancellationToken, ExecutionContext, ProcessRunner
from orchestra.execution.results import (
    ErrorKind,
    OverallStatus,
    RunResult,
    TaskOutcome,
    TaskStatus,
    aggregate,
    write_report,
)

__all__ = [
    "CancellationToken",
    "ErrorKind",
    "ExecutionContext",
    "ExecutionOptions",
    "OverallStatus",
    "ParallelExecutor",
    "ProcessRunner",
    "RunResult",
    "SequentialExecutor",
    "TaskOutcome",
    "TaskStatus",
    "aggregate",
    "create_executor",
    "execute_plan",
    "write_report",
]
