"""Execution module for running triangles."""

from triarb.execution.executor import (
    ExecutorConfig,
    PlacementError,
    TriangleExecutor,
)


__all__ = [
    "ExecutorConfig",
    "PlacementError",
    "TriangleExecutor",
]
