"""
Execution module for procshell.
Handles process specs, concurrent output capture, pipelines and results.
"""

from .cancellation import CancellationToken
from .multiplexer import OutputMultiplexer, OutputSink, OutputSource, TaggedLine
from .output import CommandOutput
from .spec import ProcessSpec, ValidationPolicy
from .pipeline import ExecutionMode, PipelineRunner
from .result import CommandResult, ExecutionState

__all__ = [
    "CancellationToken",
    "CommandOutput",
    "CommandResult",
    "ExecutionMode",
    "ExecutionState",
    "OutputMultiplexer",
    "OutputSink",
    "OutputSource",
    "PipelineRunner",
    "ProcessSpec",
    "TaggedLine",
    "ValidationPolicy",
]
