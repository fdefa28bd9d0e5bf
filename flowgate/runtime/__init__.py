"""Run hosting and progress streaming.

WorkflowRuntime is imported from ``flowgate.runtime.workflow_runtime``;
this package only re-exports the progress types the executor depends on.
"""

from flowgate.runtime.progress import (
    CollectingProgressSink,
    NullProgressSink,
    ProgressChannel,
    ProgressEmitter,
    ProgressEvent,
    ProgressEventType,
    ProgressSink,
)

__all__ = [
    "CollectingProgressSink",
    "NullProgressSink",
    "ProgressChannel",
    "ProgressEmitter",
    "ProgressEvent",
    "ProgressEventType",
    "ProgressSink",
]
