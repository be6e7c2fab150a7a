"""Pipeline orchestration.

- `ReplicationPipeline`: the resumable control loop for one source
- `InFlightWindow`: contiguous-prefix tracking of admitted events
- `run_pipelines`: run several independent pipelines in one process
- `open_pipeline` / `build_checkpoint_store`: build pipelines from settings
"""

from couchstream.orchestration.pipeline import ReplicationPipeline
from couchstream.orchestration.runner import merge_stats, run_pipelines
from couchstream.orchestration.window import InFlightWindow
from couchstream.orchestration.wiring import build_checkpoint_store, open_pipeline

__all__ = [
    "ReplicationPipeline",
    "InFlightWindow",
    "run_pipelines",
    "merge_stats",
    "build_checkpoint_store",
    "open_pipeline",
]
