"""Engine primitives: capacity pool, execution environments, artifact store, runner."""

from cikit.engine.artifacts import ArtifactBundle, ArtifactId, ArtifactStore, Archiver, select_files
from cikit.engine.environment import EnvironmentProvisioner, ExecutionEnvironment, ExitReport
from cikit.engine.pool import CapacityPool, Lease
from cikit.engine.runner import (
    DefaultStageRecorder,
    GroupResult,
    NullStageRecorder,
    PipelineRun,
    PipelineRunner,
    RunContext,
    StageRecorder,
    StageResult,
    utc_now_iso8601,
)

__all__ = [
    "ArtifactBundle",
    "ArtifactId",
    "ArtifactStore",
    "Archiver",
    "CapacityPool",
    "DefaultStageRecorder",
    "EnvironmentProvisioner",
    "ExecutionEnvironment",
    "ExitReport",
    "GroupResult",
    "Lease",
    "NullStageRecorder",
    "PipelineRun",
    "PipelineRunner",
    "RunContext",
    "StageRecorder",
    "StageResult",
    "select_files",
    "utc_now_iso8601",
]
