"""Reusable CI orchestration kernel (stage graph + engine primitives).

This package is intentionally independent of `ci_pipeline.*`. Definition formats,
configuration and run records live in the consuming application.
"""

from cikit.engine import (
    ArtifactBundle,
    ArtifactStore,
    Archiver,
    CapacityPool,
    DefaultStageRecorder,
    EnvironmentProvisioner,
    ExecutionEnvironment,
    ExitReport,
    NullStageRecorder,
    PipelineRun,
    PipelineRunner,
    StageRecorder,
    StageResult,
    utc_now_iso8601,
)
from cikit.errors import (
    CommandFailure,
    DefinitionError,
    DuplicateName,
    EmptyArtifact,
    InvalidResourceRequest,
    NotFound,
    PipelineError,
    ProvisioningTimeout,
    StageCancelled,
    StageTimeout,
)
from cikit.model import ArchiveSpec, Command, ResourceRequest, Stage, StageGroup, StashSpec, UnstashSpec

__all__ = [
    "ArchiveSpec",
    "ArtifactBundle",
    "ArtifactStore",
    "Archiver",
    "CapacityPool",
    "Command",
    "CommandFailure",
    "DefaultStageRecorder",
    "DefinitionError",
    "DuplicateName",
    "EmptyArtifact",
    "EnvironmentProvisioner",
    "ExecutionEnvironment",
    "ExitReport",
    "InvalidResourceRequest",
    "NotFound",
    "NullStageRecorder",
    "PipelineError",
    "PipelineRun",
    "PipelineRunner",
    "ProvisioningTimeout",
    "ResourceRequest",
    "Stage",
    "StageCancelled",
    "StageGroup",
    "StageRecorder",
    "StageResult",
    "StageTimeout",
    "StashSpec",
    "UnstashSpec",
    "utc_now_iso8601",
]
