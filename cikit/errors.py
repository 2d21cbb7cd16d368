"""Error taxonomy for pipeline orchestration.

Stage-level errors are raised inside the engine and converted into stage results by
`cikit.engine.runner`; they never escape `PipelineRunner.run`.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for orchestration errors."""

    kind: str = "PipelineError"


class InvalidResourceRequest(PipelineError, ValueError):
    kind = "InvalidResourceRequest"


class DefinitionError(PipelineError, ValueError):
    kind = "DefinitionError"


class CommandFailure(PipelineError):
    kind = "CommandFailure"

    def __init__(self, command: str, exit_code: int, *, index: int | None = None) -> None:
        super().__init__(f"Command exited with status {exit_code}: {command}")
        self.command = command
        self.exit_code = exit_code
        self.index = index


class ProvisioningTimeout(PipelineError):
    kind = "ProvisioningTimeout"

    def __init__(self, message: str, *, waited_seconds: float | None = None) -> None:
        super().__init__(message)
        self.waited_seconds = waited_seconds


class StageTimeout(PipelineError):
    kind = "StageTimeout"

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        super().__init__(f"Stage {stage} exceeded timeout of {timeout_seconds:g}s")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class StageCancelled(PipelineError):
    kind = "StageCancelled"


class ArtifactStoreError(PipelineError):
    kind = "ArtifactStoreError"


class DuplicateName(ArtifactStoreError):
    kind = "DuplicateName"

    def __init__(self, run_id: str, name: str) -> None:
        super().__init__(f"Artifact {name!r} already published for run {run_id}")
        self.run_id = run_id
        self.name = name


class NotFound(ArtifactStoreError):
    kind = "NotFound"

    def __init__(self, run_id: str, name: str, *, reason: str | None = None) -> None:
        message = f"Artifact {name!r} not found for run {run_id}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.run_id = run_id
        self.name = name


class EmptyArtifact(ArtifactStoreError):
    kind = "EmptyArtifact"
