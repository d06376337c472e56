"""
Pipeline Errors
===============
Exception taxonomy for the release pipeline.

Every error carries a stable, machine-readable ``kind`` that is recorded on
the failing StageResult and on the run, so the dashboard/API never has to
parse messages.

Retry policy per kind:
    BuildFailure         — never retried (halts dependents)
    ScannerUnavailable   — never retried; re-run the pipeline
    PublishRejected      — terminal, no retry
    RegistryPushFailure  — retried REGISTRY_PUSH_RETRY_LIMIT times
    UpdateConflict       — raised only after DESCRIPTOR_UPDATE_RETRY_LIMIT
    NotFound             — programming/config error, never retried
"""


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind = "PipelineError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class BuildFailure(PipelineError):
    """A test, lint, build or image build step exited unsuccessfully."""

    kind = "BuildFailure"

    def __init__(self, message: str = "", exit_code: int = -1, log_excerpt: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_excerpt = log_excerpt


class ScannerUnavailable(PipelineError):
    """The scanner could not produce a verdict. Distinct from 'vulnerable'."""

    kind = "ScannerUnavailable"


class PublishRejected(PipelineError):
    """A human denied the manual publish approval."""

    kind = "PublishRejected"


class RegistryPushFailure(PipelineError):
    """Transient registry push error."""

    kind = "RegistryPushFailure"


class UpdateConflict(PipelineError):
    """Descriptor storage kept moving under us; retries exhausted."""

    kind = "UpdateConflict"


class StaleDescriptor(PipelineError):
    """Descriptor storage moved between read and write (one attempt)."""

    kind = "StaleDescriptor"


class DescriptorError(PipelineError):
    """Descriptor is missing, unparsable, or has no matching image entry."""

    kind = "DescriptorError"


class NotFound(PipelineError):
    """Artifact reference from another run, or from a released store."""

    kind = "NotFound"


class StageTimeout(PipelineError):
    """A stage exceeded its configured timeout."""

    kind = "StageTimeout"


class RunCancelled(PipelineError):
    """The run was cancelled before this stage started."""

    kind = "RunCancelled"


class RunNotFound(PipelineError):
    """No run with the requested id exists."""

    kind = "RunNotFound"


class RunStateError(PipelineError):
    """Operation not allowed in the run's current status."""

    kind = "RunStateError"


UNEXPECTED_ERROR = "UnexpectedError"
