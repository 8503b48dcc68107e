"""
Pipeline Error Types

Exceptions raised inside the processing pipeline. Stage-specific errors
carry the stage they belong to, so a failure can be attributed to the
right status row at the point it is raised.
"""

from chatflow.common.models import ProcessingStage


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class StageError(PipelineError):
    """An error that belongs to a specific processing stage."""

    stage: ProcessingStage = ProcessingStage.CSV_IMPORT

    def __init__(self, message: str, stage: ProcessingStage | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ImportValidationError(StageError):
    """Malformed import record (e.g. an unparseable start or end time)."""

    stage = ProcessingStage.CSV_IMPORT


class TranscriptFetchError(StageError):
    stage = ProcessingStage.TRANSCRIPT_FETCH


class TranscriptParseError(StageError):
    stage = ProcessingStage.SESSION_CREATION


class EnrichmentValidationError(StageError):
    """The model returned a structured result that failed validation."""

    stage = ProcessingStage.AI_ANALYSIS


class QuestionExtractionError(StageError):
    stage = ProcessingStage.QUESTION_EXTRACTION


class InferenceError(PipelineError):
    """The inference provider could not be called or answered with an error."""


class InvalidTransitionError(PipelineError):
    """A stage status change that the transition table does not allow."""

    def __init__(self, stage, current, target):
        self.stage = stage
        self.current = current
        self.target = target
        current_name = current.value if current is not None else "ABSENT"
        super().__init__(
            f"Cannot move {stage.value} from {current_name} to {target.value}"
        )
