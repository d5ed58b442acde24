"""Processing stages."""

from bisub.stages.base import Stage, StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.batch_edit import BatchEditStage
from bisub.stages.glossary import GlossaryExtractionStage
from bisub.stages.qc_fix import QCFixStage
from bisub.stages.qc_review import QCReviewStage
from bisub.stages.qc_validate import QCValidateStage
from bisub.stages.refinement import RefinementStage
from bisub.stages.transcription import TranscriptionStage
from bisub.stages.translation import TranslationStage

__all__ = [
    "BaseLLMStage",
    "BatchEditStage",
    "GlossaryExtractionStage",
    "QCFixStage",
    "QCReviewStage",
    "QCValidateStage",
    "RefinementStage",
    "Stage",
    "StageResult",
    "TranscriptionStage",
    "TranslationStage",
]
