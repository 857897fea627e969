"""Story generation pipeline: orchestration, fallback and workers."""

from storyloom.pipeline.assets import (
    CoverAssetGenerator,
    GeneratedAsset,
    ImageProviderPool,
    PageAssetGenerator,
)
from storyloom.pipeline.config import PipelineConfig, PipelineConfigError, load_pipeline_config
from storyloom.pipeline.errors import (
    AttemptFailure,
    ErrorClass,
    ExhaustedError,
    OrchestratorError,
    PipelineError,
    StructuralError,
    classify,
    describe_failure,
)
from storyloom.pipeline.fallback import FallbackResolver, FallbackResult
from storyloom.pipeline.notifier import CompletionNotifier, LoggingNotifier
from storyloom.pipeline.orchestrator import Orchestrator
from storyloom.pipeline.retry import RetryExecutor
from storyloom.pipeline.runtime import StoryPipeline
from storyloom.pipeline.workers import CoverWorker, PageOutcome, PageWorker, mark_story_failed

__all__ = [
    "AttemptFailure",
    "CompletionNotifier",
    "CoverAssetGenerator",
    "CoverWorker",
    "ErrorClass",
    "ExhaustedError",
    "FallbackResolver",
    "FallbackResult",
    "GeneratedAsset",
    "ImageProviderPool",
    "LoggingNotifier",
    "Orchestrator",
    "OrchestratorError",
    "PageAssetGenerator",
    "PageOutcome",
    "PageWorker",
    "PipelineConfig",
    "PipelineConfigError",
    "PipelineError",
    "RetryExecutor",
    "StoryPipeline",
    "StructuralError",
    "classify",
    "describe_failure",
    "load_pipeline_config",
    "mark_story_failed",
]
