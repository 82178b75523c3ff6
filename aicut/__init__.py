"""aicut: prompt-to-video studio pipeline.

Streams a story skeleton from a language model, generates reference and
scene images, drives image-to-video and speech jobs, keeps the timeline in
sync with the scenes, and exports the result with FFmpeg.
"""

from aicut.client import GenerationClient
from aicut.document import DocumentStore, apply_patch
from aicut.errors import (
    AicutError,
    ConfigurationError,
    ExportError,
    GenerationError,
    JobFailedError,
    JobTimeoutError,
    ParseError,
    TransportError,
)
from aicut.models import AUTO, Fixed, Scene, Skeleton
from aicut.orchestrator import Pipeline, RunState

__version__ = "0.1.0"

__all__ = [
    "GenerationClient",
    "DocumentStore",
    "apply_patch",
    "AicutError",
    "ConfigurationError",
    "ExportError",
    "GenerationError",
    "JobFailedError",
    "JobTimeoutError",
    "ParseError",
    "TransportError",
    "AUTO",
    "Fixed",
    "Scene",
    "Skeleton",
    "Pipeline",
    "RunState",
]
