"""
Pipeline package: checkpointed, watchdog-supervised transcription runs.

Usage:
    from chunkscribe.services.pipeline import pipeline_controller

    pipeline_controller.start(project.id)
    pipeline_controller.status(project.id)['failedChunks']
"""

from .exceptions import (
    PipelineError,
    CheckpointError,
    PipelineBusyError,
    ProjectNotFoundError,
    PipelineCancelled,
)

from .clients import StageClients, default_clients
from .retry_loop import ValidationLoop, ChunkOutcome
from .scheduler import PipelineRun, PipelineSettings
from .watchdog import Watchdog
from .controller import PipelineController, pipeline_controller

__all__ = [
    'PipelineError',
    'CheckpointError',
    'PipelineBusyError',
    'ProjectNotFoundError',
    'PipelineCancelled',
    'StageClients',
    'default_clients',
    'ValidationLoop',
    'ChunkOutcome',
    'PipelineRun',
    'PipelineSettings',
    'Watchdog',
    'PipelineController',
    'pipeline_controller',
]
