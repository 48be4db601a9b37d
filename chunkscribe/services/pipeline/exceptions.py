"""
Pipeline exceptions.
"""


class PipelineError(Exception):
    """Base exception for pipeline control errors."""
    pass


class CheckpointError(PipelineError):
    """Illegal checkpoint transition or resume from a non-resumable state."""
    pass


class PipelineBusyError(PipelineError):
    """Another run already owns the project."""
    pass


class ProjectNotFoundError(PipelineError):
    """Unknown project or chunk id."""
    pass


class PipelineCancelled(Exception):
    """Raised inside a chunk task whose cancellation token was cancelled."""

    def __init__(self, reason='cancelled'):
        super().__init__(reason)
        self.reason = reason
