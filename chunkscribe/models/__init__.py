"""
Database models package.

- Project, AudioChunk and FinalDocument: the recording, its chunks and the merged output
- DraftSegment and PolishedSegment: per-chunk transcription and refinement results
- SystemSetting: runtime-editable configuration
"""

from chunkscribe.database import db

from .project import Project, AudioChunk, FinalDocument
from .segment import DraftSegment, PolishedSegment
from .system import SystemSetting

__all__ = [
    'db',
    'Project',
    'AudioChunk',
    'FinalDocument',
    'DraftSegment',
    'PolishedSegment',
    'SystemSetting',
]
