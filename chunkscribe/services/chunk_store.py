"""
Chunk store: persists the external splitter's output as a Project.

The splitter runs once per recording, before the pipeline starts, and hands
over an ordered list of chunk descriptors. The pipeline never re-splits.
"""

import os
import logging
from dataclasses import dataclass
from typing import List, Optional

from chunkscribe.database import db

logger = logging.getLogger(__name__)


@dataclass
class ChunkSpec:
    """One entry of the splitter output."""
    index: int
    file_path: Optional[str] = None
    duration_ms: Optional[int] = None
    is_silence: bool = False

    @classmethod
    def from_dict(cls, data):
        if 'index' not in data:
            raise ValueError('chunk entry is missing index')
        return cls(
            index=int(data['index']),
            file_path=data.get('file_path') or data.get('filePath'),
            duration_ms=data.get('duration_ms', data.get('durationMs')),
            is_silence=bool(data.get('is_silence', data.get('isSilence', False)))
        )


def create_project(name, chunks: List[ChunkSpec], style_config=None, mode='SUPERVISED'):
    """
    Persist a project and its chunks.

    A project with chunks starts at CHUNKED (the splitter already ran); one
    without chunks stays at UPLOADED until chunks are attached.
    """
    from chunkscribe.models import Project, AudioChunk

    indexes = [spec.index for spec in chunks]
    if len(indexes) != len(set(indexes)):
        raise ValueError('chunk indexes must be unique')

    project = Project(name=name, mode=mode)
    project.set_style_config(style_config)
    if chunks:
        project.checkpoint = 'CHUNKED'
        project.last_checkpoint = 'CHUNKED'
    db.session.add(project)

    for spec in sorted(chunks, key=lambda s: s.index):
        project.chunks.append(AudioChunk(
            index=spec.index,
            file_path=spec.file_path,
            duration_ms=spec.duration_ms,
            is_silence=spec.is_silence
        ))

    db.session.commit()
    silent = sum(1 for spec in chunks if spec.is_silence)
    logger.info(f"Created project {project.id} '{name}' with {len(chunks)} chunks ({silent} silence)")
    return project


def read_chunk_bytes(chunk, upload_folder=None):
    """Read a chunk's audio; relative paths resolve against the upload folder."""
    if not chunk.file_path:
        raise FileNotFoundError(f"Chunk {chunk.id} has no audio file")
    path = chunk.file_path
    if upload_folder and not os.path.isabs(path):
        path = os.path.join(upload_folder, path)
    with open(path, 'rb') as f:
        return f.read()
