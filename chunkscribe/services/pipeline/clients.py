"""
Stage clients handed to a pipeline run.
"""

import os
from dataclasses import dataclass
from typing import Callable

from flask import current_app

from chunkscribe.services.advisor import consult_on_issue
from chunkscribe.services.chunk_store import read_chunk_bytes
from chunkscribe.services.refinement import refine_chunk
from chunkscribe.services.transcription import TranscriptionRequest, transcribe


@dataclass
class StageClients:
    """
    The three external collaborators of a run.

    transcribe(chunk, temperature, cancel_token) -> str
    refine(prior_context, raw_text, style) -> RefineResult
    consult(text, reason) -> Advice
    """
    transcribe: Callable
    refine: Callable
    consult: Callable


def transcribe_chunk(chunk, temperature, cancel_token):
    """Transcribe one AudioChunk through the provider fallback chain."""
    data = read_chunk_bytes(chunk, current_app.config.get('UPLOAD_FOLDER'))
    request = TranscriptionRequest(
        audio_data=data,
        filename=os.path.basename(chunk.file_path),
        temperature=temperature,
        cancel_token=cancel_token
    )
    return transcribe(request).text


def default_clients():
    return StageClients(
        transcribe=transcribe_chunk,
        refine=refine_chunk,
        consult=consult_on_issue
    )
