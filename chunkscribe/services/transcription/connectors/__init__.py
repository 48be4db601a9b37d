"""
Transcription connector implementations.
"""

from .openai_whisper import OpenAIWhisperConnector
from .asr_endpoint import ASREndpointConnector

__all__ = [
    'OpenAIWhisperConnector',
    'ASREndpointConnector',
]
