"""
Transcription service package.

Connector-based speech-to-text with an ordered provider fallback chain:

- OpenAI Whisper and OpenAI-compatible endpoints (openai_whisper, fallback_whisper)
- Self-hosted ASR endpoints (asr_endpoint)

Usage:
    from chunkscribe.services.transcription import transcribe, TranscriptionRequest

    request = TranscriptionRequest(audio_data=data, filename='chunk_003.mp3', temperature=0.2)
    response = transcribe(request)
    print(response.text)
"""

from .base import (
    TranscriptionRequest,
    TranscriptionResponse,
    BaseTranscriptionConnector,
)

from .exceptions import (
    TranscriptionError,
    ConfigurationError,
    ProviderError,
)

from .registry import (
    ConnectorRegistry,
    FallbackTranscriber,
    get_registry,
    get_transcriber,
    reset_transcriber,
    transcribe,
)

from .connectors import (
    OpenAIWhisperConnector,
    ASREndpointConnector,
)

__all__ = [
    'TranscriptionRequest',
    'TranscriptionResponse',
    'BaseTranscriptionConnector',
    'TranscriptionError',
    'ConfigurationError',
    'ProviderError',
    'ConnectorRegistry',
    'FallbackTranscriber',
    'get_registry',
    'get_transcriber',
    'reset_transcriber',
    'transcribe',
    'OpenAIWhisperConnector',
    'ASREndpointConnector',
]
