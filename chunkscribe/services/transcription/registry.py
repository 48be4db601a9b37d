"""
Connector registry and the ordered provider fallback chain.

Connectors are plain strategy objects sharing one transcribe() interface. The
chain tries them in priority order until one succeeds, so a provider outage
only surfaces as a chunk failure once every fallback has failed.
"""

import os
import logging
import threading
from typing import Dict, Any, Optional, Type, List

from .base import BaseTranscriptionConnector, TranscriptionRequest, TranscriptionResponse
from .exceptions import TranscriptionError, ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_CHAIN = 'openai_whisper'


def _clean_url(value):
    if not value:
        return value
    return value.split('#')[0].strip()


class ConnectorRegistry:
    """
    Registry of connector classes.

    Singleton pattern - use get_registry() to get the shared instance.
    """

    _instance = None
    _connectors: Dict[str, Type[BaseTranscriptionConnector]] = {}
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._register_builtin_connectors()
        self._initialized = True

    def _register_builtin_connectors(self):
        from .connectors.openai_whisper import OpenAIWhisperConnector
        from .connectors.asr_endpoint import ASREndpointConnector

        self.register('openai_whisper', OpenAIWhisperConnector)
        # Second OpenAI-compatible provider (e.g. Groq) configured with FALLBACK_* variables
        self.register('fallback_whisper', OpenAIWhisperConnector)
        self.register('asr_endpoint', ASREndpointConnector)

    def register(self, name: str, connector_class: Type[BaseTranscriptionConnector]):
        self._connectors[name] = connector_class
        logger.debug(f"Registered transcription connector: {name}")

    def get_connector_class(self, name: str) -> Type[BaseTranscriptionConnector]:
        if name not in self._connectors:
            raise ConfigurationError(
                f"Unknown connector: {name}. Available: {list(self._connectors.keys())}"
            )
        return self._connectors[name]

    def create_connector(self, name: str, config: Dict[str, Any]) -> BaseTranscriptionConnector:
        connector_class = self.get_connector_class(name)
        config = dict(config)
        config.setdefault('name', name)
        return connector_class(config)

    def build_config_from_env(self, connector_name: str) -> Dict[str, Any]:
        """Build one connector's config from environment variables."""
        if connector_name == 'asr_endpoint':
            return {
                'base_url': _clean_url(os.environ.get('ASR_BASE_URL', '')),
                'timeout': int(os.environ.get('ASR_TIMEOUT', '300')),
            }

        if connector_name == 'fallback_whisper':
            return {
                'api_key': os.environ.get('FALLBACK_TRANSCRIPTION_API_KEY', ''),
                'base_url': _clean_url(os.environ.get('FALLBACK_TRANSCRIPTION_BASE_URL', '')) or None,
                'model': os.environ.get('FALLBACK_TRANSCRIPTION_MODEL', 'whisper-large-v3'),
            }

        return {
            'api_key': os.environ.get('TRANSCRIPTION_API_KEY', ''),
            'base_url': _clean_url(os.environ.get('TRANSCRIPTION_BASE_URL', '')) or None,
            'model': os.environ.get('TRANSCRIPTION_MODEL', 'whisper-1'),
        }

    def build_chain_from_env(self) -> 'FallbackTranscriber':
        """
        Build the fallback chain from TRANSCRIPTION_CONNECTORS (comma-separated, priority order).

        Connectors whose configuration is incomplete are left out with a warning.
        """
        names = [
            name.strip().lower()
            for name in os.environ.get('TRANSCRIPTION_CONNECTORS', DEFAULT_CHAIN).split(',')
            if name.strip()
        ]

        connectors = []
        for name in names:
            try:
                connectors.append(self.create_connector(name, self.build_config_from_env(name)))
                logger.info(f"Transcription chain: added {name}")
            except ConfigurationError as e:
                logger.warning(f"Transcription chain: skipping {name}: {e}")

        if not connectors:
            raise ConfigurationError(
                f"No usable transcription connector configured (TRANSCRIPTION_CONNECTORS={','.join(names)})"
            )
        return FallbackTranscriber(connectors)


class FallbackTranscriber:
    """Ordered list of connectors tried one after another."""

    def __init__(self, connectors: List[BaseTranscriptionConnector]):
        if not connectors:
            raise ConfigurationError("FallbackTranscriber needs at least one connector")
        self.connectors = list(connectors)

    @property
    def names(self) -> List[str]:
        return [connector.name for connector in self.connectors]

    def health(self) -> Dict[str, bool]:
        """health_check() of every connector in chain order."""
        results = {}
        for connector in self.connectors:
            try:
                results[connector.name] = bool(connector.health_check())
            except Exception as e:
                logger.warning(f"Health check of {connector.name} failed: {e}")
                results[connector.name] = False
        return results

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        errors = []
        for connector in self.connectors:
            request.check_cancelled()
            try:
                response = connector.transcribe(request)
            except TranscriptionError as e:
                logger.warning(f"Provider {connector.name} failed for {request.filename}, trying next: {e}")
                errors.append(f"{connector.name}: {e}")
                continue

            if len(errors) > 0:
                logger.info(f"Provider {connector.name} succeeded for {request.filename} after {len(errors)} fallback(s)")
            return response

        raise ProviderError(f"All transcription providers failed: {'; '.join(errors)}")


# Global registry and lazily-built chain
_registry: Optional[ConnectorRegistry] = None
_transcriber: Optional[FallbackTranscriber] = None
_transcriber_lock = threading.Lock()


def get_registry() -> ConnectorRegistry:
    global _registry
    if _registry is None:
        _registry = ConnectorRegistry()
    return _registry


def get_transcriber() -> FallbackTranscriber:
    """Get the process-wide fallback chain, building it from the environment on first use."""
    global _transcriber
    with _transcriber_lock:
        if _transcriber is None:
            _transcriber = get_registry().build_chain_from_env()
        return _transcriber


def reset_transcriber() -> None:
    """Drop the cached chain so the next call rebuilds it (environment changed)."""
    global _transcriber
    with _transcriber_lock:
        _transcriber = None


def transcribe(request: TranscriptionRequest) -> TranscriptionResponse:
    """Transcribe through the fallback chain."""
    return get_transcriber().transcribe(request)
