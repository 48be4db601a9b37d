"""
Base classes and data types for transcription connectors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple


@dataclass
class TranscriptionRequest:
    """Standardized transcription request for one audio chunk."""
    audio_data: bytes
    filename: str
    mime_type: Optional[str] = None
    language: Optional[str] = None

    # Sampling temperature; raised on retries to break repetition loops
    temperature: Optional[float] = None
    prompt: Optional[str] = None

    # Cancellation scope of the chunk attempt that issued this request
    cancel_token: Any = None

    # Provider-specific options (passthrough)
    extra_options: Dict[str, Any] = field(default_factory=dict)

    def as_upload(self) -> Tuple[str, bytes]:
        """(filename, bytes) tuple accepted by the OpenAI SDK file parameter."""
        return (self.filename, self.audio_data)

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()


@dataclass
class TranscriptionResponse:
    """Standardized transcription response."""
    text: str
    language: Optional[str] = None
    duration: Optional[float] = None

    # Provider info
    provider: str = ""
    model: str = ""

    # Raw response for debugging
    raw_response: Optional[Dict[str, Any]] = None


class BaseTranscriptionConnector(ABC):
    """Abstract base class for transcription connectors."""

    PROVIDER_NAME: str = "unknown"

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize connector with configuration.

        Args:
            config: Provider-specific configuration dict
        """
        self.config = config
        self._validate_config()

    @property
    def name(self) -> str:
        return self.config.get('name') or self.PROVIDER_NAME

    @abstractmethod
    def _validate_config(self) -> None:
        """
        Validate required configuration is present.

        Raises:
            ConfigurationError: If required config is missing or invalid
        """
        pass

    @abstractmethod
    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        """
        Perform transcription.

        Raises:
            TranscriptionError: On transcription failure
        """
        pass

    def health_check(self) -> bool:
        """Whether the provider looks reachable and configured."""
        return True
