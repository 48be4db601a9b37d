"""
OpenAI Whisper API connector.

Works against api.openai.com and any OpenAI-compatible transcription endpoint
(Groq, local whisper servers) through base_url.
"""

import logging
import httpx
from openai import OpenAI
from typing import Dict, Any

from ..base import (
    BaseTranscriptionConnector,
    TranscriptionRequest,
    TranscriptionResponse,
)
from ..exceptions import TranscriptionError, ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


class OpenAIWhisperConnector(BaseTranscriptionConnector):
    """Connector for the OpenAI /audio/transcriptions API."""

    PROVIDER_NAME = "openai_whisper"

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: Configuration dict with keys:
                - api_key: API key (required)
                - base_url: API base URL (optional, for compatible providers)
                - model: Model name (default: whisper-1)
                - timeout: Request timeout in seconds (default: 120)
                - http_client: Optional httpx.Client instance
        """
        super().__init__(config)

        http_client = config.get('http_client')
        if not http_client:
            http_client = httpx.Client(
                verify=True,
                headers={"User-Agent": "Chunkscribe/1.0"},
                timeout=float(config.get('timeout', 120))
            )

        self.client = OpenAI(
            api_key=config['api_key'],
            base_url=config.get('base_url') or None,
            http_client=http_client,
            max_retries=int(config.get('max_retries', 2))
        )
        self.model = config.get('model') or 'whisper-1'

    def _validate_config(self) -> None:
        if not self.config.get('api_key'):
            raise ConfigurationError(f"api_key is required for {self.name} connector")

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        request.check_cancelled()

        params = {
            "model": self.model,
            "file": request.as_upload(),
        }
        if request.language:
            params["language"] = request.language
        if request.prompt:
            params["prompt"] = request.prompt
        if request.temperature is not None:
            params["temperature"] = request.temperature

        try:
            logger.info(f"[{self.name}] Transcribing {request.filename} with {self.model} (temperature={request.temperature})")
            transcript = self.client.audio.transcriptions.create(**params)
        except Exception as e:
            status_code = getattr(e, 'status_code', None)
            logger.error(f"[{self.name}] Whisper transcription failed: {e}")
            if status_code is not None:
                raise ProviderError(
                    f"{self.name} request failed with status {status_code}: {e}",
                    provider=self.name,
                    status_code=status_code
                ) from e
            raise TranscriptionError(f"{self.name} transcription failed: {e}") from e

        request.check_cancelled()
        return TranscriptionResponse(
            text=transcript.text or '',
            language=getattr(transcript, 'language', None),
            provider=self.name,
            model=self.model
        )

    def health_check(self) -> bool:
        return bool(self.config.get('api_key'))
