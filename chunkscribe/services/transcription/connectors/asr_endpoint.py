"""
ASR Endpoint connector for self-hosted ASR services.

Supports whisper-asr-webservice and compatible services that expose /asr.
"""

import logging
import httpx
from typing import Dict, Any

from ..base import (
    BaseTranscriptionConnector,
    TranscriptionRequest,
    TranscriptionResponse,
)
from ..exceptions import TranscriptionError, ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


class ASREndpointConnector(BaseTranscriptionConnector):
    """Connector for a self-hosted ASR webservice."""

    PROVIDER_NAME = "asr_endpoint"

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: Configuration dict with keys:
                - base_url: ASR service base URL (required)
                - timeout: Request timeout in seconds (default: 300)
        """
        super().__init__(config)
        self.base_url = config['base_url'].rstrip('/')
        self.timeout = config.get('timeout', 300)

    def _validate_config(self) -> None:
        if not self.config.get('base_url'):
            raise ConfigurationError("base_url is required for ASR endpoint connector")

    def transcribe(self, request: TranscriptionRequest) -> TranscriptionResponse:
        request.check_cancelled()

        url = f"{self.base_url}/asr"
        params = {
            'encode': True,
            'task': 'transcribe',
            'output': 'json'
        }
        if request.language:
            params['language'] = request.language
        if request.prompt:
            params['initial_prompt'] = request.prompt

        files = {
            'audio_file': (request.filename, request.audio_data, request.mime_type or 'application/octet-stream')
        }
        timeout = httpx.Timeout(None, connect=30.0, read=float(self.timeout), write=float(self.timeout), pool=None)

        try:
            logger.info(f"[{self.name}] Sending ASR request for {request.filename} to {url}")
            with httpx.Client() as client:
                response = client.post(url, params=params, files=files, timeout=timeout)
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            logger.error(f"[{self.name}] ASR request failed with status {e.response.status_code}")
            raise ProviderError(
                f"ASR request failed with status {e.response.status_code}",
                provider=self.name,
                status_code=e.response.status_code
            ) from e

        except httpx.TimeoutException as e:
            logger.error(f"[{self.name}] ASR request timed out after {self.timeout}s")
            raise TranscriptionError(f"ASR request timed out after {self.timeout}s") from e

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[{self.name}] ASR transcription failed: {e}")
            raise TranscriptionError(f"ASR transcription failed: {e}") from e

        request.check_cancelled()
        return self._parse_response(data)

    def _parse_response(self, data: Dict[str, Any]) -> TranscriptionResponse:
        if 'text' in data:
            text = data['text'] or ''
        else:
            text = ' '.join(seg.get('text', '').strip() for seg in data.get('segments') or [])

        return TranscriptionResponse(
            text=text.strip(),
            language=data.get('language'),
            provider=self.name,
            model="asr-endpoint",
            raw_response=data
        )

    def health_check(self) -> bool:
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(f"{self.base_url}/")
                return response.status_code < 500
        except httpx.HTTPError:
            return False
