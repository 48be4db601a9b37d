"""
Escalation advisor: an LLM consulted when the quality gate flags a transcription.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from chunkscribe.services.llm import call_llm_completion, completion_text
from chunkscribe.utils import safe_json_loads

logger = logging.getLogger(__name__)

KEEP = 'KEEP'
SKIP = 'SKIP'
RETRY = 'RETRY'
ACTIONS = (KEEP, SKIP, RETRY)

ADVISOR_MODEL_NAME = os.environ.get('ADVISOR_MODEL_NAME') or None
FALLBACK_TEMPERATURE = 0.6

PROMPT = """You are the supervising reviewer of a transcription system.
A local heuristic check flagged a transcription segment as suspicious.

Suspicious Text: "{text}"
Flag Reason: "{reason}"

Decide:
1. Hallucination (repeating loops, random characters)? -> action RETRY, suggest a higher temperature.
2. Only noise, silence or music? -> action SKIP.
3. Actually valid (repeated lyrics, chanting, foreign language)? -> action KEEP.

Reply with JSON: {{"action": "RETRY" | "SKIP" | "KEEP", "reasoning": "string", "suggestedTemperature": number}}"""


@dataclass
class Advice:
    action: str
    temperature: Optional[float] = None
    reason: str = ''


def _clamp_temperature(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(value, 1.0))


def consult_on_issue(text, reason):
    """
    Ask the advisor what to do with a suspicious transcription.

    Never raises: a failed or unintelligible consultation means RETRY with a
    higher temperature, which is always safe within the attempt budget.
    """
    messages = [{'role': 'user', 'content': PROMPT.format(text=text[:4000], reason=reason)}]
    try:
        response = call_llm_completion(
            messages,
            temperature=0.0,
            response_format={'type': 'json_object'},
            model=ADVISOR_MODEL_NAME
        )
        payload = safe_json_loads(completion_text(response), {})
    except Exception as e:
        logger.error(f"Advisor consultation failed: {e}")
        return Advice(RETRY, FALLBACK_TEMPERATURE, 'Advisor failed, defaulting to retry')

    action = str(payload.get('action', '')).upper() if isinstance(payload, dict) else ''
    if action not in ACTIONS:
        logger.warning(f"Advisor returned unusable action {action!r}, defaulting to retry")
        return Advice(RETRY, FALLBACK_TEMPERATURE, 'Advisor reply unusable, defaulting to retry')

    temperature = _clamp_temperature(payload.get('suggestedTemperature'))
    logger.info(f"Advisor decision: {action} (temperature={temperature}) - {payload.get('reasoning', '')}")
    return Advice(action, temperature, payload.get('reasoning', ''))
