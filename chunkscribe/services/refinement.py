"""
Refinement stage client: polish one chunk's transcript with its prior context.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from chunkscribe.services.llm import call_llm_completion, completion_text
from chunkscribe.utils import safe_json_loads

logger = logging.getLogger(__name__)

REFINE_TEMPERATURE = 0.3

TASK_DESCRIPTIONS = {
    'Clean Only': "Fix grammar and punctuation only. Do not rewrite sentences.",
    'Rewrite & Polish': "Polish the [CURRENT_RAW_TEXT] into fluent, professional text.",
    'Summarize': "Provide a concise summary of the [CURRENT_RAW_TEXT].",
    'Structure/Format': "Organize the [CURRENT_RAW_TEXT] into clear markdown sections.",
}

RESPONSE_FORMAT = """## Response Format (JSON):
{
  "polishedText": "string",
  "hasRepetition": boolean,
  "repetitionWarnings": ["string"]
}"""


class RefinementError(Exception):
    """The refinement provider failed or replied with something unusable."""
    pass


@dataclass
class RefineResult:
    polished_text: str
    has_repetition: bool = False
    warnings: List[str] = field(default_factory=list)


def _fill_placeholders(custom, raw_text, prior_context):
    custom = custom.replace('[RAW_TEXT]', raw_text)
    return custom.replace('[PREVIOUS_CONTEXT]', prior_context or '(No previous context)')


def build_messages(prior_context, raw_text, style):
    """
    Build the chat messages for one refinement call.

    A custom instruction containing markdown headings is treated as a complete
    template: it becomes the user prompt and the default editing rules are left out.
    """
    style = style or {}
    mode = style.get('mode') or 'Rewrite & Polish'
    tone = style.get('tone') or 'Professional'
    rules = style.get('cleaning_rules') or []
    custom = _fill_placeholders(style.get('custom_instructions') or '', raw_text, prior_context)
    is_full_template = '#' in custom

    if is_full_template:
        system_prompt = (
            "You are a professional content editor.\n"
            "Strict protocol: follow the user's instructions exactly. Do not add metadata or commentary.\n\n"
            f"{RESPONSE_FORMAT}"
        )
        user_prompt = custom
    else:
        cleaning = f"Cleaning Rules: {', '.join(rules)}" if rules else ""
        custom_block = f"\n## Custom instructions:\n{custom}\n" if custom else ""
        system_prompt = f"""You are a professional content editor.

## Task: Polish
{TASK_DESCRIPTIONS.get(mode, TASK_DESCRIPTIONS['Rewrite & Polish'])}
Target Tone: {tone}.
{cleaning}

## Punctuation
Add appropriate punctuation and paragraph breaks if missing.

## Repetition Detection
Report semantic repetition you notice in the text.

## Rules:
1. Fix ASR errors (homophones, stuttering).
2. Maintain the original meaning.
3. Use [PREVIOUS_CONTEXT] only for continuity; never repeat it in the output.
{custom_block}
{RESPONSE_FORMAT}"""
        user_prompt = f"[PREVIOUS_CONTEXT]\n...{prior_context}\n\n[CURRENT_RAW_TEXT]\n{raw_text}"

    return [
        {'role': 'system', 'content': system_prompt},
        {'role': 'user', 'content': user_prompt},
    ]


def refine_chunk(prior_context, raw_text, style=None):
    """
    Refine one chunk.

    Args:
        prior_context: Accepted text of the preceding chunks (already truncated)
        raw_text: The chunk's accepted transcription
        style: Project style config with template instructions resolved

    Returns:
        RefineResult

    Raises:
        RefinementError: provider failure or a reply without polished text
    """
    messages = build_messages(prior_context or '', raw_text, style)
    try:
        response = call_llm_completion(
            messages,
            temperature=REFINE_TEMPERATURE,
            response_format={'type': 'json_object'}
        )
    except Exception as e:
        raise RefinementError(f"Refinement call failed: {e}") from e

    payload = safe_json_loads(completion_text(response), {})
    if not isinstance(payload, dict) or not isinstance(payload.get('polishedText'), str):
        raise RefinementError("Refinement reply did not contain polishedText")

    warnings = payload.get('repetitionWarnings') or []
    if not isinstance(warnings, list):
        warnings = [str(warnings)]

    return RefineResult(
        polished_text=payload['polishedText'].strip(),
        has_repetition=bool(payload.get('hasRepetition')),
        warnings=[str(w) for w in warnings]
    )
