"""
Tolerant JSON parsing for LLM replies.

Refinement and advisor prompts ask for a JSON object, but models still wrap it
in markdown fences, add prose around it, or get cut off mid-object.
"""

import ast
import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r'```(?:json)?\s*(.*?)\s*```', re.DOTALL)


def auto_close_json(json_string):
    """Close an unterminated string and any open objects/arrays at the end of a reply."""
    if not isinstance(json_string, str):
        return json_string

    closers = []
    in_string = False
    escaped = False

    for char in json_string:
        if escaped:
            escaped = False
            continue
        if char == '\\':
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == '{':
            closers.append('}')
        elif char == '[':
            closers.append(']')
        elif char in '}]' and closers and closers[-1] == char:
            closers.pop()

    if in_string:
        json_string += '"'
    while closers:
        json_string += closers.pop()
    return json_string


def extract_json_object(text):
    """Return the outermost {...} (or [...]) span in text, or text unchanged."""
    obj_match = re.search(r'\{.*\}', text, re.DOTALL)
    if obj_match:
        return obj_match.group(0)

    arr_match = re.search(r'\[.*\]', text, re.DOTALL)
    if arr_match:
        return arr_match.group(0)

    return text


def safe_json_loads(json_string, fallback_value=None):
    """
    Parse an LLM reply as JSON, trying progressively more forgiving strategies.

    Args:
        json_string (str): Raw model output
        fallback_value: Returned when every strategy fails

    Returns:
        Parsed value or fallback_value
    """
    if not json_string or not isinstance(json_string, str):
        logger.warning(f"Invalid JSON input: {type(json_string)}")
        return fallback_value

    cleaned = json_string.strip()
    fence = _FENCE_RE.search(cleaned)
    if fence:
        cleaned = fence.group(1).strip()

    strategies = [
        lambda x: json.loads(x),
        lambda x: json.loads(extract_json_object(x)),
        lambda x: ast.literal_eval(x) if x.startswith(('{', '[')) else None,
        lambda x: json.loads(auto_close_json(x)),
    ]

    for i, strategy in enumerate(strategies):
        try:
            result = strategy(cleaned)
        except (json.JSONDecodeError, ValueError, SyntaxError) as e:
            if i == 0:
                logger.debug(f"Direct JSON parse failed: {e}")
            continue
        if result is not None:
            if i > 0:
                logger.info(f"JSON parsed successfully using strategy {i + 1}")
            return result

    logger.error(f"All JSON parsing strategies failed for: {cleaned[:200]}...")
    return fallback_value
