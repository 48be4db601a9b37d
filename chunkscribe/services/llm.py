"""
LLM API integration (OpenAI-compatible chat completions).

Used by the refinement stage and by the escalation advisor.
"""

import os
import logging
import httpx
from openai import OpenAI

logger = logging.getLogger(__name__)

# Configuration - TEXT_MODEL_* variables select the chat model
TEXT_MODEL_API_KEY = os.environ.get("TEXT_MODEL_API_KEY")
TEXT_MODEL_BASE_URL = os.environ.get("TEXT_MODEL_BASE_URL", "https://api.deepseek.com/v1")
if TEXT_MODEL_BASE_URL:
    TEXT_MODEL_BASE_URL = TEXT_MODEL_BASE_URL.split('#')[0].strip()
TEXT_MODEL_NAME = os.environ.get("TEXT_MODEL_NAME", "deepseek-chat")
LLM_TIMEOUT = float(os.environ.get("LLM_TIMEOUT", "60"))

http_client = httpx.Client(
    verify=True,
    headers={"User-Agent": "Chunkscribe/1.0"},
    timeout=LLM_TIMEOUT
)

# Placeholder key keeps the app importable without credentials
client = OpenAI(
    api_key=TEXT_MODEL_API_KEY or "not-needed",
    base_url=TEXT_MODEL_BASE_URL,
    http_client=http_client
)


def is_gpt5_model(model_name):
    """GPT-5 models reject temperature and take max_completion_tokens instead."""
    if not model_name:
        return False
    return model_name.lower().startswith('gpt-5')


def call_llm_completion(messages, temperature=0.7, response_format=None, max_tokens=None, model=None):
    """
    Centralized chat completion call with logging.

    Args:
        messages: List of message dicts with 'role' and 'content'
        temperature: Sampling temperature (ignored for GPT-5 models)
        response_format: Optional response format dict (e.g., {"type": "json_object"})
        max_tokens: Optional maximum tokens to generate
        model: Override TEXT_MODEL_NAME for this call

    Returns:
        OpenAI completion object
    """
    if not TEXT_MODEL_API_KEY:
        raise ValueError("TEXT_MODEL_API_KEY not configured")

    model_name = model or TEXT_MODEL_NAME
    completion_args = {
        "model": model_name,
        "messages": messages,
    }

    if is_gpt5_model(model_name):
        if max_tokens:
            completion_args["max_completion_tokens"] = max_tokens
    else:
        completion_args["temperature"] = temperature
        if max_tokens:
            completion_args["max_tokens"] = max_tokens

    if response_format:
        completion_args["response_format"] = response_format

    try:
        response = client.chat.completions.create(**completion_args)
    except Exception as e:
        logger.error(f"LLM API call failed: {e}")
        raise

    if response.choices and not response.choices[0].message.content:
        logger.warning(f"LLM returned empty content. Model: {model_name}, finish_reason: {response.choices[0].finish_reason}")

    return response


def completion_text(response):
    """Text content of the first choice, '' when missing."""
    if not response or not response.choices:
        return ''
    return response.choices[0].message.content or ''
