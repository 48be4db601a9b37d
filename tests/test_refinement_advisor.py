#!/usr/bin/env python3
"""
Tests for the refinement client and the escalation advisor.

The chat completion call is patched where each module looks it up, so no
provider is contacted.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chunkscribe.services.advisor import KEEP, RETRY, SKIP, FALLBACK_TEMPERATURE, consult_on_issue
from chunkscribe.services.refinement import RefinementError, build_messages, refine_chunk
from chunkscribe.utils import safe_json_loads


def _completion(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def test_build_messages_default_prompt():
    messages = build_messages('Earlier sentences.', 'so um the the budget', {
        'mode': 'Clean Only',
        'tone': 'Casual',
        'cleaning_rules': ['remove fillers', 'fix stutter'],
    })
    system, user = messages[0]['content'], messages[1]['content']

    assert 'Fix grammar and punctuation only' in system
    assert 'Target Tone: Casual.' in system
    assert 'Cleaning Rules: remove fillers, fix stutter' in system
    assert user == "[PREVIOUS_CONTEXT]\n...Earlier sentences.\n\n[CURRENT_RAW_TEXT]\nso um the the budget"


def test_build_messages_custom_instructions_without_headings():
    messages = build_messages('', 'raw words', {'custom_instructions': 'Keep [RAW_TEXT] short.'})

    assert '## Custom instructions:\nKeep raw words short.' in messages[0]['content']
    assert messages[1]['content'].startswith('[PREVIOUS_CONTEXT]')


def test_build_messages_full_template_fills_placeholders():
    template = "# Edit\nContext: [PREVIOUS_CONTEXT]\nText: [RAW_TEXT]"
    messages = build_messages('', 'raw words', {'custom_instructions': template})

    assert messages[1]['content'] == "# Edit\nContext: (No previous context)\nText: raw words"
    assert '## Task: Polish' not in messages[0]['content']
    assert 'polishedText' in messages[0]['content']


def test_refine_chunk_parses_fenced_reply():
    reply = '```json\n{"polishedText": " The budget is approved. ", "hasRepetition": true, "repetitionWarnings": "budget twice"}\n```'
    with patch('chunkscribe.services.refinement.call_llm_completion', return_value=_completion(reply)) as call:
        result = refine_chunk('context', 'the budget the budget is approved', {})

    assert result.polished_text == 'The budget is approved.'
    assert result.has_repetition is True
    assert result.warnings == ['budget twice']
    assert call.call_args.kwargs['response_format'] == {'type': 'json_object'}


def test_refine_chunk_errors():
    with patch('chunkscribe.services.refinement.call_llm_completion', side_effect=RuntimeError('502')):
        with pytest.raises(RefinementError):
            refine_chunk('', 'text', {})

    with patch('chunkscribe.services.refinement.call_llm_completion', return_value=_completion('I cannot help with that')):
        with pytest.raises(RefinementError):
            refine_chunk('', 'text', {})

    with patch('chunkscribe.services.refinement.call_llm_completion', return_value=_completion('{"polishedText": 42}')):
        with pytest.raises(RefinementError):
            refine_chunk('', 'text', {})


def test_advisor_actions():
    replies = {
        '{"action": "skip", "reasoning": "music only"}': (SKIP, None),
        '{"action": "KEEP", "reasoning": "chanting", "suggestedTemperature": 0.1}': (KEEP, 0.1),
        '{"action": "RETRY", "reasoning": "loop", "suggestedTemperature": 0.8}': (RETRY, 0.8),
    }
    for reply, (action, temperature) in replies.items():
        with patch('chunkscribe.services.advisor.call_llm_completion', return_value=_completion(reply)):
            advice = consult_on_issue('la la la la', 'Repetitive pattern')
        assert advice.action == action
        assert advice.temperature == temperature


def test_advisor_clamps_temperature():
    reply = '{"action": "RETRY", "suggestedTemperature": 3.5}'
    with patch('chunkscribe.services.advisor.call_llm_completion', return_value=_completion(reply)):
        assert consult_on_issue('text', 'reason').temperature == 1.0

    reply = '{"action": "RETRY", "suggestedTemperature": "warm"}'
    with patch('chunkscribe.services.advisor.call_llm_completion', return_value=_completion(reply)):
        assert consult_on_issue('text', 'reason').temperature is None


def test_advisor_falls_back_to_retry():
    with patch('chunkscribe.services.advisor.call_llm_completion', side_effect=ValueError('TEXT_MODEL_API_KEY not configured')):
        advice = consult_on_issue('text', 'reason')
    assert (advice.action, advice.temperature) == (RETRY, FALLBACK_TEMPERATURE)

    with patch('chunkscribe.services.advisor.call_llm_completion', return_value=_completion('{"action": "PANIC"}')):
        advice = consult_on_issue('text', 'reason')
    assert (advice.action, advice.temperature) == (RETRY, FALLBACK_TEMPERATURE)


def test_safe_json_loads_repairs_truncated_reply():
    assert safe_json_loads('{"polishedText": "cut off mid', {}) == {'polishedText': 'cut off mid'}
    assert safe_json_loads('Sure! {"action": "KEEP"} Hope that helps.', {}) == {'action': 'KEEP'}
    assert safe_json_loads('', {'fallback': True}) == {'fallback': True}
