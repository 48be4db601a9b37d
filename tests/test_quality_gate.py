#!/usr/bin/env python3
"""
Tests for the transcription quality gate heuristics.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chunkscribe.services import quality_gate as gate


def test_clean_text_collapses_blank_lines():
    assert gate.clean_text("  first\n\n\nsecond \n") == "first\nsecond"
    assert gate.clean_text(None) == ''


def test_badness_empty():
    assert gate.calculate_badness('') == (1.0, 'Empty response')


def test_badness_exact_repetition_loop():
    score, reason = gate.calculate_badness("Thank you for watching." * 4)
    assert score == 1.0
    assert 'repetition' in reason


def test_short_repetition_is_not_a_loop():
    # At most 50 characters the halves check does not apply
    score, _ = gate.calculate_badness("hello hello ")
    assert score == 0.1


def test_badness_low_diversity():
    score, reason = gate.calculate_badness("a" * 30 + "b" * 31)
    assert score == 0.9
    assert 'diversity' in reason.lower()


def test_badness_normal_text():
    assert gate.calculate_badness("We agreed to ship the release on Friday.") == (0.1, '')


def test_evaluate_accepts_normal_text():
    result = gate.evaluate("We agreed to ship the release on Friday.")
    assert result.verdict == gate.ACCEPT
    assert result.accepted


def test_evaluate_empty_after_cleaning():
    result = gate.evaluate("\n\n  \n")
    assert result.verdict == gate.EMPTY
    assert not result.accepted


def test_evaluate_short_output_is_discarded_not_rejected():
    result = gate.evaluate("Uh.")
    assert result.verdict == gate.DISCARD
    assert result.accepted


def test_evaluate_flags_loop_as_suspicious():
    result = gate.evaluate("Thank you for watching." * 4)
    assert result.verdict == gate.SUSPICIOUS
    assert result.score == 1.0


def test_evaluate_threshold_is_configurable():
    text = "a" * 30 + "b" * 31
    assert gate.evaluate(text).verdict == gate.SUSPICIOUS
    assert gate.evaluate(text, threshold=0.95).verdict == gate.ACCEPT


def test_evaluate_min_length_is_configurable():
    assert gate.evaluate("Yes, okay.", min_length=20).verdict == gate.DISCARD


def test_badness_dominant_word():
    text = "so the budget, budget. Budget budget budget budget and then we moved on to hiring plans"
    score, reason = gate.calculate_badness(text)
    assert score == 0.85
    assert reason == 'Excessive repetition of "budget" (6 times)'
    assert gate.evaluate(text).verdict == gate.SUSPICIOUS


def test_repeated_word_needs_both_share_and_count():
    # Five repeats is not enough even when they dominate
    assert gate.dominant_word("okay okay okay okay okay fine") == (None, 0)
    # Six repeats inside a long passage stay under a fifth of the words
    filler = ' '.join(f"word{i}" for i in range(30))
    assert gate.dominant_word(f"{filler} team team team team team team") == (None, 0)
    # Short words never count
    assert gate.dominant_word("uh uh uh uh uh uh uh uh") == (None, 0)


def test_badness_non_speech_markers():
    score, reason = gate.calculate_badness("[Music] We agreed to ship the release on Friday.")
    assert score == 0.85
    assert reason == 'Contains non-speech content markers'
    assert gate.evaluate("Thanks everyone [inaudible]").verdict == gate.SUSPICIOUS
    # Bracketed speaker labels are speech
    assert gate.evaluate("[Speaker 1] We agreed to ship on Friday.").verdict == gate.ACCEPT
