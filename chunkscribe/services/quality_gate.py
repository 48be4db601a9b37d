"""
Quality gate for transcription output.

Cheap local heuristics that flag the usual failure shapes of speech-to-text
models (empty replies, repetition loops, gibberish) without calling a model.
"""

import re
from collections import Counter
from dataclasses import dataclass

# Verdicts
ACCEPT = 'ACCEPT'
DISCARD = 'DISCARD'
EMPTY = 'EMPTY'
SUSPICIOUS = 'SUSPICIOUS'

REPETITION_MIN_LENGTH = 50
DIVERSITY_FLOOR = 0.05
DEFAULT_MIN_TEXT_LENGTH = 5
DEFAULT_BADNESS_THRESHOLD = 0.8

# One word making up more than this share of the words (and more than
# DOMINANT_WORD_MIN_COUNT times) is a looping decoder
DOMINANT_WORD_SHARE = 0.2
DOMINANT_WORD_MIN_COUNT = 5

_BLANK_LINES_RE = re.compile(r'\n\n+')
_NON_WORD_RE = re.compile(r'[^\w]')
_NOISE_MARKER_RE = re.compile(r'\[(?:music|noise|applause|laughter|silence|inaudible)\]', re.IGNORECASE)


@dataclass
class GateResult:
    verdict: str
    score: float
    reason: str = ''

    @property
    def accepted(self):
        return self.verdict in (ACCEPT, DISCARD)


def clean_text(text):
    """Collapse runs of blank lines and trim."""
    if not text:
        return ''
    return _BLANK_LINES_RE.sub('\n', text).strip()


def dominant_word(text):
    """The word (longer than two characters) that crowds out the rest, with its count."""
    words = text.split()
    counts = Counter()
    for word in words:
        normalized = _NON_WORD_RE.sub('', word.lower())
        if len(normalized) > 2:
            counts[normalized] += 1

    for word, count in counts.most_common(1):
        if count > len(words) * DOMINANT_WORD_SHARE and count > DOMINANT_WORD_MIN_COUNT:
            return word, count
    return None, 0


def calculate_badness(text):
    """
    Score how likely text is a failed transcription.

    Returns:
        (score, reason) with score in [0, 1]; 1.0 means certainly bad
    """
    if not text:
        return 1.0, 'Empty response'

    length = len(text)
    if length > REPETITION_MIN_LENGTH:
        half = length // 2
        if text[:half] == text[half:]:
            return 1.0, 'Detected exact repetition loop'

    if len(set(text)) / length < DIVERSITY_FLOOR:
        return 0.9, 'Low character diversity (gibberish or stuck token)'

    word, count = dominant_word(text)
    if word is not None:
        return 0.85, f'Excessive repetition of "{word}" ({count} times)'

    if _NOISE_MARKER_RE.search(text):
        return 0.85, 'Contains non-speech content markers'

    return 0.1, ''


def evaluate(text, min_length=DEFAULT_MIN_TEXT_LENGTH, threshold=DEFAULT_BADNESS_THRESHOLD):
    """
    Classify a transcription.

    EMPTY and SUSPICIOUS outputs are rejected. DISCARD is accepted but treated
    as incidental silence: short utterances are not evidence of hallucination.
    """
    text = clean_text(text)
    if not text:
        return GateResult(EMPTY, 1.0, 'Empty response')

    score, reason = calculate_badness(text)
    if score > threshold:
        return GateResult(SUSPICIOUS, score, reason)

    if len(text) < min_length:
        return GateResult(DISCARD, score, 'Silence or short utterance')

    return GateResult(ACCEPT, score)
