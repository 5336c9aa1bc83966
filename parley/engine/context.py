"""
Context analysis for user transcripts.

Classifies a message's topic continuity, emotional tone and intent using
fixed keyword tables. Pure and side-effect free: the result feeds both the
response cache key and the generation prompt.
"""

import re
from typing import Optional, Pattern, Sequence, Tuple

from .models import (
    ContextAnalysis,
    ConversationMessage,
    EmotionalTone,
    Intent,
    TopicContinuity,
)

# Order matters: first match wins
EMOTION_KEYWORDS = (
    (EmotionalTone.HAPPY, ("great", "awesome", "wonderful", "amazing", "fantastic", "happy", "glad")),
    (EmotionalTone.SAD, ("sad", "terrible", "awful", "horrible", "disappointed", "upset")),
    (EmotionalTone.ANGRY, ("angry", "furious", "mad", "annoyed", "frustrated")),
    (EmotionalTone.EXCITED, ("excited", "thrilled", "pumped", "eager", "enthusiastic")),
)

INTENT_PATTERNS = (
    (Intent.QUESTION, ("what", "how", "why", "when", "where", "who", "?")),
    (Intent.REQUEST, ("please", "can you", "could you", "would you")),
    (Intent.STATEMENT, ("i think", "i believe", "in my opinion")),
    (Intent.GREETING, ("hello", "hi", "hey", "good morning", "good afternoon")),
)

MIN_CONTENT_WORD_LENGTH = 3
_WORD_RE = re.compile(r"[a-z0-9']+")


def _compile(phrases: Sequence[str]) -> Pattern:
    """Whole-word alternation; punctuation-only entries match literally."""
    parts = []
    for phrase in phrases:
        if phrase.isalnum() or " " in phrase:
            parts.append(r"\b" + re.escape(phrase) + r"\b")
        else:
            parts.append(re.escape(phrase))
    return re.compile("|".join(parts))


class ContextAnalyzer:
    """Keyword-based classifier over a transcript and its recent history."""

    def __init__(self):
        self._emotions: Tuple[Tuple[EmotionalTone, Pattern], ...] = tuple(
            (tone, _compile(words)) for tone, words in EMOTION_KEYWORDS
        )
        self._intents: Tuple[Tuple[Intent, Pattern], ...] = tuple(
            (intent, _compile(patterns)) for intent, patterns in INTENT_PATTERNS
        )

    def analyze(self, text: str, history: Sequence[ConversationMessage] = ()) -> ContextAnalysis:
        lowered = text.lower()
        previous = history[-1].text if history else None
        return ContextAnalysis(
            topic_continuity=self.topic_continuity(lowered, previous),
            emotional_tone=self.emotional_tone(lowered),
            intent=self.intent(lowered),
        )

    def topic_continuity(self, text: str, previous: Optional[str]) -> TopicContinuity:
        if previous is None:
            return TopicContinuity.NEW
        if content_words(text) & content_words(previous):
            return TopicContinuity.CONTINUING
        return TopicContinuity.NEW

    def emotional_tone(self, text: str) -> EmotionalTone:
        lowered = text.lower()
        for tone, pattern in self._emotions:
            if pattern.search(lowered):
                return tone
        return EmotionalTone.NEUTRAL

    def intent(self, text: str) -> Intent:
        lowered = text.lower()
        for intent, pattern in self._intents:
            if pattern.search(lowered):
                return intent
        return Intent.UNKNOWN


def content_words(text: str) -> set:
    """Words longer than three characters, lowercased."""
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > MIN_CONTENT_WORD_LENGTH}
