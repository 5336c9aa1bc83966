"""
Data model shared by the turn-taking engine components.
"""

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class Speaker(Enum):
    """Who produced a conversation message"""
    USER = "user"
    CHARACTER = "character"


class TurnState(Enum):
    """Current phase of the turn-taking cycle"""
    STARTING = "starting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ENDED = "ended"


class TopicContinuity(Enum):
    NEW = "new"
    CONTINUING = "continuing"


class EmotionalTone(Enum):
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    EXCITED = "excited"
    NEUTRAL = "neutral"


class Intent(Enum):
    QUESTION = "question"
    REQUEST = "request"
    STATEMENT = "statement"
    GREETING = "greeting"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConversationMessage:
    """One finalized turn in the dialogue history"""
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "speaker": self.speaker.value,
            "text": self.text,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class TranscriptEvent:
    """A recognition result; superseded by the next event of the same utterance"""
    text: str
    is_final: bool
    confidence: float = 0.0


@dataclass(frozen=True)
class ContextAnalysis:
    """Classification of a user message against recent history"""
    topic_continuity: TopicContinuity
    emotional_tone: EmotionalTone
    intent: Intent

    def to_dict(self) -> Dict[str, str]:
        return {
            "topic_continuity": self.topic_continuity.value,
            "emotional_tone": self.emotional_tone.value,
            "intent": self.intent.value,
        }


@dataclass(frozen=True)
class GeneratedReply:
    """The character's reply and how it was produced"""
    text: str
    emotion: str = "neutral"
    confidence: float = 0.9
    cached: bool = False
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Persona:
    """The character's configured identity"""
    id: str
    name: str
    role: str = ""
    description: str = "A helpful and engaging conversational partner"
    speaking_style: str = "Friendly and natural"
    traits: List[str] = field(default_factory=lambda: ["helpful", "curious", "empathetic"])
    voice: Optional[str] = None


@dataclass
class ContextMemoryEntry:
    """A completed exchange remembered for future prompts"""
    user_message: str
    reply: str
    tags: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
