"""
Per-session state and the persistence interface.

SessionContext lives only for the duration of a practice session. Durable
storage belongs to a SessionStore supplied by the host.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .models import ConversationMessage, Persona, Speaker


@dataclass
class SessionContext:
    """Scenario, persona and bounded dialogue history for one session"""
    scenario_id: str
    persona: Persona
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    scenario_title: str = ""
    scenario_category: str = ""
    max_history: int = 50
    history: List[ConversationMessage] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    user_turns: int = 0
    character_turns: int = 0

    @property
    def persona_id(self) -> str:
        return self.persona.id

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    def close(self, now: Optional[float] = None) -> None:
        if self.ended_at is None:
            self.ended_at = now if now is not None else time.time()

    def append(self, message: ConversationMessage) -> None:
        self.history.append(message)
        if message.speaker is Speaker.USER:
            self.user_turns += 1
        else:
            self.character_turns += 1

        # Trim to max
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history:]

    def snapshot(self) -> Tuple[ConversationMessage, ...]:
        """Immutable copy of the history as it stands now."""
        return tuple(self.history)

    @property
    def exchanges(self) -> int:
        return min(self.user_turns, self.character_turns)

    def duration_minutes(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self.ended_at if self.ended_at is not None else time.time()
        elapsed = now - self.started_at
        return max(0, round(elapsed / 60))


def summarize_session(exchanges: int) -> str:
    """Short practice feedback based on how many exchanges took place."""
    if exchanges == 0:
        return "Great start! Try to have a longer conversation next time to get more practice."
    if exchanges < 3:
        plural = "s" if exchanges > 1 else ""
        return (
            f"Good effort! You had {exchanges} exchange{plural}. "
            "Try to extend the conversation longer to practice more scenarios."
        )
    if exchanges < 6:
        return (
            f"Well done! You had a good conversation with {exchanges} exchanges. "
            "You're getting comfortable with the roleplay format."
        )
    return (
        f"Excellent session! You had {exchanges} exchanges and really engaged "
        "with the scenario. Keep up the great work!"
    )


class SessionStore:
    """Durable session persistence, provided by the host."""

    async def append_messages(self, session_id: str, messages: Sequence[ConversationMessage]) -> None:
        raise NotImplementedError

    async def end_session(self, session_id: str, summary: str, duration_minutes: int) -> None:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Keeps sessions in process; used when no session API is configured."""

    def __init__(self):
        self.messages: Dict[str, List[ConversationMessage]] = {}
        self.ended: Dict[str, Dict[str, object]] = {}

    async def append_messages(self, session_id: str, messages: Sequence[ConversationMessage]) -> None:
        self.messages.setdefault(session_id, []).extend(messages)

    async def end_session(self, session_id: str, summary: str, duration_minutes: int) -> None:
        self.ended[session_id] = {
            "summary": summary,
            "duration_minutes": duration_minutes,
        }
