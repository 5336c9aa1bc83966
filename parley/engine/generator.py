"""
Response generation for the synthetic character.

Flow per user message:
1. Classify the message (topic continuity, emotional tone, intent)
2. Look up (message, persona, tone) in the response cache
3. On miss, build a persona-aware prompt from bounded history and call the
   text-generation service under a timeout
4. Compress and cache the result, or fall back to a fixed reply so the
   dialogue never stalls
"""

import asyncio
import json
import time
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from parley.config import get_config
from parley.config.models import ConversationConfig
from parley.common.logging import setup_logging

from .cache import ResponseCache, compress_reply, make_cache_key
from .context import ContextAnalyzer
from .errors import GenerationError
from .models import (
    ContextAnalysis,
    ContextMemoryEntry,
    ConversationMessage,
    EmotionalTone,
    GeneratedReply,
    Speaker,
)
from .session import SessionContext

logger = setup_logging("generator")

# How the character's voice should react to the user's tone
REPLY_EMOTIONS: Dict[EmotionalTone, str] = {
    EmotionalTone.HAPPY: "happy",
    EmotionalTone.EXCITED: "excited",
    EmotionalTone.SAD: "calm",
    EmotionalTone.ANGRY: "calm",
    EmotionalTone.NEUTRAL: "neutral",
}

SYSTEM_PROMPT = """You are {name}{role}, a character in a roleplay practice scenario: "{scenario_title}".

Character Personality: {description}
Speaking Style: {speaking_style}
Key Traits: {traits}
Scenario Category: {scenario_category}
User's Emotional State: {emotional_context}

Instructions:
- Stay in character at all times
- Respond naturally and conversationally, in one to three sentences
- Consider the conversation history and context
- Show personality through word choice and tone
- Adapt your emotional responses to the user's state

Current conversation flow: {conversation_flow}"""

RESPONSE_PROMPT = """{memory_context}{conversation_history}User: {message}
{name}:"""


class ContextMemory:
    """Ring buffer of recent exchanges used to enrich future prompts."""

    def __init__(self, max_entries: int = 20):
        self.max_entries = max_entries
        self.entries: List[ContextMemoryEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def add(self, user_message: str, reply: str, tags: Optional[Dict[str, str]] = None) -> None:
        self.entries.append(ContextMemoryEntry(
            user_message=user_message,
            reply=reply,
            tags=dict(tags or {}),
            timestamp=time.time(),
        ))
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]


class ResponseGenerator:
    """Persona-aware replies with caching and a deterministic fallback."""

    def __init__(
        self,
        client,
        cache: Optional[ResponseCache] = None,
        analyzer: Optional[ContextAnalyzer] = None,
        config: Optional[ConversationConfig] = None,
        timeout: Optional[float] = None,
    ):
        if cache is None or config is None or timeout is None:
            cfg = get_config()
            if cache is None:
                cache = ResponseCache(ttl=cfg.cache.ttl, capacity=cfg.cache.capacity)
            if config is None:
                config = cfg.conversation
            if timeout is None:
                timeout = cfg.ollama.timeout
        self.client = client
        self.cache = cache
        self.analyzer = analyzer if analyzer is not None else ContextAnalyzer()
        self.config = config
        self.timeout = timeout
        self._memories: Dict[str, ContextMemory] = {}

    def memory_for(self, session_id: str) -> ContextMemory:
        memory = self._memories.get(session_id)
        if memory is None:
            memory = ContextMemory(self.config.context_memory_size)
            self._memories[session_id] = memory
        return memory

    def forget(self, session_id: str) -> None:
        """Drop context memory for a finished session."""
        self._memories.pop(session_id, None)

    def fallback_reply(self) -> GeneratedReply:
        return GeneratedReply(
            text=self.config.fallback_text,
            emotion=self.config.fallback_emotion,
            confidence=self.config.fallback_confidence,
            fallback=True,
        )

    async def generate(self, message: str, session: SessionContext,
                       history: Optional[Sequence[ConversationMessage]] = None) -> GeneratedReply:
        """Produce the character's reply to `message`.

        `history` defaults to the session's history; the turn machine passes
        the snapshot taken when the transcript was finalized. Never raises
        for service failures and never returns an empty reply.
        """
        if history is None:
            history = session.snapshot()

        analysis = self.analyzer.analyze(message, history)
        key = make_cache_key(message, session.persona_id, analysis.emotional_tone.value)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for persona {session.persona_id}")
            return replace(cached, cached=True)

        system, prompt = self.build_prompt(message, session, history, analysis)
        started = time.monotonic()

        try:
            raw = await asyncio.wait_for(
                self.client.generate(prompt, system=system),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Text generation timed out after {self.timeout}s, using fallback")
            return self.fallback_reply()
        except GenerationError as e:
            logger.warning(f"Text generation failed: {e}, using fallback")
            return self.fallback_reply()
        except Exception as e:
            logger.error(f"Unexpected text generation failure: {e}", exc_info=True)
            return self.fallback_reply()

        text = compress_reply(self._clean(raw, session))
        if not text:
            logger.warning("Text generation produced no usable text, using fallback")
            return self.fallback_reply()

        reply = GeneratedReply(
            text=text,
            emotion=REPLY_EMOTIONS[analysis.emotional_tone],
            confidence=self.config.generated_confidence,
        )
        self.cache.put(key, reply)
        # A session ended mid-generation has already been forgotten
        if not session.ended:
            self.memory_for(session.session_id).add(message, reply.text, tags=analysis.to_dict())

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Generated reply in {elapsed_ms:.0f}ms ({analysis.intent.value}, {analysis.emotional_tone.value})")
        return reply

    # --- Prompt construction ---

    def build_prompt(
        self,
        message: str,
        session: SessionContext,
        history: Sequence[ConversationMessage],
        analysis: ContextAnalysis,
    ):
        """Return (system prompt, user prompt) for the generation call."""
        persona = session.persona
        flow = {
            "turn": sum(1 for m in history if m.speaker is Speaker.USER) + 1,
            "topic": analysis.topic_continuity.value,
            "intent": analysis.intent.value,
        }

        system = SYSTEM_PROMPT.format(
            name=persona.name,
            role=f", a {persona.role}" if persona.role else "",
            scenario_title=session.scenario_title or session.scenario_id,
            description=persona.description,
            speaking_style=persona.speaking_style,
            traits=", ".join(persona.traits) or "none",
            scenario_category=session.scenario_category or "general",
            emotional_context=analysis.emotional_tone.value,
            conversation_flow=json.dumps(flow),
        )

        prompt = RESPONSE_PROMPT.format(
            memory_context=self._format_memory(session.session_id),
            conversation_history=self._format_history(history, persona.name),
            message=message,
            name=persona.name,
        )
        return system, prompt

    def _format_history(self, history: Sequence[ConversationMessage], character_name: str) -> str:
        recent = list(history)[-self.config.history_window:]
        if not recent:
            return ""
        lines = []
        for msg in recent:
            speaker = "User" if msg.speaker is Speaker.USER else character_name
            lines.append(f"{speaker}: {msg.text}")
        return "[Previous conversation]\n" + "\n".join(lines) + "\n[Now respond to the latest message]\n"

    def _format_memory(self, session_id: str) -> str:
        # Only exchanges that have already scrolled out of the history window
        window = self.config.history_window // 2
        entries = self.memory_for(session_id).entries
        older = entries[:-window] if window else entries
        if not older:
            return ""
        lines = ["[Earlier in this session]"]
        for entry in older[-3:]:
            lines.append(f"- User said \"{entry.user_message}\", you replied \"{entry.reply}\"")
        return "\n".join(lines) + "\n"

    @staticmethod
    def _clean(raw: str, session: SessionContext) -> str:
        text = raw.strip()
        # Small models sometimes echo the speaker label
        prefix = f"{session.persona.name}:"
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
        return text.strip('"').strip()
