"""
Speech synthesis controller.

Picks a voice for the persona from an explicit table, applies emotion
prosody on top of the persona's neutral baseline and turns the engine's
completion callbacks into an awaitable. An "interrupted" engine error is the
normal result of `stop()` and completes the call without raising.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from parley.config.models import ParleyConfig
from parley.common.logging import setup_logging

from .errors import SynthesisError
from .models import Persona

logger = setup_logging("synthesis")

# Multipliers on the persona's neutral (rate, pitch)
EMOTION_PROSODY: Dict[str, Tuple[float, float]] = {
    "happy": (1.1, 1.1),
    "sad": (0.8, 0.9),
    "excited": (1.2, 1.2),
    "calm": (0.9, 1.0),
    "angry": (1.1, 0.8),
    "friendly": (1.0, 1.05),
    "apologetic": (0.9, 0.95),
}

INTERRUPTION_CODES = frozenset({"interrupted", "canceled"})


@dataclass(frozen=True)
class VoiceProfile:
    """A persona's neutral voice settings"""
    voice: str = ""
    lang: str = "en-US"
    rate: float = 0.9
    pitch: float = 1.0
    volume: float = 1.0


@dataclass(frozen=True)
class Utterance:
    """Everything the engine needs to speak one reply"""
    text: str
    voice: str
    lang: str
    rate: float
    pitch: float
    volume: float


class SpeechSynthesizer:
    """Interface to a text-to-speech engine.

    `speak` starts playback and later calls exactly one of on_end() or
    on_error(code). `cancel` interrupts playback; the engine then reports
    on_error("interrupted") or nothing at all.
    """

    def speak(
        self,
        utterance: Utterance,
        on_end: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        raise NotImplementedError


class SpeechSynthesisController:
    """Persona-aware playback with an awaitable lifecycle."""

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        voices: Optional[Dict[str, VoiceProfile]] = None,
        default_profile: Optional[VoiceProfile] = None,
    ):
        self.synthesizer = synthesizer
        self.voices: Dict[str, VoiceProfile] = dict(voices or {})
        self.default_profile = default_profile or VoiceProfile()
        self._epoch = 0
        self._speaking = False
        self._pending: Optional[asyncio.Future] = None
        self._start_listeners: List[Callable[[Utterance], None]] = []

    @classmethod
    def from_config(cls, synthesizer: SpeechSynthesizer, config: ParleyConfig) -> "SpeechSynthesisController":
        cfg = config.synthesis
        default = VoiceProfile(
            voice=cfg.default_voice,
            lang=cfg.lang,
            rate=cfg.rate,
            pitch=cfg.pitch,
            volume=cfg.volume,
        )
        voices = {
            persona_id: VoiceProfile(
                voice=v.voice,
                lang=v.lang,
                rate=v.rate,
                pitch=v.pitch,
                volume=v.volume,
            )
            for persona_id, v in config.voices.items()
        }
        return cls(synthesizer, voices=voices, default_profile=default)

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def epoch(self) -> int:
        return self._epoch

    def add_start_listener(self, callback: Callable[[Utterance], None]) -> None:
        self._start_listeners.append(callback)

    # --- Voice selection ---

    def voice_for(self, persona: Persona) -> VoiceProfile:
        profile = self.voices.get(persona.id)
        if profile is not None:
            return profile
        if persona.voice:
            return replace(self.default_profile, voice=persona.voice)
        return self.default_profile

    @staticmethod
    def prosody(profile: VoiceProfile, emotion: Optional[str]) -> Tuple[float, float]:
        rate_factor, pitch_factor = EMOTION_PROSODY.get((emotion or "").lower(), (1.0, 1.0))
        return profile.rate * rate_factor, profile.pitch * pitch_factor

    def build_utterance(self, text: str, persona: Persona, emotion: Optional[str] = None) -> Utterance:
        profile = self.voice_for(persona)
        rate, pitch = self.prosody(profile, emotion)
        return Utterance(
            text=text,
            voice=profile.voice,
            lang=profile.lang,
            rate=rate,
            pitch=pitch,
            volume=profile.volume,
        )

    # --- Playback ---

    async def speak(self, text: str, persona: Persona, emotion: Optional[str] = None) -> None:
        """Speak `text` and return when playback finishes or is stopped.

        Raises:
            SynthesisError: the engine failed for a reason other than interruption
        """
        if self._speaking:
            self.stop()

        text = text.strip()
        if not text:
            return

        utterance = self.build_utterance(text, persona, emotion)
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        self._epoch += 1
        epoch = self._epoch
        self._pending = future
        self._speaking = True

        logger.info(
            f"Speaking as {persona.name} (emotion: {emotion or 'neutral'}, "
            f"rate {utterance.rate:.2f}, pitch {utterance.pitch:.2f})"
        )
        for listener in self._start_listeners:
            try:
                listener(utterance)
            except Exception as e:
                logger.error(f"Start listener error: {e}", exc_info=True)

        try:
            self.synthesizer.speak(
                utterance,
                on_end=lambda: self._finish(epoch),
                on_error=lambda code: self._finish(epoch, code),
            )
        except SynthesisError:
            self._release(epoch)
            raise
        except Exception as e:
            self._release(epoch)
            raise SynthesisError("engine-error", f"Speech synthesis failed to start: {e}") from e

        try:
            await future
        finally:
            self._release(epoch)

    def stop(self) -> None:
        """Interrupt playback. The pending `speak` call completes normally."""
        if not self._speaking:
            return
        self._epoch += 1
        future = self._pending
        self._pending = None
        self._speaking = False
        self.synthesizer.cancel()
        if future is not None and not future.done():
            future.set_result(None)
        logger.debug("Playback stopped")

    def _finish(self, epoch: int, code: Optional[str] = None) -> None:
        if epoch != self._epoch:
            logger.debug(f"Ignoring synthesis callback from superseded utterance (epoch {epoch})")
            return
        future = self._pending
        if future is None or future.done():
            return

        self._speaking = False
        if code is None or code in INTERRUPTION_CODES:
            future.set_result(None)
        else:
            logger.warning(f"Speech synthesis error: {code}")
            future.set_exception(SynthesisError(code))

    def _release(self, epoch: int) -> None:
        if epoch == self._epoch:
            self._speaking = False
            self._pending = None
