"""
Speech capture controller.

Wraps a speech-to-text engine and turns its raw callbacks into clean
transcript events:

- continuous listening with interim results
- interim results below the confidence threshold are suppressed
- silence finalization: an interim that sees no new result within the
  silence window is promoted to a final event
- filler tokens (um, uh, er, ah) are stripped before text leaves here
- transient engine errors restart the engine under a RetryPolicy; fatal
  errors are reported upward with zero retries

Every engine start gets a fresh epoch. Callbacks carrying an older epoch
come from a superseded engine instance and are ignored.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Callable, Optional

from parley.config import get_config
from parley.config.models import CaptureConfig
from parley.common.logging import setup_logging

from .errors import CaptureError, CAPTURE_ERROR_MESSAGES
from .models import TranscriptEvent
from .retry import RetryPolicy, TRANSIENT_CAPTURE_ERRORS

logger = setup_logging("capture")

# Delay before re-opening an engine that ended on its own
RESTART_AFTER_END_SECONDS = 0.25

_FILLER_RE = re.compile(r"\b(?:uh+|um+|er+|ah+)\b,?", re.IGNORECASE)


def clean_transcript(text: str) -> str:
    """Strip filler tokens and collapse whitespace."""
    cleaned = _FILLER_RE.sub("", text)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = re.sub(r"\s+([,.!?])", r"\1", cleaned)
    return cleaned.strip().lstrip(",").strip()


@dataclass(frozen=True)
class RecognizerConfig:
    lang: str = "en-US"
    continuous: bool = True
    interim_results: bool = True


class SpeechRecognizer:
    """Interface to a speech-to-text engine.

    `start` begins recognition and reports through the three callbacks:
    on_result(transcript, is_final, confidence), on_error(code) and on_end().
    `stop` ends recognition; the engine may still call on_end afterwards.
    """

    def start(
        self,
        config: RecognizerConfig,
        on_result: Callable[[str, bool, float], None],
        on_error: Callable[[str], None],
        on_end: Callable[[], None],
    ) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


class SpeechCaptureController:
    """Continuous listening with silence finalization and supervised retry."""

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        config: Optional[CaptureConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        cfg = config or get_config().capture
        self.recognizer = recognizer
        self.recognizer_config = RecognizerConfig(
            lang=cfg.lang,
            continuous=cfg.continuous,
            interim_results=cfg.interim_results,
        )
        self.confidence_threshold = cfg.confidence_threshold
        self.silence_timeout = cfg.silence_timeout
        self.retry_policy = retry_policy or RetryPolicy.from_config(cfg)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._active = False
        self._epoch = 0
        self._attempts = 0
        self._quiet_restarts = 0
        self._last_interim: Optional[TranscriptEvent] = None
        self._silence_handle: Optional[asyncio.TimerHandle] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None

        self._on_interim: Optional[Callable[[TranscriptEvent], None]] = None
        self._on_final: Optional[Callable[[TranscriptEvent], None]] = None
        self._on_error: Optional[Callable[[CaptureError], None]] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def quiet_restarts(self) -> int:
        return self._quiet_restarts

    # --- Public API ---

    def listen(
        self,
        on_interim: Callable[[TranscriptEvent], None],
        on_final: Callable[[TranscriptEvent], None],
        on_error: Callable[[CaptureError], None],
    ) -> None:
        """Start continuous capture. Must be called from the event loop."""
        if self._active:
            self.stop()

        self._loop = asyncio.get_running_loop()
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_error = on_error
        self._active = True
        self._attempts = 0
        self._quiet_restarts = 0
        self._start_recognizer()

    def stop(self) -> None:
        """Stop capture deliberately. Idempotent; no retries follow."""
        if not self._active:
            return
        self._active = False
        self._epoch += 1
        self._cancel_timers()
        self._last_interim = None
        self.recognizer.stop()
        logger.debug("Capture stopped")

    # --- Engine lifecycle ---

    def _start_recognizer(self) -> None:
        self._epoch += 1
        epoch = self._epoch
        self._restart_handle = None

        try:
            self.recognizer.start(
                self.recognizer_config,
                on_result=lambda text, is_final, confidence: self._handle_result(
                    epoch, text, is_final, confidence
                ),
                on_error=lambda code: self._handle_error(epoch, code),
                on_end=lambda: self._handle_end(epoch),
            )
        except CaptureError as e:
            self._handle_error(epoch, e.code)
            return
        except Exception as e:
            logger.error(f"Failed to start speech recognition: {e}", exc_info=True)
            self._fail(CaptureError("start-failed", fatal=True, message="Failed to start speech recognition."))
            return

        logger.debug(f"Recognizer started (epoch {epoch})")

    def _restart(self, epoch: int) -> None:
        if epoch != self._epoch or not self._active:
            return
        self._restart_handle = None
        logger.info(f"Restarting speech recognition (attempt {self._attempts})")
        self._start_recognizer()

    def _fail(self, error: CaptureError) -> None:
        """Stop without retry and report upward."""
        was_active = self._active
        self._active = False
        self._epoch += 1
        self._cancel_timers()
        self._last_interim = None
        if was_active:
            self.recognizer.stop()
        if self._on_error:
            self._on_error(error)

    def _cancel_timers(self) -> None:
        if self._silence_handle:
            self._silence_handle.cancel()
            self._silence_handle = None
        if self._restart_handle:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _is_current(self, epoch: int) -> bool:
        if epoch != self._epoch or not self._active:
            logger.debug(f"Ignoring callback from superseded recognizer (epoch {epoch}, current {self._epoch})")
            return False
        return True

    # --- Engine callbacks ---

    def _handle_result(self, epoch: int, text: str, is_final: bool, confidence: float) -> None:
        if not self._is_current(epoch):
            return

        self._attempts = 0
        self._quiet_restarts = 0

        if is_final:
            self._cancel_silence_timer()
            self._last_interim = None
            self._deliver_final(text, confidence)
            return

        if confidence < self.confidence_threshold:
            logger.debug(f"Suppressed low-confidence interim ({confidence:.2f})")
            if self._last_interim is not None:
                self._arm_silence_timer(epoch)
            return

        self._last_interim = TranscriptEvent(text=text, is_final=False, confidence=confidence)
        self._arm_silence_timer(epoch)
        cleaned = clean_transcript(text)
        if cleaned and self._on_interim:
            self._on_interim(TranscriptEvent(text=cleaned, is_final=False, confidence=confidence))

    def _handle_error(self, epoch: int, code: str) -> None:
        if not self._is_current(epoch):
            return

        if self.retry_policy.is_fatal(code):
            logger.error(f"Fatal speech recognition error: {code}")
            self._fail(CaptureError(code, fatal=True, message=CAPTURE_ERROR_MESSAGES.get(code)))
            return

        # Keep what the user already said before the engine gave up
        self._flush_pending_interim()
        if not self._active:
            return

        self._attempts += 1
        if not self.retry_policy.should_retry(code, self._attempts):
            logger.error(f"Speech recognition failed {self._attempts} times ({code}), giving up")
            self._fail(CaptureError(
                code,
                fatal=True,
                message=f"Speech recognition kept failing ({code}). Please check your microphone and connection.",
            ))
            return

        delay = self.retry_policy.delay_for(self._attempts)
        if code in TRANSIENT_CAPTURE_ERRORS:
            logger.info(f"Transient recognition error {code}, retry {self._attempts} in {delay:.1f}s")
        else:
            logger.warning(f"Unrecognized recognition error {code}, retry {self._attempts} in {delay:.1f}s")
        self._restart_handle = self._loop.call_later(delay, self._restart, self._epoch)

    def _handle_end(self, epoch: int) -> None:
        if not self._is_current(epoch):
            return
        if self._restart_handle is not None:
            return

        self._flush_pending_interim()
        if not self._active:
            return

        self._quiet_restarts += 1
        delay = self.reopen_delay(self._quiet_restarts)
        logger.debug(f"Recognizer ended while capture is active, reopening in {delay:.2f}s")
        self._restart_handle = self._loop.call_later(delay, self._restart, self._epoch)

    def reopen_delay(self, quiet_restarts: int) -> float:
        """Delay before reopening after `quiet_restarts` ends in a row with no result."""
        policy = self.retry_policy
        delay = RESTART_AFTER_END_SECONDS * (policy.backoff ** max(0, quiet_restarts - 1))
        return min(delay, max(policy.max_delay, RESTART_AFTER_END_SECONDS))

    # --- Finalization ---

    def _arm_silence_timer(self, epoch: int) -> None:
        self._cancel_silence_timer()
        self._silence_handle = self._loop.call_later(
            self.silence_timeout, self._silence_elapsed, epoch
        )

    def _cancel_silence_timer(self) -> None:
        if self._silence_handle:
            self._silence_handle.cancel()
            self._silence_handle = None

    def _silence_elapsed(self, epoch: int) -> None:
        self._silence_handle = None
        if epoch != self._epoch or not self._active or self._last_interim is None:
            return
        logger.info(f"No new speech for {self.silence_timeout:.1f}s, finalizing interim transcript")
        self._flush_pending_interim()

    def _flush_pending_interim(self) -> None:
        pending = self._last_interim
        if pending is None:
            return
        self._cancel_silence_timer()
        self._last_interim = None
        self._deliver_final(pending.text, pending.confidence)

    def _deliver_final(self, text: str, confidence: float) -> None:
        cleaned = clean_transcript(text)
        if not cleaned:
            logger.debug("Final transcript empty after cleanup, dropped")
            return
        logger.info(f"Final transcript: '{cleaned}' (confidence {confidence:.2f})")
        if self._on_final:
            self._on_final(TranscriptEvent(text=cleaned, is_final=True, confidence=confidence))
