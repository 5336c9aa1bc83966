"""
Turn-taking state machine.

Sequences a spoken dialogue between the user and the character:

    Starting -> Listening -> Processing -> Speaking -> Listening -> ...
    any state -> Ended (terminal)

The machine is the only component that starts capture or playback, and it
never has both active at once. Transitions run under a FIFO lock, so events
arriving mid-transition queue behind it. Every capture and playback request
carries an epoch token; a callback whose epoch is no longer current comes
from a superseded request and is dropped.

`end()` does its stop-everything work before its first await, so it takes
effect ahead of any queued transition. Work still in flight finishes later
and finds a stale epoch.

Store writes run in order behind the turn, never under the lock, and `end()`
waits for them before recording the end of the session.
"""

import asyncio
from typing import Callable, List, Optional, Sequence, Set

from parley.config import get_config
from parley.config.models import ConversationConfig
from parley.common.logging import setup_logging

from .capture import SpeechCaptureController
from .errors import CaptureError, ParleyError, SynthesisError, TurnStateError
from .generator import ResponseGenerator
from .models import ConversationMessage, GeneratedReply, Speaker, TranscriptEvent, TurnState
from .session import SessionContext, SessionStore, summarize_session
from .synthesis import SpeechSynthesisController

logger = setup_logging("turns")

StateListener = Callable[[TurnState, TurnState, Optional[str]], None]


class TurnStateMachine:
    """Owns TurnState and arbitrates microphone, speaker and generation."""

    def __init__(
        self,
        capture: SpeechCaptureController,
        synthesis: SpeechSynthesisController,
        generator: ResponseGenerator,
        store: Optional[SessionStore] = None,
        config: Optional[ConversationConfig] = None,
    ):
        cfg = config or get_config().conversation
        self.capture = capture
        self.synthesis = synthesis
        self.generator = generator
        self.store = store
        self.min_transcript_chars = cfg.min_transcript_chars

        self._state = TurnState.STARTING
        self._epoch = 0
        self._lock = asyncio.Lock()
        self._session: Optional[SessionContext] = None
        self._tasks: Set[asyncio.Task] = set()
        self._ended = asyncio.Event()
        self._persist_tail: Optional[asyncio.Task] = None
        self.last_error: Optional[ParleyError] = None

        self._state_listeners: List[StateListener] = []
        self._error_listeners: List[Callable[[ParleyError], None]] = []
        self._transcript_listeners: List[Callable[[TranscriptEvent], None]] = []

    # --- Introspection ---

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def session(self) -> Optional[SessionContext]:
        return self._session

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def capture_active(self) -> bool:
        return self.capture.active

    @property
    def playback_active(self) -> bool:
        return self.synthesis.speaking

    def invariant_holds(self) -> bool:
        """At most one of capture and playback is active."""
        return not (self.capture_active and self.playback_active)

    def add_state_listener(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def add_error_listener(self, callback: Callable[[ParleyError], None]) -> None:
        self._error_listeners.append(callback)

    def add_transcript_listener(self, callback: Callable[[TranscriptEvent], None]) -> None:
        self._transcript_listeners.append(callback)

    async def wait_ended(self) -> None:
        await self._ended.wait()

    async def join(self) -> None:
        """Wait until no spawned turn work is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Events ---

    async def start(self, session: SessionContext) -> None:
        """Begin a session: arm capture and move to Listening."""
        async with self._lock:
            if self._state is not TurnState.STARTING:
                raise TurnStateError(f"Cannot start a session in state '{self._state.value}'")
            self._session = session
            logger.info(
                f"Starting session {session.session_id} "
                f"(scenario {session.scenario_id}, persona {session.persona_id})"
            )
            self._arm_capture()

    async def on_final_transcript(self, text: str, epoch: Optional[int] = None) -> bool:
        """Promote a final transcript to a user turn.

        Returns True if the transcript became a ConversationMessage.
        """
        async with self._lock:
            if self._state is not TurnState.LISTENING or self._is_stale(epoch):
                logger.debug(f"Ignoring transcript in state {self._state.value}")
                return False

            text = text.strip()
            if len(text) <= self.min_transcript_chars:
                logger.info(f"Discarding short transcript '{text}'")
                return False

            self.capture.stop()
            self._epoch += 1
            epoch = self._epoch
            history = self._session.snapshot()
            message = ConversationMessage(speaker=Speaker.USER, text=text)
            self._session.append(message)
            self._set_state(TurnState.PROCESSING)

            self._spawn(self._generate(text, history, epoch))
            self._queue_persist([message])
            return True

    async def on_generation_complete(self, reply: GeneratedReply, epoch: Optional[int] = None) -> None:
        """Record the character's reply and start speaking it."""
        async with self._lock:
            if self._state is not TurnState.PROCESSING or self._is_stale(epoch):
                logger.debug(f"Ignoring reply in state {self._state.value}")
                return

            if not reply.text.strip():
                reply = self.generator.fallback_reply()

            message = ConversationMessage(speaker=Speaker.CHARACTER, text=reply.text)
            self._session.append(message)
            self._epoch += 1
            epoch = self._epoch
            self._set_state(TurnState.SPEAKING)

            self._spawn(self._speak(reply, epoch))
            self._queue_persist([message])

    async def on_playback_complete(self, epoch: Optional[int] = None) -> None:
        """Hand the floor back to the user."""
        async with self._lock:
            if self._state is not TurnState.SPEAKING or self._is_stale(epoch):
                logger.debug(f"Ignoring playback completion in state {self._state.value}")
                return
            self._arm_capture()

    async def end(self, reason: Optional[str] = None) -> None:
        """Terminate the session. Idempotent."""
        if self._state is TurnState.ENDED:
            return

        self._epoch += 1
        self.capture.stop()
        self.synthesis.stop()
        self._set_state(TurnState.ENDED)
        logger.info(f"Session ended{f': {reason}' if reason else ''}")

        session = self._session
        if session is None:
            self._ended.set()
            return
        session.close()

        # No transition can queue messages once Ended, so the tail is final
        await self._drain_persistence()
        await self._finish_session(session)
        self._ended.set()

    # --- Turn work ---

    def _arm_capture(self) -> None:
        self._epoch += 1
        epoch = self._epoch
        self.capture.listen(
            on_interim=lambda event: self._handle_interim(epoch, event),
            on_final=lambda event: self._spawn(self.on_final_transcript(event.text, epoch=epoch)),
            on_error=lambda error: self._spawn(self._handle_capture_error(error, epoch)),
        )
        self._set_state(TurnState.LISTENING)

    async def _generate(self, text: str, history: Sequence[ConversationMessage], epoch: int) -> None:
        if self._is_stale(epoch):
            return
        try:
            reply = await self.generator.generate(text, self._session, history=history)
        except Exception as e:
            logger.error(f"Response generation raised: {e}", exc_info=True)
            reply = self.generator.fallback_reply()
        await self.on_generation_complete(reply, epoch=epoch)

    async def _speak(self, reply: GeneratedReply, epoch: int) -> None:
        if self._is_stale(epoch):
            return
        try:
            await self.synthesis.speak(reply.text, self._session.persona, reply.emotion)
        except SynthesisError as e:
            logger.warning(f"Playback failed ({e.code}), handing the floor back")
            self._report_error(e)
        await self.on_playback_complete(epoch=epoch)

    async def _handle_capture_error(self, error: CaptureError, epoch: int) -> None:
        if self._state is TurnState.ENDED or self._is_stale(epoch):
            return
        logger.error(f"Speech capture failed: {error}")
        self._report_error(error)
        await self.end(reason=str(error))

    def _handle_interim(self, epoch: int, event: TranscriptEvent) -> None:
        if self._is_stale(epoch):
            return
        for listener in self._transcript_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Transcript listener error: {e}", exc_info=True)

    async def _finish_session(self, session: SessionContext) -> None:
        self.generator.forget(session.session_id)
        if self.store is None:
            return
        summary = summarize_session(session.exchanges)
        try:
            await self.store.end_session(session.session_id, summary, session.duration_minutes())
        except Exception as e:
            logger.warning(f"Failed to record end of session {session.session_id}: {e}")

    def _queue_persist(self, messages: List[ConversationMessage]) -> None:
        """Store messages behind earlier writes without holding up the turn."""
        if self.store is None or self._session is None:
            return
        previous = self._persist_tail
        self._persist_tail = self._spawn(self._persist(self._session.session_id, messages, previous))

    async def _persist(self, session_id: str, messages: List[ConversationMessage],
                       previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await self.store.append_messages(session_id, messages)
        except Exception as e:
            logger.warning(f"Failed to persist messages for session {session_id}: {e}")

    async def _drain_persistence(self) -> None:
        if self._persist_tail is not None:
            await asyncio.wait({self._persist_tail})

    # --- Helpers ---

    def _is_stale(self, epoch: Optional[int]) -> bool:
        return epoch is not None and epoch != self._epoch

    def _set_state(self, state: TurnState) -> None:
        previous = self._state
        self._state = state
        session_id = self._session.session_id if self._session else None
        logger.info(
            f"Turn state {previous.value} -> {state.value}",
            extra={"session_id": session_id, "state": state.value, "epoch": self._epoch},
        )
        for listener in self._state_listeners:
            try:
                listener(state, previous, session_id)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)

    def _report_error(self, error: ParleyError) -> None:
        self.last_error = error
        for listener in self._error_listeners:
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener error: {e}", exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Turn task failed: {task.exception()}")
