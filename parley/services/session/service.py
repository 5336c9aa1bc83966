#!/usr/bin/env python3
"""
Practice Session Service - hosts the turn-taking engine for one roleplay
session at a time.

Responsibilities:
- Bridge the speech recognizer and synthesizer over MQTT
- Run the TurnStateMachine for the active session
- Publish turn state and transcripts (parley/session/*)
- Forward conversation history and session results to the session store

HTTP endpoints:
- GET /health: Health check
- GET /session: Current session status
- POST /session/start: Start a session for a scenario and persona
- POST /session/end: End the active session
"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field

from parley.common import topics
from parley.common.logging import session_logger
from parley.common.service_base import ParleyService
from parley.config import ParleyConfig
from parley.engine.cache import ResponseCache
from parley.engine.capture import SpeechCaptureController
from parley.engine.errors import ParleyError
from parley.engine.generator import ResponseGenerator
from parley.engine.llm import OllamaClient
from parley.engine.models import Persona, Speaker, TranscriptEvent, TurnState
from parley.engine.session import SessionContext, summarize_session
from parley.engine.synthesis import SpeechSynthesisController
from parley.engine.turns import TurnStateMachine

from .bridges import MqttSpeechRecognizer, MqttSpeechSynthesizer
from .store import create_store


# Request/Response Models
class StartSessionRequest(BaseModel):
    """Request model for starting a practice session."""
    scenario_id: str = Field(..., description="Scenario identifier")
    persona_id: str = Field(..., description="Configured persona to play")
    scenario_title: str = Field("", description="Scenario title shown to the character")
    scenario_category: str = Field("", description="Scenario category")
    session_id: Optional[str] = Field(None, description="Existing session id from the session API")


class EndSessionRequest(BaseModel):
    """Request model for ending the active session."""
    reason: Optional[str] = Field(None, description="Why the session ended")


class SessionStatus(BaseModel):
    """Response model for session status."""
    active: bool
    state: Optional[str] = None
    session_id: Optional[str] = None
    scenario_id: Optional[str] = None
    persona_id: Optional[str] = None
    exchanges: int = 0
    last_error: Optional[str] = None


class EndSessionResponse(BaseModel):
    """Response model for a finished session."""
    session_id: str
    exchanges: int
    duration_minutes: int
    summary: str


class PracticeSessionService(ParleyService):
    """Runs practice sessions behind MQTT speech bridges and a small HTTP API."""

    def __init__(self, config: Optional[ParleyConfig] = None):
        super().__init__(name="session", config=config)
        self.http_port = self.config.host.port

        self.recognizer = MqttSpeechRecognizer(self)
        self.synthesizer = MqttSpeechSynthesizer(self)
        self.recognizer.register()
        self.synthesizer.register()

        self.llm = OllamaClient.from_config(self.config.ollama)
        self.generator = ResponseGenerator(
            self.llm,
            cache=ResponseCache(ttl=self.config.cache.ttl, capacity=self.config.cache.capacity),
            config=self.config.conversation,
            timeout=self.config.ollama.timeout,
        )
        self.store = create_store(self.config.host)
        self.machine: Optional[TurnStateMachine] = None

        self._register_routes()

    # --- Session lifecycle ---

    def persona(self, persona_id: str) -> Persona:
        cfg = self.config.personas.get(persona_id)
        if cfg is None:
            raise KeyError(persona_id)
        return Persona(
            id=persona_id,
            name=cfg.name,
            role=cfg.role,
            description=cfg.description,
            speaking_style=cfg.speaking_style,
            traits=list(cfg.traits),
            voice=cfg.voice or None,
        )

    @property
    def active(self) -> bool:
        return self.machine is not None and self.machine.state is not TurnState.ENDED

    async def start_session(self, request: StartSessionRequest) -> SessionContext:
        if self.active:
            raise ParleyError("A session is already running")

        session = SessionContext(
            scenario_id=request.scenario_id,
            persona=self.persona(request.persona_id),
            scenario_title=request.scenario_title,
            scenario_category=request.scenario_category,
            max_history=self.config.conversation.max_history,
        )
        if request.session_id:
            session.session_id = request.session_id

        machine = TurnStateMachine(
            SpeechCaptureController(self.recognizer, self.config.capture),
            SpeechSynthesisController.from_config(self.synthesizer, self.config),
            self.generator,
            store=self.store,
            config=self.config.conversation,
        )
        machine.add_state_listener(self._on_state)
        machine.add_transcript_listener(self._on_interim)
        self.machine = machine

        await machine.start(session)
        session_logger(self.logger, session.session_id).info(
            f"Practicing '{request.scenario_title or request.scenario_id}' with {session.persona.name}"
        )
        return session

    async def end_session(self, reason: Optional[str] = None) -> EndSessionResponse:
        machine = self.machine
        if machine is None or machine.session is None:
            raise ParleyError("No session has been started")

        await machine.end(reason=reason)
        session = machine.session
        session_logger(self.logger, session.session_id).info(
            f"Session over after {session.exchanges} exchanges"
        )
        return EndSessionResponse(
            session_id=session.session_id,
            exchanges=session.exchanges,
            duration_minutes=session.duration_minutes(),
            summary=summarize_session(session.exchanges),
        )

    def status(self) -> SessionStatus:
        machine = self.machine
        if machine is None or machine.session is None:
            return SessionStatus(active=False)
        session = machine.session
        return SessionStatus(
            active=self.active,
            state=machine.state.value,
            session_id=session.session_id,
            scenario_id=session.scenario_id,
            persona_id=session.persona_id,
            exchanges=session.exchanges,
            last_error=str(machine.last_error) if machine.last_error else None,
        )

    def health(self) -> Dict[str, Any]:
        return {"session_active": self.active, "turn_state": self.machine.state.value if self.machine else None}

    # --- MQTT publishing ---

    def _on_state(self, state: TurnState, previous: TurnState, session_id: Optional[str]) -> None:
        payload: Dict[str, Any] = {
            "session_id": session_id,
            "state": state.value,
            "previous": previous.value,
        }
        if state is TurnState.ENDED and self.machine and self.machine.last_error:
            payload["error"] = str(self.machine.last_error)
        self.publish_soon(topics.SESSION_STATE, payload)

        # The newest message is the one that caused this transition
        if state in (TurnState.PROCESSING, TurnState.SPEAKING) and self.machine:
            message = self.machine.session.history[-1]
            self.publish_soon(topics.SESSION_TRANSCRIPT, {
                "session_id": session_id,
                "speaker": message.speaker.value,
                "text": message.text,
                "is_final": True,
            })

    def _on_interim(self, event: TranscriptEvent) -> None:
        session = self.machine.session if self.machine else None
        self.publish_soon(topics.SESSION_TRANSCRIPT, {
            "session_id": session.session_id if session else None,
            "speaker": Speaker.USER.value,
            "text": event.text,
            "is_final": False,
            "confidence": event.confidence,
        })

    # --- HTTP ---

    def _register_routes(self):
        app = self.get_app()

        @app.get("/session", response_model=SessionStatus)
        async def get_session():
            return self.status()

        @app.post("/session/start", response_model=SessionStatus)
        async def start(request: StartSessionRequest):
            try:
                await self.start_session(request)
            except KeyError:
                raise HTTPException(status_code=404, detail=f"Unknown persona: {request.persona_id}")
            except ParleyError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return self.status()

        @app.post("/session/end", response_model=EndSessionResponse)
        async def end(request: Optional[EndSessionRequest] = None):
            try:
                return await self.end_session(request.reason if request else None)
            except ParleyError as e:
                raise HTTPException(status_code=404, detail=str(e))

    # --- Lifecycle ---

    async def setup(self):
        self.logger.info(
            f"Session host ready (model {self.config.ollama.model}, "
            f"{len(self.config.personas)} personas)"
        )

    async def teardown(self):
        if self.machine is not None:
            await self.machine.end(reason="service shutdown")
        await self.llm.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


def main():
    service = PracticeSessionService()
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
