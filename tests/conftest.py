"""Shared fixtures and engine doubles for the Parley test suite."""

import asyncio
import logging

import pytest

from parley.config.models import CaptureConfig, ConversationConfig
from parley.engine.capture import SpeechRecognizer
from parley.engine.models import Persona
from parley.engine.session import SessionContext
from parley.engine.synthesis import SpeechSynthesizer

# Suppress logging during tests
logging.disable(logging.CRITICAL)


class FakeRecognizer(SpeechRecognizer):
    """Records start/stop calls and lets a test drive the engine callbacks."""

    def __init__(self, start_error=None):
        self.start_error = start_error
        self.starts = 0
        self.stops = 0
        self.running = False
        self.configs = []
        self.on_result = None
        self.on_error = None
        self.on_end = None

    def start(self, config, on_result, on_error, on_end):
        self.starts += 1
        if self.start_error is not None:
            raise self.start_error
        self.configs.append(config)
        self.on_result = on_result
        self.on_error = on_error
        self.on_end = on_end
        self.running = True

    def stop(self):
        self.stops += 1
        self.running = False

    def result(self, text, is_final=False, confidence=0.9):
        self.on_result(text, is_final, confidence)

    def error(self, code):
        self.running = False
        self.on_error(code)

    def end(self):
        self.running = False
        self.on_end()


class FakeSynthesizer(SpeechSynthesizer):
    """Plays nothing; completes on demand, automatically, or with an error code."""

    def __init__(self, auto_complete=False, fail_with=None, start_error=None):
        self.auto_complete = auto_complete
        self.fail_with = fail_with
        self.start_error = start_error
        self.spoken = []
        self.cancels = 0
        self.on_end = None
        self.on_error = None

    def speak(self, utterance, on_end, on_error):
        if self.start_error is not None:
            raise self.start_error
        self.spoken.append(utterance)
        self.on_end = on_end
        self.on_error = on_error
        loop = asyncio.get_running_loop()
        if self.fail_with:
            loop.call_soon(on_error, self.fail_with)
        elif self.auto_complete:
            loop.call_soon(on_end)

    def cancel(self):
        self.cancels += 1
        # Real engines report the cancellation as an error
        if self.on_error is not None:
            asyncio.get_running_loop().call_soon(self.on_error, "interrupted")

    def finish(self):
        self.on_end()


class FakeClient:
    """Text-generation double with optional latency and failure."""

    def __init__(self, reply="Happy to help. What do you have in mind?", delay=0.0, error=None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls = []

    async def generate(self, prompt, system=None, **kwargs):
        self.calls.append((prompt, system))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


async def wait_for(predicate, timeout=1.0):
    """Poll until predicate() is true or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def persona():
    return Persona(
        id="negotiator",
        name="Alex",
        role="purchasing manager",
        description="A careful buyer who pushes back on price",
        speaking_style="Direct and polite",
        traits=["analytical", "skeptical"],
    )


@pytest.fixture
def session(persona):
    return SessionContext(
        scenario_id="price-negotiation",
        persona=persona,
        scenario_title="Negotiating a renewal",
        scenario_category="sales",
    )


@pytest.fixture
def capture_config():
    return CaptureConfig(
        silence_timeout=0.05,
        max_retries=2,
        retry_initial_delay=0.01,
        retry_backoff=2.0,
        retry_max_delay=0.05,
    )


@pytest.fixture
def conversation_config():
    return ConversationConfig()
