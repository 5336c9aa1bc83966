"""
MQTT bridges for the speech engines.

The recognizer and synthesizer run out of process (browser client, audio
node). These adapters present them to the engine through the
SpeechRecognizer / SpeechSynthesizer interfaces: commands go out on the
control topics, callbacks come back on the result topics. Every request
carries an id and replies for any other id are dropped.
"""

import json
import uuid
from dataclasses import asdict
from typing import Callable, Optional

from parley.common import topics
from parley.common.logging import setup_logging
from parley.engine.capture import RecognizerConfig, SpeechRecognizer
from parley.engine.synthesis import SpeechSynthesizer, Utterance

logger = setup_logging("bridges")


def _decode(payload: bytes) -> Optional[dict]:
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Invalid JSON from speech engine: {e}")
        return None
    if not isinstance(data, dict):
        logger.error("Speech engine message is not an object")
        return None
    return data


class MqttSpeechRecognizer(SpeechRecognizer):
    """Speech-to-text engine reached over MQTT."""

    def __init__(self, service):
        self.service = service
        self.request_id: Optional[str] = None
        self._on_result: Optional[Callable[[str, bool, float], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None
        self._on_end: Optional[Callable[[], None]] = None

    def register(self) -> None:
        self.service.on_mqtt(topics.STT_RESULT)(self.handle_result)
        self.service.on_mqtt(topics.STT_ERROR)(self.handle_error)
        self.service.on_mqtt(topics.STT_END)(self.handle_end)

    def start(self, config: RecognizerConfig, on_result, on_error, on_end) -> None:
        self.request_id = uuid.uuid4().hex[:12]
        self._on_result = on_result
        self._on_error = on_error
        self._on_end = on_end
        self.service.publish_soon(topics.STT_CONTROL, {
            "action": "start",
            "id": self.request_id,
            "lang": config.lang,
            "continuous": config.continuous,
            "interim_results": config.interim_results,
        })

    def stop(self) -> None:
        if self.request_id is None:
            return
        self.service.publish_soon(topics.STT_CONTROL, {"action": "stop", "id": self.request_id})

    def _current(self, data: Optional[dict]) -> bool:
        return data is not None and data.get("id") == self.request_id

    async def handle_result(self, topic: str, payload: bytes):
        """Expected payload: {"id", "transcript", "is_final", "confidence"}"""
        data = _decode(payload)
        if not self._current(data) or self._on_result is None:
            return
        self._on_result(
            str(data.get("transcript", "")),
            bool(data.get("is_final", False)),
            float(data.get("confidence", 0.0)),
        )

    async def handle_error(self, topic: str, payload: bytes):
        """Expected payload: {"id", "code"}"""
        data = _decode(payload)
        if not self._current(data) or self._on_error is None:
            return
        self._on_error(str(data.get("code", "unknown")))

    async def handle_end(self, topic: str, payload: bytes):
        data = _decode(payload)
        if not self._current(data) or self._on_end is None:
            return
        self._on_end()


class MqttSpeechSynthesizer(SpeechSynthesizer):
    """Text-to-speech engine reached over MQTT."""

    def __init__(self, service):
        self.service = service
        self.request_id: Optional[str] = None
        self._on_end: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None

    def register(self) -> None:
        self.service.on_mqtt(topics.TTS_COMPLETED)(self.handle_completed)
        self.service.on_mqtt(topics.TTS_ERROR)(self.handle_error)

    def speak(self, utterance: Utterance, on_end, on_error) -> None:
        self.request_id = uuid.uuid4().hex[:12]
        self._on_end = on_end
        self._on_error = on_error
        payload = asdict(utterance)
        payload["id"] = self.request_id
        self.service.publish_soon(topics.TTS_SPEAK, payload)

    def cancel(self) -> None:
        if self.request_id is None:
            return
        self.service.publish_soon(topics.TTS_STOP, {"id": self.request_id})

    def _current(self, data: Optional[dict]) -> bool:
        return data is not None and data.get("id") == self.request_id

    async def handle_completed(self, topic: str, payload: bytes):
        data = _decode(payload)
        if not self._current(data) or self._on_end is None:
            return
        self._on_end()

    async def handle_error(self, topic: str, payload: bytes):
        """Expected payload: {"id", "code"}"""
        data = _decode(payload)
        if not self._current(data) or self._on_error is None:
            return
        self._on_error(str(data.get("code", "unknown")))
