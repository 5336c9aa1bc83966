"""Canonical MQTT topic constants for Parley.

All components MUST use these constants instead of hardcoding topic strings.
Topic namespace: parley/
"""

# Speech recognition bridge
STT_CONTROL = "parley/stt/control"
STT_RESULT = "parley/stt/result"
STT_ERROR = "parley/stt/error"
STT_END = "parley/stt/end"

# Speech synthesis bridge
TTS_SPEAK = "parley/tts/speak"
TTS_STOP = "parley/tts/stop"
TTS_COMPLETED = "parley/tts/completed"
TTS_ERROR = "parley/tts/error"

# Session
SESSION_STATE = "parley/session/state"
SESSION_TRANSCRIPT = "parley/session/transcript"
