"""Exception hierarchy for the turn-taking engine."""

from typing import Optional


class ParleyError(Exception):
    """Base exception for the conversation engine"""
    pass


class CaptureError(ParleyError):
    """Raised or reported when speech recognition fails"""

    def __init__(self, code: str, fatal: bool = False, message: Optional[str] = None):
        self.code = code
        self.fatal = fatal
        super().__init__(message or f"Speech recognition error: {code}")


class SynthesisError(ParleyError):
    """Raised when the speech synthesizer fails for a reason other than interruption"""

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"Speech synthesis error: {code}")


class GenerationError(ParleyError):
    """Raised when the text-generation service fails or returns nothing usable"""
    pass


class TurnStateError(ParleyError):
    """Raised when an operation is not valid in the current turn state"""
    pass


class SessionStoreError(ParleyError):
    """Raised when the session API rejects or fails a request"""
    pass


# Actionable messages for recognizer error codes
CAPTURE_ERROR_MESSAGES = {
    "not-allowed": "Microphone access denied. Please allow microphone access.",
    "service-not-allowed": "Speech recognition is blocked. Please allow it in your browser settings.",
    "audio-capture": "Microphone not found. Please check your microphone.",
    "no-speech": "No speech detected. Please try again.",
    "network": "Network error. Please check your connection.",
    "aborted": "Speech recognition was aborted.",
}
