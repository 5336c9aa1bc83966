"""Turn-taking conversation engine - capture, generation, playback and the state machine that sequences them."""
from .cache import ResponseCache
from .capture import SpeechCaptureController, SpeechRecognizer
from .context import ContextAnalyzer
from .errors import CaptureError, GenerationError, ParleyError, SynthesisError, TurnStateError
from .generator import ResponseGenerator
from .llm import OllamaClient
from .models import ConversationMessage, GeneratedReply, Persona, Speaker, TurnState
from .retry import RetryPolicy
from .session import InMemorySessionStore, SessionContext, SessionStore
from .synthesis import SpeechSynthesisController, SpeechSynthesizer
from .turns import TurnStateMachine

__all__ = [
    "CaptureError",
    "ContextAnalyzer",
    "ConversationMessage",
    "GeneratedReply",
    "GenerationError",
    "InMemorySessionStore",
    "OllamaClient",
    "ParleyError",
    "Persona",
    "ResponseCache",
    "ResponseGenerator",
    "RetryPolicy",
    "SessionContext",
    "SessionStore",
    "Speaker",
    "SpeechCaptureController",
    "SpeechRecognizer",
    "SpeechSynthesisController",
    "SpeechSynthesizer",
    "SynthesisError",
    "TurnState",
    "TurnStateError",
    "TurnStateMachine",
]
