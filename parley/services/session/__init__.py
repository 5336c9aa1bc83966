"""Practice session service - hosts the turn-taking engine behind MQTT speech bridges and an HTTP API."""
from .service import PracticeSessionService

__all__ = ["PracticeSessionService"]
