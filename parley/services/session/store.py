"""
Session store backed by the practice-session HTTP API.

The API keeps the whole conversation per session, so the store accumulates
messages locally and sends the full conversation on every update.
"""

from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from parley.common.logging import setup_logging
from parley.config.models import HostConfig
from parley.engine.errors import SessionStoreError
from parley.engine.models import ConversationMessage
from parley.engine.session import InMemorySessionStore, SessionStore

logger = setup_logging("session-store")


class HttpSessionStore(SessionStore):
    """Forwards session updates to `PUT {base_url}/api/sessions`."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._conversations: Dict[str, List[ConversationMessage]] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def _put(self, body: Dict[str, Any]) -> None:
        session = await self._get_session()
        try:
            async with session.put(f"{self.base_url}/api/sessions", json=body) as response:
                if response.status != 200:
                    raise SessionStoreError(f"Session API returned HTTP {response.status}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise SessionStoreError(f"Session API request failed: {e}") from e

        if not data.get("success"):
            raise SessionStoreError(data.get("error") or "Session API rejected the update")

    async def append_messages(self, session_id: str, messages: Sequence[ConversationMessage]) -> None:
        conversation = self._conversations.setdefault(session_id, [])
        conversation.extend(messages)
        await self._put({
            "sessionId": session_id,
            "conversation": [m.to_dict() for m in conversation],
        })

    async def end_session(self, session_id: str, summary: str, duration_minutes: int) -> None:
        self._conversations.pop(session_id, None)
        await self._put({
            "sessionId": session_id,
            "feedback": summary,
            "durationMinutes": duration_minutes,
            "endSession": True,
        })
        logger.info(f"Session {session_id} recorded ({duration_minutes} min)")

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()


def create_store(cfg: HostConfig) -> SessionStore:
    if cfg.session_api_url:
        return HttpSessionStore(cfg.session_api_url, timeout=cfg.session_api_timeout)
    logger.info("No session API configured, keeping sessions in memory")
    return InMemorySessionStore()
