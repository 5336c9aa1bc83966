"""
Async client for the text-generation service (Ollama HTTP API).
"""

from typing import List, Optional

import aiohttp

from parley.config.models import OllamaConfig
from parley.common.logging import setup_logging

from .errors import GenerationError

logger = setup_logging("llm")


class OllamaClient:
    """Async client for Ollama API"""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.2:3b",
        temperature: float = 0.9,
        max_tokens: int = 150,
    ):
        self.host = host.rstrip('/')
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, cfg: OllamaConfig) -> "OllamaClient":
        return cls(
            host=cfg.host,
            model=cfg.model,
            temperature=cfg.default_temperature,
            max_tokens=cfg.default_max_tokens,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=60)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stop: Optional[List[str]] = None,
    ) -> str:
        """Generate a completion.

        Raises:
            GenerationError: on HTTP errors, transport failures or empty output
        """
        session = await self._get_session()

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature if temperature is None else temperature,
                "num_predict": self.max_tokens if max_tokens is None else max_tokens,
            }
        }

        if stop:
            payload["options"]["stop"] = stop

        if system:
            payload["system"] = system

        try:
            async with session.post(f"{self.host}/api/generate", json=payload) as response:
                if response.status != 200:
                    text = await response.text()
                    logger.error(f"Ollama error {response.status}: {text[:200]}")
                    raise GenerationError(f"Text generation returned HTTP {response.status}")

                data = await response.json()
        except aiohttp.ClientError as e:
            raise GenerationError(f"Text generation request failed: {e}") from e

        text = (data.get("response") or "").strip()
        if not text:
            raise GenerationError("Text generation returned an empty response")
        return text

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
