"""
Groq HTTP client (OpenAI-compatible REST API).

One pooled aiohttp session is shared by the Whisper transcription capability
and the LLM extractor. Non-2xx responses raise GroqAPIError carrying the
status code so classify_remote_error can map them.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from .config import PipelineConfig


logger = get_logger(LogComponent.CAPTURE_PIPELINE)


class GroqAPIError(Exception):
    """Provider returned an error response."""

    def __init__(self, status: int, message: str):
        super().__init__(f"Groq API error: {status} - {message}")
        self.status = status


class GroqClient:
    """Thin async wrapper over the Groq REST endpoints used by the pipeline."""

    def __init__(self, config: PipelineConfig, pool_size: int = 4):
        if not config.groq_api_key:
            raise ValueError("Groq backend requires a valid API key in GROQ_API_KEY")
        self._config = config
        self._pool_size = pool_size
        self._http_session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self._config.groq_base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._config.groq_api_key}"}

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        """Get or create the shared HTTP session with connection pooling."""
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                limit_per_host=self._pool_size,
                ttl_dns_cache=300,
            )
            self._http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=60, connect=5),
            )
            logger.info("Groq connection pool created", pool_size=self._pool_size)
        return self._http_session

    async def transcribe(self, wav_bytes: bytes, language: str, *, timeout: float) -> Dict[str, Any]:
        """POST audio/transcriptions with a WAV clip; returns the verbose_json body."""
        form = aiohttp.FormData()
        form.add_field("file", wav_bytes, filename="clip.wav", content_type="audio/wav")
        form.add_field("model", self._config.groq_model_stt)
        form.add_field("language", language)
        form.add_field("response_format", "verbose_json")
        form.add_field("temperature", "0")
        return await self._post("/audio/transcriptions", timeout=timeout, data=form)

    async def chat_json(self, system: str, user: str, *, timeout: float) -> str:
        """Chat completion in JSON mode; returns the message content."""
        payload = {
            "model": self._config.groq_model_llm,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        body = await self._post("/chat/completions", timeout=timeout, json=payload)
        try:
            return body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise GroqAPIError(200, f"unexpected completion payload: {type(e).__name__}") from e

    async def _post(self, path: str, *, timeout: float, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        start_ts = time.time()
        session = self._get_or_create_session()
        async with session.post(
            url,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=timeout),
            **kwargs,
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                logger.error(
                    "Groq request failed",
                    endpoint=path,
                    status_code=response.status,
                    latency_ms=int((time.time() - start_ts) * 1000),
                )
                raise GroqAPIError(response.status, error_text[:200])
            data = await response.json()
            logger.debug(
                "Groq request completed",
                endpoint=path,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            return data

    async def aclose(self) -> None:
        """
        Best-effort cleanup of the HTTP session.
        Safe to call multiple times.
        """
        if self._http_session is not None:
            try:
                await self._http_session.close()
                logger.info("Groq connection pool closed")
            except Exception as e:
                logger.warning(
                    "Error closing Groq HTTP session",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._http_session = None
