"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks the OpenAI chat completions API with
stream=true: OpenAI itself, llama.cpp server, vLLM, LocalAI, Ollama's
/v1 shim. The response is Server-Sent Events, one `data: {...}` line per
chunk, terminated by `data: [DONE]`.
"""

from __future__ import annotations

import json
import logging

import httpx

from parley.backends.base import BaseBackend
from parley.config import get_config
from parley.errors import GenerationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-3.5-turbo"


def parse_sse_line(line: str) -> str | None:
    """
    Extract the content delta from one SSE line.
    Returns None for the [DONE] sentinel, "" for lines carrying no text.
    """
    if not line.startswith("data:"):
        return ""
    data_str = line[5:].strip()
    if data_str == "[DONE]":
        return None
    try:
        chunk = json.loads(data_str)
    except json.JSONDecodeError:
        logger.debug("Skipping unparseable SSE line: %.80s", line)
        return ""
    choices = chunk.get("choices") or [{}]
    delta = choices[0].get("delta") or {}
    return delta.get("content") or ""


class OpenAICompatibleBackend(BaseBackend):
    """
    Streaming backend for OpenAI-compatible endpoints.

    Works with any service that implements /v1/chat/completions and /v1/models.
    """

    def __init__(
        self,
        name: str,
        url: str,
        model: str = DEFAULT_MODEL,
        timeout: float = 120,
        api_key: str = "",
        temperature: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name, url, timeout, model)
        self.api_key = api_key
        self.temperature = temperature
        self._transport = transport

    @classmethod
    def from_config(cls) -> "OpenAICompatibleBackend":
        """Create a backend from the `backend` section of config.yaml."""
        b_cfg = get_config().get("backend", {})
        return cls(
            name=b_cfg.get("name", "default"),
            url=b_cfg.get("url", "https://api.openai.com"),
            model=b_cfg.get("model") or DEFAULT_MODEL,
            timeout=b_cfg.get("timeout", 120),
            api_key=b_cfg.get("api_key", ""),
            temperature=b_cfg.get("temperature"),
        )

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def generate(self, messages: list[dict]):
        """Stream a completion, yielding each non-empty content delta."""
        body = {"model": self.model, "messages": messages, "stream": True}
        if self.temperature is not None:
            body["temperature"] = self.temperature

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", "replace")
                        raise GenerationError(f"HTTP {resp.status_code}: {detail[:200]}")
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        delta = parse_sse_line(line)
                        if delta is None:
                            break
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise GenerationError(f"Timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise GenerationError(str(e) or e.__class__.__name__) from e

    async def health_check(self) -> bool:
        """Check endpoint is reachable."""
        try:
            async with self._client(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
