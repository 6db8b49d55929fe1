"""LLM client for OpenAI-compatible ``/chat/completions`` endpoints."""

import time
from typing import Any, Dict, List, Optional

import httpx

from .config import Config
from .context_management import count_chars
from .errors import ModelTransportError
from .logger import get_logger, truncate

log = get_logger("llm")


def extract_assistant_text(data: Any) -> str:
    """Pull the reply text out of the response shapes local servers emit."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(first.get("text"), str):
            return first["text"]
    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    if isinstance(data.get("response"), str):
        return data["response"]
    if isinstance(data.get("content"), str):
        return data["content"]
    return ""


class LLMClient:
    """One request per call, no retries.

    Use as an async context manager. ``complete`` is a plain coroutine, so
    cancelling the task that awaits it aborts the in-flight request.
    """

    def __init__(self, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout, connect=min(30.0, self.config.request_timeout)),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    @property
    def endpoint(self) -> str:
        return f"{self.config.api_url.rstrip('/')}/chat/completions"

    async def complete(self, system_prompt: str, messages: List[Dict[str, str]]) -> str:
        """Send the transcript and return the assistant text ("" if none)."""
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        all_messages = [{"role": "system", "content": system_prompt}] + [
            {"role": m["role"], "content": m["content"]} for m in messages
        ]
        payload = {
            "model": self.config.model,
            "messages": all_messages,
            "temperature": self.config.temperature,
        }
        chars = count_chars(all_messages)
        log.debug("Model request: model=%s messages=%d chars=%d (~%d tokens)",
                  self.config.model, len(all_messages), chars, chars // 4)

        start = time.perf_counter()
        try:
            response = await self._client.post(self.endpoint, headers=self._get_headers(), json=payload)
        except httpx.TimeoutException as e:
            raise ModelTransportError("Request timed out") from e
        except httpx.HTTPError as e:
            raise ModelTransportError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            body = response.text
            log.error("Model HTTP %s: %s", response.status_code, truncate(body, 500))
            raise ModelTransportError(f"HTTP {response.status_code} {response.reason_phrase}: {body}")

        try:
            data = response.json()
        except ValueError as e:
            raise ModelTransportError(f"Invalid JSON from model endpoint: {truncate(response.text, 200)}") from e

        text = extract_assistant_text(data)
        log.debug("Model response in %.0fms: %d chars: %s",
                  (time.perf_counter() - start) * 1000, len(text), truncate(text, 300))
        return text
