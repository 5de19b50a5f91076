"""Integration helpers for the OpenRouter chat completions API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..config import Settings
from ..errors import ConfigurationError, UpstreamError
from ..utils import extract_json_object

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class OpenRouterClient:
    """Client responsible for structured and streamed completions."""

    service_name = "OpenRouter"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._settings.openrouter_api_key)

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openrouter_api_key
        if not api_key:
            raise ConfigurationError("OpenRouter not configured")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/streampicks/streampicks",
            "X-Title": self._settings.app_name,
        }

    async def structured_call(
        self,
        prompt: str,
        response_model: type[ModelT],
        *,
        schema: dict[str, Any],
        schema_name: str,
        model: str,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> ModelT:
        """Request a JSON-schema constrained completion and decode it."""

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model,
            "temperature": temperature,
            "messages": messages,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "strict": True, "schema": schema},
            },
        }

        headers = self._headers()
        try:
            response = await self._client.post(
                "/chat/completions", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"{schema_name} request failed: {exc!r}", service=self.service_name
            ) from exc
        if response.status_code >= 400:
            raise UpstreamError(
                response.text,
                service=self.service_name,
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "undecodable completion payload", service=self.service_name
            ) from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise UpstreamError("Model returned no choices", service=self.service_name)
        content = _message_content(choices)
        if not isinstance(content, str):
            raise UpstreamError(
                "Model response missing content", service=self.service_name
            )

        try:
            return response_model.model_validate(extract_json_object(content))
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(
                f"{schema_name} response did not match schema: {exc}",
                service=self.service_name,
            ) from exc

    async def stream_call(
        self,
        prompt: str,
        *,
        system: str,
        model: str,
        temperature: float = 1.0,
        max_tokens: int = 900,
    ) -> AsyncIterator[str]:
        """Yield text deltas from a streamed completion as they arrive.

        Closing the iterator early closes the underlying HTTP response.
        """

        payload = {
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        headers = self._headers()
        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=payload, headers=headers
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise UpstreamError(
                        body.decode("utf-8", errors="replace"),
                        service=self.service_name,
                        upstream_status=response.status_code,
                    )
                async for line in response.aiter_lines():
                    data = self._sse_data(line)
                    if data is None:
                        continue
                    if data == SSE_DONE:
                        break
                    chunk = self._delta_content(data)
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"streamed completion failed: {exc!r}", service=self.service_name
            ) from exc

    @staticmethod
    def _sse_data(line: str) -> str | None:
        """Return the payload of an SSE ``data:`` line, ignoring comments."""

        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        return line[len(SSE_DATA_PREFIX):].strip()

    def _delta_content(self, data: str) -> str | None:
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream event: %s", data)
            return None
        if not isinstance(event, dict):
            return None
        if event.get("error"):
            raise UpstreamError(str(event["error"]), service=self.service_name)
        choices = event.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        delta = choice.get("delta") if isinstance(choice, dict) else None
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if isinstance(content, str):
            return content
        return None


def _message_content(choices: object) -> object:
    """Return ``choices[0].message.content`` or ``None`` when the shape is off."""

    if not isinstance(choices, list):
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    message = choice.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")
