"""
Inference Client

Thin async client for an OpenAI-compatible chat completions endpoint.
Sends one system instruction plus one user payload and returns the
JSON content of the answer together with token usage.
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from chatflow.common.config import settings
from chatflow.common.errors import InferenceError

logger = logging.getLogger("inference_client")


class TokenUsage(BaseModel):
    """Token counts reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int | None = None
    audio_tokens_prompt: int | None = None
    reasoning_tokens: int | None = None
    audio_tokens_completion: int | None = None

    @classmethod
    def from_payload(cls, usage: dict | None) -> "TokenUsage":
        usage = usage or {}
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        return cls(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
            cached_tokens=prompt_details.get("cached_tokens"),
            audio_tokens_prompt=prompt_details.get("audio_tokens"),
            reasoning_tokens=completion_details.get("reasoning_tokens"),
            audio_tokens_completion=completion_details.get("audio_tokens"),
        )


class InferenceResponse(BaseModel):
    """Answer of one chat completion call."""

    content: str
    model: str
    request_id: str | None = None
    system_fingerprint: str | None = None
    usage: TokenUsage = TokenUsage()


class InferenceClient:
    """
    Calls the configured chat completions endpoint.

    A shared httpx.AsyncClient may be injected (tests pass one bound to a
    mock transport); otherwise a client is opened per call.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.api_url = api_url or settings.openai_api_url
        self.temperature = temperature if temperature is not None else settings.openai_temperature
        self.timeout = timeout if timeout is not None else settings.openai_request_timeout

    async def complete(self, model: str, system_prompt: str, user_content: str) -> InferenceResponse:
        """
        Run one structured-output chat completion.

        Args:
            model: Model name to request
            system_prompt: Instruction describing the expected JSON
            user_content: The payload to analyze

        Returns:
            InferenceResponse: JSON content string plus usage

        Raises:
            InferenceError: If the key is missing, the provider answers
                with a non-2xx status, or the body has no content
        """
        if not self.api_key:
            raise InferenceError("OPENAI_API_KEY is not configured")

        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        if self._client is not None:
            response = await self._client.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=body, headers=headers)

        if not response.is_success:
            raise InferenceError(f"OpenAI API error: {response.status_code} - {response.text}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as ex:
            raise InferenceError(f"Unexpected OpenAI response body: {ex}") from ex

        if not isinstance(content, str) or not content:
            raise InferenceError("OpenAI response has no message content")

        return InferenceResponse(
            content=content,
            model=data.get("model") or model,
            request_id=data.get("id"),
            system_fingerprint=data.get("system_fingerprint"),
            usage=TokenUsage.from_payload(data.get("usage")),
        )
