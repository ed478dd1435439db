"""
LLM Gateway — single request/response call to the narrative model.

One POST per call carrying the prompt and sampling parameters. Two response
shapes are accepted:
- {"text": "..."}
- OpenAI-style {"choices": [{"text": "..."}]} or
  {"choices": [{"message": {"content": "..."}}]}

Errors are classified for the retry policy:
- timeouts, transport errors, HTTP 5xx and 429 → TransientRemoteError
- any other 4xx → RemoteRequestError
- a 2xx body with neither shape → SynthesisFailure
"""

from typing import Optional

import httpx
import structlog

from cohortlens.config import settings
from cohortlens.exceptions import RemoteRequestError, SynthesisFailure, TransientRemoteError

logger = structlog.get_logger(__name__)


def extract_text(body: object) -> str:
    """Pull the completion text out of either supported response shape."""
    if isinstance(body, dict):
        text = body.get("text")
        if isinstance(text, str):
            return text
        choices = body.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0]
            if isinstance(first, dict):
                if isinstance(first.get("text"), str):
                    return first["text"]
                message = first.get("message")
                if isinstance(message, dict) and isinstance(message.get("content"), str):
                    return message["content"]
    raise SynthesisFailure(
        "Synthesis response has neither a text field nor a choices array",
        details={"keys": sorted(body.keys()) if isinstance(body, dict) else type(body).__name__},
    )


class LLMGateway:
    """Gateway for the remote narrative-synthesis endpoint."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint = endpoint or settings.synthesis_endpoint
        self.api_key = api_key if api_key is not None else settings.synthesis_api_key
        self.model = model or settings.synthesis_model
        self.timeout = timeout or settings.synthesis_timeout_seconds
        self._client = client
        self._owns_client = client is None
        if not self.api_key:
            logger.info("synthesis_api_key_missing", msg="Requests are sent without authorization")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        """Send one completion request and return the raw text."""
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["authorization"] = f"Bearer {self.api_key}"

        payload = {
            "model": self.model,
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            response = await self._get_client().post(
                self.endpoint, json=payload, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            logger.warning("synthesis_timeout", endpoint=self.endpoint, timeout=self.timeout)
            raise TransientRemoteError(f"Synthesis request timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            logger.warning("synthesis_transport_error", endpoint=self.endpoint, error=str(exc))
            raise TransientRemoteError(f"Synthesis transport error: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning("synthesis_transient_status", status=status)
            raise TransientRemoteError(f"Synthesis endpoint returned HTTP {status}", status_code=status)
        if status >= 400:
            logger.error("synthesis_request_rejected", status=status, body=response.text[:500])
            raise RemoteRequestError(f"Synthesis endpoint rejected request with HTTP {status}", status_code=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise SynthesisFailure("Synthesis response is not valid JSON") from exc
        return extract_text(body)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
