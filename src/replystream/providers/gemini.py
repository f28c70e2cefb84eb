"""Gemini ``streamGenerateContent`` client over server-sent events."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import msgspec

from ..logging import get_logger, log_pipeline
from ..provider import CancelToken, GenerationError
from ..settings import GenerationSettings

logger = get_logger(__name__)


class Part(msgspec.Struct, forbid_unknown_fields=False):
    text: str | None = None


class Content(msgspec.Struct, forbid_unknown_fields=False):
    parts: list[Part] = msgspec.field(default_factory=list)
    role: str | None = None


class Candidate(msgspec.Struct, forbid_unknown_fields=False):
    content: Content | None = None
    finishReason: str | None = None


class PromptFeedback(msgspec.Struct, forbid_unknown_fields=False):
    blockReason: str | None = None


class ApiError(msgspec.Struct, forbid_unknown_fields=False):
    code: int | None = None
    message: str | None = None
    status: str | None = None


class StreamChunk(msgspec.Struct, forbid_unknown_fields=False):
    candidates: list[Candidate] = msgspec.field(default_factory=list)
    promptFeedback: PromptFeedback | None = None
    error: ApiError | None = None

    def text(self) -> str:
        pieces: list[str] = []
        for candidate in self.candidates[:1]:
            if candidate.content is None:
                continue
            pieces.extend(part.text for part in candidate.content.parts if part.text)
        return "".join(pieces)


class ErrorEnvelope(msgspec.Struct, forbid_unknown_fields=False):
    error: ApiError | None = None


_CHUNK_DECODER = msgspec.json.Decoder(StreamChunk)
_ERROR_DECODER = msgspec.json.Decoder(ErrorEnvelope)


def decode_chunk(data: str | bytes) -> StreamChunk:
    return _CHUNK_DECODER.decode(data)


def _error_from_body(body: bytes, status_code: int) -> GenerationError:
    try:
        envelope = _ERROR_DECODER.decode(body)
    except msgspec.DecodeError:
        envelope = None
    if envelope is not None and envelope.error is not None and envelope.error.message:
        return GenerationError(envelope.error.message)
    return GenerationError(f"Gemini request failed with HTTP {status_code}")


def _check_chunk(chunk: StreamChunk) -> None:
    if chunk.error is not None:
        raise GenerationError(chunk.error.message or "Gemini stream reported an error")
    feedback = chunk.promptFeedback
    if feedback is not None and feedback.blockReason:
        raise GenerationError(f"Response blocked: {feedback.blockReason}")


class GeminiProvider:
    def __init__(
        self,
        api_key: str,
        *,
        generation: GenerationSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini API key is empty")
        self._api_key = api_key
        self.generation = generation or GenerationSettings()
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self.generation.timeout_s
        )
        self._owns_http_client = http_client is None

    @property
    def model(self) -> str:
        return self.generation.model

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _request_body(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": self.generation.to_payload(),
        }

    async def generate_stream(
        self, prompt: str, *, cancel: CancelToken
    ) -> AsyncIterator[str]:
        cancel.raise_if_cancelled()
        url = f"{self.generation.api_base}/models/{self.model}:streamGenerateContent"
        request = self._http_client.build_request(
            "POST",
            url,
            params={"alt": "sse"},
            headers={"x-goog-api-key": self._api_key},
            json=self._request_body(prompt),
        )
        logger.debug("gemini.request", model=self.model, prompt_len=len(prompt))
        try:
            response = await self._http_client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise GenerationError(f"Gemini request failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            logger.warning(
                "gemini.http_error",
                model=self.model,
                status_code=response.status_code,
            )
            raise _error_from_body(body, response.status_code)
        return self._iter_chunks(response, cancel)

    async def _iter_chunks(
        self, response: httpx.Response, cancel: CancelToken
    ) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                cancel.raise_if_cancelled()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:") :].strip()
                if not data:
                    continue
                log_pipeline(logger, "gemini.sse", data=data)
                try:
                    chunk = decode_chunk(data)
                except msgspec.DecodeError as exc:
                    raise GenerationError(f"Malformed Gemini stream chunk: {exc}") from exc
                _check_chunk(chunk)
                text = chunk.text()
                if text:
                    yield text
            cancel.raise_if_cancelled()
        except httpx.HTTPError as exc:
            raise GenerationError(f"Gemini stream failed: {exc}") from exc
        finally:
            await response.aclose()
