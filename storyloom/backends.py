"""Generation backend contract and an HTTP implementation."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from .errors import PermanentBackendError, TransientBackendError

_TRANSIENT_STATUS = frozenset({408, 425, 429})


class GenerationResult(BaseModel):
    media_ref: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class GenerationBackend(Protocol):
    async def generate(self, prompt: str, credential: str | None) -> GenerationResult:
        """Produce media for ``prompt``.

        Raises :class:`TransientBackendError` for failures worth retrying and
        :class:`PermanentBackendError` for everything else.
        """
        ...


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        text = response.text.strip()
        return text[:200] or None
    if isinstance(payload, Mapping):
        detail = payload.get("detail") or payload.get("error") or payload.get("title")
        if isinstance(detail, Mapping):
            detail = detail.get("message")
        return str(detail) if detail else None
    return None


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = _error_detail(response)
    detail_text = f": {detail}" if detail else ""
    extra = {"status_code": status}
    if status in _TRANSIENT_STATUS or status >= 500:
        raise TransientBackendError(f"Generation backend returned {status}{detail_text}", extra=extra)
    raise PermanentBackendError(f"Generation backend returned {status}{detail_text}", extra=extra)


@dataclass(slots=True)
class HttpGenerationBackend:
    """POSTs ``{"prompt": ...}`` to an image-generation endpoint.

    The credential travels in ``credential_header`` and is never logged. The
    media reference is read from ``media_ref_key`` in the JSON response.
    """

    endpoint: str
    credential_header: str = "Authorization"
    credential_prefix: str = "Bearer "
    media_ref_key: str = "media_ref"
    timeout_s: float | None = 60.0
    headers: Mapping[str, str] | None = None
    extra_body: Mapping[str, Any] = field(default_factory=dict)
    client: httpx.AsyncClient | None = None

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            yield client

    def _build_headers(self, credential: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.headers:
            headers.update(self.headers)
        if credential:
            headers[self.credential_header] = f"{self.credential_prefix}{credential}"
        return headers

    async def generate(self, prompt: str, credential: str | None) -> GenerationResult:
        body = {**self.extra_body, "prompt": prompt}
        async with self._client_context() as client:
            try:
                response = await client.post(self.endpoint, json=body, headers=self._build_headers(credential))
            except httpx.TransportError as exc:
                raise TransientBackendError(f"Generation backend unreachable: {type(exc).__name__}") from exc
            _raise_for_status(response)
            try:
                data = response.json()
            except (json.JSONDecodeError, ValueError) as exc:
                raise PermanentBackendError("Generation backend returned a non-JSON body") from exc

        if not isinstance(data, Mapping):
            raise PermanentBackendError("Generation backend returned an unexpected payload")
        media_ref = data.get(self.media_ref_key)
        if not isinstance(media_ref, str) or not media_ref:
            raise PermanentBackendError(f"Generation backend response has no '{self.media_ref_key}'")
        metadata = {key: value for key, value in data.items() if key != self.media_ref_key}
        return GenerationResult(media_ref=media_ref, metadata=metadata)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


__all__ = ["GenerationBackend", "GenerationResult", "HttpGenerationBackend"]
