"""
Speech-to-text collaborators.

The controller only depends on the `SpeechToText` protocol; `OpenAIWhisperClient`
is the default HTTP implementation.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from caption_localizer.config import get_settings
from caption_localizer.errors import (
    MalformedResponse,
    NetworkError,
    ProviderError,
    ProviderTimeout,
)


class SpeechToText(Protocol):
    def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        language: str,
        response_format: str,
        timestamp_granularities: list[str],
        temperature: float = 0.0,
        prompt: str | None = None,
    ) -> dict[str, Any]: ...


class OpenAIWhisperClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        s = get_settings()
        if api_key is None and s.openai_api_key is not None:
            api_key = s.openai_api_key.get_secret_value()
        self._api_key = api_key or ""
        self.base_url = str(base_url or s.openai_base_url).rstrip("/")
        self.model = str(model or s.stt_model)
        self.timeout_s = float(timeout_s or s.stt_timeout_sec)
        self._session = session or requests.Session()

    def transcribe(
        self,
        audio: bytes,
        *,
        filename: str,
        language: str,
        response_format: str,
        timestamp_granularities: list[str],
        temperature: float = 0.0,
        prompt: str | None = None,
    ) -> dict[str, Any]:
        if not self._api_key:
            raise ProviderError("OPENAI_API_KEY is not configured", retryable=False)
        data: list[tuple[str, str]] = [
            ("model", self.model),
            ("language", language),
            ("response_format", response_format),
            ("temperature", str(float(temperature))),
        ]
        for g in timestamp_granularities:
            data.append(("timestamp_granularities[]", g))
        if prompt:
            data.append(("prompt", prompt))
        try:
            resp = self._session.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data=data,
                files={"file": (filename, audio, "audio/mpeg")},
                timeout=self.timeout_s,
            )
        except requests.exceptions.Timeout as ex:
            raise ProviderTimeout("Speech-to-text request timed out") from ex
        except requests.exceptions.ConnectionError as ex:
            raise NetworkError("Network error reaching speech-to-text provider") from ex

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderError(
                f"Speech-to-text provider returned {resp.status_code}",
                status_code=resp.status_code,
                retryable=True,
            )
        if resp.status_code != 200:
            body = resp.text[:300] if resp.text else "No response body"
            raise ProviderError(
                f"Speech-to-text provider returned {resp.status_code}: {body}",
                status_code=resp.status_code,
                retryable=False,
            )
        try:
            payload = resp.json()
        except ValueError as ex:
            raise MalformedResponse("Failed to parse speech-to-text response JSON") from ex
        if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
            raise MalformedResponse("Speech-to-text response has no text field")
        return payload
