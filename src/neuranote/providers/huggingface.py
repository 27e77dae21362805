"""Hugging Face Inference API adapters: Whisper, BLIP and BART."""

from __future__ import annotations

import logging
from typing import Any

from neuranote.errors import ProviderError
from neuranote.providers.base import TextResult
from neuranote.providers.http import HttpClient

logger = logging.getLogger(__name__)

API_BASE = "https://api-inference.huggingface.co/models"

# The inference API does not score its output; these are the defaults we report.
CAPTION_CONFIDENCE = 0.85
TRANSCRIPT_CONFIDENCE = 0.9
SUMMARY_CONFIDENCE = 0.8


def _first_text(payload: Any, *keys: str) -> tuple[str, float | None]:
    """Pull generated text (and a score, if any) out of an inference response."""
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, str):
        return payload, None
    if isinstance(payload, dict):
        if "error" in payload:
            raise ProviderError(f"huggingface: {payload['error']}", reason="rejected")
        for key in keys:
            value = payload.get(key)
            if isinstance(value, str):
                score = payload.get("confidence", payload.get("score"))
                return value, float(score) if score is not None else None
    raise ProviderError("huggingface: unexpected response shape", reason="malformed_response")


class _HuggingFaceModel:
    def __init__(self, model: str, api_token: str, *, timeout: int = 60, http: HttpClient | None = None) -> None:
        self.model = model
        self._headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._http = http or HttpClient("huggingface", timeout=timeout)

    async def _infer_bytes(self, content: bytes) -> Any:
        return await self._http.request_json(
            "POST", f"{API_BASE}/{self.model}", data=content, headers=self._headers
        )

    async def _infer_json(self, body: dict[str, Any]) -> Any:
        return await self._http.request_json(
            "POST", f"{API_BASE}/{self.model}", json_body=body, headers=self._headers
        )

    async def health_check(self) -> bool:
        return bool(self._headers)

    async def close(self) -> None:
        await self._http.close()


class HuggingFaceTranscriber(_HuggingFaceModel):
    @property
    def name(self) -> str:
        return "huggingface_whisper"

    async def transcribe(self, audio_url: str) -> TextResult:
        audio = await self._http.fetch(audio_url)
        text, score = _first_text(await self._infer_bytes(audio), "text")
        if not text.strip():
            raise ProviderError("huggingface: empty transcript", reason="malformed_response")
        return TextResult(text=text.strip(), confidence=score if score is not None else TRANSCRIPT_CONFIDENCE)


class HuggingFaceCaptioner(_HuggingFaceModel):
    @property
    def name(self) -> str:
        return "huggingface_blip"

    async def caption(self, image_url: str) -> TextResult:
        image = await self._http.fetch(image_url)
        text, score = _first_text(await self._infer_bytes(image), "generated_text", "caption", "text")
        return TextResult(text=text.strip(), confidence=score if score is not None else CAPTION_CONFIDENCE)


class HuggingFaceSummarizer(_HuggingFaceModel):
    max_length = 150
    min_length = 20

    @property
    def name(self) -> str:
        return "huggingface_bart"

    async def summarize(self, text: str) -> TextResult:
        # Short inputs come back unchanged rather than padded out by the model.
        if len(text.split()) < self.min_length:
            return TextResult(text=text.strip(), confidence=SUMMARY_CONFIDENCE)
        payload = await self._infer_json(
            {
                "inputs": text,
                "parameters": {"max_length": self.max_length, "min_length": self.min_length},
            }
        )
        summary, score = _first_text(payload, "summary_text", "generated_text")
        return TextResult(text=summary.strip(), confidence=score if score is not None else SUMMARY_CONFIDENCE)
