"""Anthropic API summarizer: summary plus structured entities in one call."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from neuranote.entities.extractor import load_json_object
from neuranote.errors import NetworkError, ProviderError
from neuranote.models.base import clamp_unit
from neuranote.providers.base import TextResult

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.9

PROMPT = """\
Summarize the following content concisely, then list every date/time and \
location it mentions.

Content:
{text}

Return ONLY a valid JSON object with this structure:
{{
  "summary": "string",
  "confidence": 0.0,
  "dateTimes": [{{"originalText": "string", "parsedDateTime": "ISO-8601", "type": "specific|relative|recurring|dateOnly|timeOnly", "confidence": 0.0}}],
  "locations": [{{"originalText": "string", "type": "address|placeName|landmark|city|relative", "confidence": 0.0}}]
}}"""


@dataclass
class AnthropicSummarizer:
    """Summarizer backed by the `anthropic` SDK."""

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 1024
    timeout: int = 60

    def __post_init__(self) -> None:
        try:
            import anthropic

            self._anthropic = anthropic
            self._client = anthropic.Anthropic(timeout=self.timeout)
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: pip install 'neuranote[api]'"
            )

    @property
    def name(self) -> str:
        return "anthropic_api"

    async def summarize(self, text: str) -> TextResult:
        anthropic = self._anthropic
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": PROMPT.format(text=text)}],
            )
        except anthropic.APIConnectionError as e:
            raise NetworkError(f"anthropic_api: {e}")
        except anthropic.RateLimitError as e:
            raise ProviderError(f"anthropic_api: {e}", status=429, reason="rate_limited")
        except anthropic.AuthenticationError as e:
            raise ProviderError(f"anthropic_api: {e}", status=401, reason="invalid_credentials")
        except anthropic.APIStatusError as e:
            raise ProviderError(f"anthropic_api: {e}", status=e.status_code, reason="rejected")

        raw = response.content[0].text if response.content else ""
        if not raw.strip():
            raise ProviderError("anthropic_api: empty response", reason="malformed_response")

        parsed = load_json_object(raw)
        if parsed is None or not isinstance(parsed.get("summary"), str):
            logger.warning("Anthropic response was not structured JSON, using it as plain text")
            return TextResult(text=raw.strip(), confidence=DEFAULT_CONFIDENCE)

        try:
            confidence = clamp_unit(parsed.get("confidence", DEFAULT_CONFIDENCE))
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE
        return TextResult(text=parsed["summary"].strip(), confidence=confidence, structured=raw)

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except self._anthropic.APIError as e:
            logger.warning("Anthropic health check failed: %s", e)
            return False
