"""Summarization pipeline: upload → transcribe/caption → summarize → extract → resolve → finalize.

Stages run strictly in order and are reported through an optional progress
sink. Cancellation is cooperative: the token is checked between stages only,
and already-uploaded content is released best-effort. Geocoding never aborts
a run; any other stage failure surfaces as PipelineError tagged with the stage.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from neuranote.config import PipelineConfig
from neuranote.entities.extractor import EntityExtractor
from neuranote.errors import (
    GeocodeUnresolved,
    NetworkError,
    PipelineCancelled,
    PipelineError,
    ProviderError,
    ValidationError,
)
from neuranote.models.base import clamp_unit
from neuranote.models.summary import ContentKind, DateTimeEntity, LocationEntity, Summary
from neuranote.pipeline.progress import (
    STAGE_FRACTIONS,
    CancellationToken,
    ProgressEvent,
    ProgressSink,
    Stage,
)
from neuranote.providers.base import BlobStorage, Captioner, Geocoder, Summarizer, TextResult, Transcriber

logger = logging.getLogger(__name__)

_MESSAGES = {
    Stage.UPLOADING: "Uploading content...",
    Stage.TRANSCRIBING: "Transcribing audio...",
    Stage.ANALYZING: "Analyzing image...",
    Stage.SUMMARIZING: "Generating summary...",
    Stage.EXTRACTING_ENTITIES: "Extracting dates and locations...",
    Stage.RESOLVING_LOCATIONS: "Resolving locations...",
    Stage.FINALIZING: "Finalizing...",
    Stage.COMPLETE: "Complete",
}


@dataclass
class SummarizationPipelineResult:
    kind: ContentKind
    original_content_url: str
    summarized_text: str
    date_times: list[DateTimeEntity] = field(default_factory=list)
    locations: list[LocationEntity] = field(default_factory=list)
    raw_transcript: str | None = None
    caption: str | None = None
    provider_confidence: float = 1.0
    confidence_score: float = 1.0
    tokens_cost: int = 1
    completed_at: datetime | None = None

    def to_summary(self, user_id: str, summary_id: str | None = None) -> Summary:
        metadata = {"caption": self.caption} if self.caption else {}
        return Summary(
            id=summary_id or uuid.uuid4().hex,
            user_id=user_id,
            kind=self.kind,
            original_content_url=self.original_content_url,
            thumbnail_url=self.original_content_url if self.kind is ContentKind.IMAGE else None,
            summarized_text=self.summarized_text,
            raw_transcript=self.raw_transcript,
            created_at=self.completed_at or datetime.now(),
            date_times=list(self.date_times),
            locations=list(self.locations),
            tokens_cost=self.tokens_cost,
            confidence_score=self.confidence_score,
            metadata=metadata,
        )


class _Reporter:
    """Forwards stage events to the sink and remembers the last fraction."""

    def __init__(self, sink: ProgressSink | None) -> None:
        self._sink = sink
        self.fraction = 0.0

    def __call__(self, stage: Stage, message: str | None = None) -> None:
        fraction = STAGE_FRACTIONS.get(stage, self.fraction)
        self.fraction = max(self.fraction, fraction)
        if self._sink is not None:
            self._sink(ProgressEvent(stage, self.fraction, message or _MESSAGES.get(stage, "")))


def _checkpoints(token: CancellationToken, report: _Reporter) -> Callable[[Stage], Stage]:
    """Stage entry: stop if cancelled, otherwise report and return the stage."""

    def checkpoint(next_stage: Stage) -> Stage:
        if token.cancelled:
            raise PipelineCancelled(next_stage.value)
        report(next_stage)
        return next_stage

    return checkpoint


def _merge(primary: list, extra: list) -> list:
    seen = {e.original_text.lower() for e in primary}
    merged = list(primary)
    for entity in extra:
        if entity.original_text.lower() not in seen:
            seen.add(entity.original_text.lower())
            merged.append(entity)
    return merged


class SummarizationOrchestrator:
    """Drives one summarization run per ``summarize`` call; holds no per-run state."""

    def __init__(
        self,
        storage: BlobStorage,
        summarizer: Summarizer,
        *,
        transcriber: Transcriber | None = None,
        captioner: Captioner | None = None,
        geocoder: Geocoder | None = None,
        extractor: EntityExtractor | None = None,
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.storage = storage
        self.summarizer = summarizer
        self.transcriber = transcriber
        self.captioner = captioner
        self.geocoder = geocoder
        self.extractor = extractor or EntityExtractor(clock=clock)
        self.config = config or PipelineConfig()
        self._clock = clock

    def cost_of(self, kind: ContentKind) -> int:
        return self.config.voice_cost if kind is ContentKind.VOICE else self.config.image_cost

    async def summarize(
        self,
        kind: ContentKind,
        file_path: Path,
        user_id: str,
        on_progress: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SummarizationPipelineResult:
        """Run the full pipeline for one piece of content.

        Raises PipelineError (``stage`` set, ``kind`` from the cause) on
        failure and PipelineCancelled when the token fires between stages.
        """
        if kind is ContentKind.TEXT:
            raise ValidationError("Text notes have no file; use summarize_text")
        report = _Reporter(on_progress)
        checkpoint = _checkpoints(cancel_token or CancellationToken(), report)
        stage = Stage.UPLOADING
        url: str | None = None

        try:
            stage = checkpoint(Stage.UPLOADING)
            url = await self.storage.upload(user_id, file_path)

            raw_transcript = None
            caption = None
            if kind is ContentKind.VOICE:
                stage = checkpoint(Stage.TRANSCRIBING)
                if self.transcriber is None:
                    raise ValidationError("No transcription provider configured")
                source = await self.transcriber.transcribe(url)
                raw_transcript = source.text
            else:
                stage = checkpoint(Stage.ANALYZING)
                if self.captioner is None:
                    raise ValidationError("No captioning provider configured")
                source = await self.captioner.caption(url)
                caption = source.text
            if not source.text.strip():
                raise ProviderError("Provider returned no text", reason="malformed_response")

            stage = checkpoint(Stage.SUMMARIZING)
            summary = await self.summarizer.summarize(source.text)
            if not summary.text.strip():
                raise ProviderError("Summarizer returned no text", reason="malformed_response")

            stage = checkpoint(Stage.EXTRACTING_ENTITIES)
            now = self._clock()
            date_times, locations = self._extract(summary, now)

            stage = checkpoint(Stage.RESOLVING_LOCATIONS)
            locations = await self._resolve_locations(locations)

            stage = checkpoint(Stage.FINALIZING)
            result = SummarizationPipelineResult(
                kind=kind,
                original_content_url=url,
                summarized_text=summary.text.strip(),
                date_times=date_times,
                locations=locations,
                raw_transcript=raw_transcript,
                caption=caption,
                provider_confidence=summary.confidence,
                confidence_score=self.combine_confidence(summary.confidence, date_times, locations),
                tokens_cost=self.cost_of(kind),
                completed_at=self._clock(),
            )
        except PipelineCancelled as e:
            logger.info("Summarization for %s cancelled before %s", user_id, e.stage)
            report(Stage.ERROR, "Cancelled")
            await self._release(url)
            raise
        except asyncio.CancelledError:
            await self._release(url)
            raise
        except Exception as e:
            logger.error("Summarization for %s failed at %s: %s", user_id, stage.value, e)
            report(Stage.ERROR, str(e))
            await self._release(url)
            raise PipelineError(stage.value, e) from e

        report(Stage.COMPLETE)
        logger.info(
            "Summarized %s for %s: %d date(s), %d location(s), confidence %.2f",
            kind.value,
            user_id,
            len(result.date_times),
            len(result.locations),
            result.confidence_score,
        )
        return result

    async def summarize_text(
        self,
        text: str,
        user_id: str,
        on_progress: ProgressSink | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SummarizationPipelineResult:
        """Summarize a typed note. Nothing is uploaded; the input is kept as the transcript.

        Failures and cancellation behave as in ``summarize``.
        """
        if not text.strip():
            raise ValidationError("Nothing to summarize")
        report = _Reporter(on_progress)
        checkpoint = _checkpoints(cancel_token or CancellationToken(), report)
        stage = Stage.SUMMARIZING

        try:
            stage = checkpoint(Stage.SUMMARIZING)
            summary = await self.summarizer.summarize(text)
            if not summary.text.strip():
                raise ProviderError("Summarizer returned no text", reason="malformed_response")

            stage = checkpoint(Stage.EXTRACTING_ENTITIES)
            date_times, locations = self._extract(summary, self._clock())

            stage = checkpoint(Stage.RESOLVING_LOCATIONS)
            locations = await self._resolve_locations(locations)

            stage = checkpoint(Stage.FINALIZING)
            result = SummarizationPipelineResult(
                kind=ContentKind.TEXT,
                original_content_url="",
                summarized_text=summary.text.strip(),
                date_times=date_times,
                locations=locations,
                raw_transcript=text,
                provider_confidence=summary.confidence,
                confidence_score=self.combine_confidence(summary.confidence, date_times, locations),
                tokens_cost=self.cost_of(ContentKind.TEXT),
                completed_at=self._clock(),
            )
        except PipelineCancelled as e:
            logger.info("Text summarization for %s cancelled before %s", user_id, e.stage)
            report(Stage.ERROR, "Cancelled")
            raise
        except Exception as e:
            logger.error("Text summarization for %s failed at %s: %s", user_id, stage.value, e)
            report(Stage.ERROR, str(e))
            raise PipelineError(stage.value, e) from e

        report(Stage.COMPLETE)
        return result

    # ── Stages ───────────────────────────────────────────────

    def _extract(
        self, summary: TextResult, now: datetime
    ) -> tuple[list[DateTimeEntity], list[LocationEntity]]:
        extraction = self.extractor.extract(summary.text, now)
        date_times, locations = list(extraction.date_times), list(extraction.locations)
        if summary.structured:
            structured = self.extractor.parse_structured(summary.structured, now)
            date_times = _merge(date_times, structured.date_times)
            locations = _merge(locations, structured.locations)
        return date_times, locations

    async def _resolve_locations(self, locations: list[LocationEntity]) -> list[LocationEntity]:
        if self.geocoder is None or not self.config.auto_resolve_locations:
            return locations
        geocoder = self.geocoder
        return list(await asyncio.gather(*(self._resolve_one(geocoder, loc) for loc in locations)))

    async def _resolve_one(self, geocoder: Geocoder, location: LocationEntity) -> LocationEntity:
        if location.has_coordinates:
            return location
        try:
            found = await geocoder.geocode(location.original_text)
        except (GeocodeUnresolved, NetworkError, ProviderError) as e:
            logger.warning("Could not resolve '%s': %s", location.original_text, e)
            return replace(
                location,
                confidence=location.confidence * self.config.unresolved_confidence_factor,
            )
        return replace(
            location,
            latitude=found.latitude,
            longitude=found.longitude,
            resolved_address=found.resolved_address,
        )

    def combine_confidence(
        self,
        provider_confidence: float,
        date_times: list[DateTimeEntity],
        locations: list[LocationEntity],
    ) -> float:
        scores = [e.confidence for e in date_times] + [e.confidence for e in locations]
        if not scores:
            return clamp_unit(provider_confidence)
        weight = self.config.provider_confidence_weight
        mean = sum(scores) / len(scores)
        return clamp_unit(weight * provider_confidence + (1 - weight) * mean)

    async def _release(self, url: str | None) -> None:
        if url is None:
            return
        try:
            await self.storage.delete(url)
        except Exception as e:
            logger.warning("Failed to release uploaded content %s: %s", url, e)
