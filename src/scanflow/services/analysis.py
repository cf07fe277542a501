import asyncio
from datetime import date, datetime
from time import perf_counter

from scanflow.core import settings
from scanflow.domain.heuristics import estimate_ocr_quality, is_worth_vision, needs_vision_fallback, regex_fallback
from scanflow.domain.relative_dates import resolve_relative_dates
from scanflow.errors import ErrorKind, classify_exception
from scanflow.extractors.base import Extractor
from scanflow.integration.image_hash import get_image_hash
from scanflow.integration.store import RecordStore
from scanflow.logger import get_logger
from scanflow.models import AnalysisOutcome, AnalysisStage, DocumentKind, RecordBase, SourceMedium
from scanflow.services.confidence import apply_confidence, score
from scanflow.services.pipeline_log import PipelineLogger

logger = get_logger(__name__)


def select_best(records: list[RecordBase]) -> RecordBase | None:
    """Highest-scoring candidate, preferring any known kind over ``UNKNOWN``."""
    if not records:
        return None
    return max(records, key=lambda record: (record.kind != DocumentKind.UNKNOWN, record.confidence))


class AnalysisPipeline:
    """Text extraction, then vision when the text result is weak, then the regex fallback."""

    def __init__(
        self,
        extractor: Extractor,
        store: RecordStore | None = None,
        *,
        text_timeout: float | None = None,
        vision_timeout: float | None = None,
        confidence_threshold: float | None = None,
        prefer_past: bool | None = None,
    ):
        self.extractor = extractor
        self.store = store
        self.text_timeout = settings.text_stage_timeout() if text_timeout is None else text_timeout
        self.vision_timeout = settings.vision_stage_timeout() if vision_timeout is None else vision_timeout
        self.confidence_threshold = (
            settings.confidence_threshold() if confidence_threshold is None else confidence_threshold
        )
        self.prefer_past = settings.prefer_past_dates() if prefer_past is None else prefer_past

    async def _text_stage(
        self,
        text: str,
        ocr_quality: float,
        pipeline_logger: PipelineLogger,
        source: SourceMedium | None,
    ) -> tuple[RecordBase | None, list[RecordBase], AnalysisStage | None]:
        if not text.strip():
            pipeline_logger.log_stage("text", success=False, fallback_reason="no_text")
            return None, [], None

        start = perf_counter()
        try:
            records = await asyncio.wait_for(self.extractor.extract_from_text(text), timeout=self.text_timeout)
        except Exception as e:
            error = classify_exception(e, stage="text")
            elapsed = perf_counter() - start
            pipeline_logger.log_stage("text", success=False, fallback_reason=error.kind.value, elapsed=elapsed)
            if error.kind == ErrorKind.PARSING:
                logger.warning("[TEXT] Unparseable response, using regex fallback: %s", error)
                fallback = regex_fallback(text, source)
                pipeline_logger.log_stage(
                    "regex",
                    success=True,
                    fallback_reason=ErrorKind.PARSING.value,
                    doc_type=fallback.type,
                    confidence=fallback.confidence,
                )
                return fallback, [fallback], AnalysisStage.REGEX
            logger.warning("[TEXT] Stage failed (%s): %s", error.kind.value, error)
            return None, [], None

        elapsed = perf_counter() - start
        if not records:
            pipeline_logger.log_stage("text", success=False, fallback_reason="no_valid_results", elapsed=elapsed)
            return None, [], None

        scored = []
        for record in records:
            if source is not None and record.source is None:
                record = record.model_copy(update={"source": source})
            scored.append(apply_confidence(record, score(record, ocr_quality, AnalysisStage.TEXT)))

        best = select_best(scored)
        pipeline_logger.log_stage(
            "text",
            success=not needs_vision_fallback(best, self.confidence_threshold),
            fallback_reason=None if best.confidence >= self.confidence_threshold else "low_confidence",
            doc_type=best.type,
            confidence=best.confidence,
            elapsed=elapsed,
            metadata={"candidates": len(scored)},
        )
        return best, scored, AnalysisStage.TEXT

    async def _vision_stage(
        self,
        image_base64: str,
        text: str,
        pipeline_logger: PipelineLogger,
        source: SourceMedium | None,
    ) -> RecordBase | None:
        start = perf_counter()
        try:
            record = await asyncio.wait_for(
                self.extractor.extract_from_image(image_base64, text or None),
                timeout=self.vision_timeout,
            )
        except Exception as e:
            error = classify_exception(e, stage="vision")
            pipeline_logger.log_stage(
                "vision", success=False, fallback_reason=error.kind.value, elapsed=perf_counter() - start
            )
            if error.kind == ErrorKind.TIMEOUT:
                logger.error("[VISION] Timed out after %.1fs.", self.vision_timeout)
                raise error from e
            logger.warning("[VISION] Stage failed (%s): %s", error.kind.value, error)
            return None

        if source is not None and record.source is None:
            record = record.model_copy(update={"source": source})
        scored = apply_confidence(record, score(record, 100.0, AnalysisStage.VISION))
        pipeline_logger.log_stage(
            "vision",
            success=scored.kind != DocumentKind.UNKNOWN,
            fallback_reason="unknown_result" if scored.kind == DocumentKind.UNKNOWN else None,
            doc_type=scored.type,
            confidence=scored.confidence,
            elapsed=perf_counter() - start,
        )
        return scored

    async def _run(
        self,
        raw_text: str,
        image_base64: str | None,
        ocr_quality: float | None,
        pipeline_logger: PipelineLogger,
        now: datetime | date | None,
        prefer_past: bool,
        source: SourceMedium | None,
    ) -> AnalysisOutcome:
        pipeline_logger.start_session(get_image_hash(image_base64), len(raw_text))
        text = resolve_relative_dates(raw_text, now=now, prefer_past=prefer_past)
        quality = estimate_ocr_quality(text) if ocr_quality is None else ocr_quality

        text_result, candidates, text_stage = await self._text_stage(text, quality, pipeline_logger, source)

        if (
            image_base64
            and needs_vision_fallback(text_result, self.confidence_threshold)
            and is_worth_vision(raw_text)
        ):
            logger.info(
                "[PIPELINE] Text result %s is weak, trying vision.",
                f"{text_result.type}@{text_result.confidence}" if text_result else None,
            )
            vision_result = await self._vision_stage(image_base64, text, pipeline_logger, source)
            if vision_result is not None:
                return AnalysisOutcome(
                    record=vision_result,
                    candidates=[vision_result],
                    stage=AnalysisStage.VISION,
                    session_id=pipeline_logger.session_id,
                )

        if text_result is not None and text_stage is not None:
            return AnalysisOutcome(
                record=text_result,
                candidates=candidates,
                stage=text_stage,
                session_id=pipeline_logger.session_id,
            )

        fallback = regex_fallback(text, source)
        pipeline_logger.log_stage(
            "regex",
            success=True,
            fallback_reason="no_result",
            doc_type=fallback.type,
            confidence=fallback.confidence,
        )
        return AnalysisOutcome(
            record=fallback,
            candidates=[fallback],
            stage=AnalysisStage.REGEX,
            session_id=pipeline_logger.session_id,
        )

    async def analyze(
        self,
        raw_text: str | None,
        *,
        image_base64: str | None = None,
        ocr_quality: float | None = None,
        pipeline_logger: PipelineLogger | None = None,
        now: datetime | date | None = None,
        prefer_past: bool | None = None,
        source: SourceMedium | None = None,
    ) -> AnalysisOutcome:
        """Run one analysis request and always return a record.

        Parsing failures of the text stage become a regex fallback record.
        A vision timeout is raised as ``ExtractionError(kind=TIMEOUT)``; every
        other stage failure is logged and degrades to the next tier. When no
        ``pipeline_logger`` is passed, one is created and flushed here.
        """
        owns_logger = pipeline_logger is None
        plog = pipeline_logger or PipelineLogger(self.store)
        try:
            return await self._run(
                raw_text or "",
                image_base64,
                ocr_quality,
                plog,
                now,
                self.prefer_past if prefer_past is None else prefer_past,
                source,
            )
        finally:
            if owns_logger:
                await plog.flush()
