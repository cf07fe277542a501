from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from scanflow.api.dependencies import get_pipeline, get_service
from scanflow.api.schemas import AnalyzeRequest, ConfidenceRequest, ResolveDatesRequest, ResolveDatesResponse
from scanflow.domain.relative_dates import resolve_relative_dates
from scanflow.errors import ErrorKind, ExtractionError
from scanflow.logger import get_logger
from scanflow.manager import ScanService
from scanflow.models import AnalysisOutcome, ConfidenceResult, parse_candidate
from scanflow.services.analysis import AnalysisPipeline
from scanflow.services.confidence import score

logger = get_logger(__name__)

router = APIRouter()

FAILURE_STATUS = {
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK: 502,
    ErrorKind.AUTH: 503,
    ErrorKind.QUOTA: 503,
}


def failure_response(error: ExtractionError) -> JSONResponse:
    report = error.to_report()
    return JSONResponse(status_code=FAILURE_STATUS.get(error.kind, 500), content=report.model_dump(mode="json"))


@router.post("/analyze", response_model=AnalysisOutcome)
async def analyze(
    req: AnalyzeRequest,
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
):
    try:
        return await pipeline.analyze(
            req.text,
            image_base64=req.image_base64,
            ocr_quality=req.ocr_quality,
            now=req.now,
            prefer_past=req.prefer_past,
            source=req.source,
        )
    except ExtractionError as e:
        logger.warning("[PIPELINE] Analysis failed at %s: %s", e.stage, e.kind.value)
        return failure_response(e)


@router.post("/resolve-dates", response_model=ResolveDatesResponse)
async def resolve_dates(
    req: ResolveDatesRequest,
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
) -> ResolveDatesResponse:
    prefer_past = pipeline.prefer_past if req.prefer_past is None else req.prefer_past
    return ResolveDatesResponse(text=resolve_relative_dates(req.text, now=req.now, prefer_past=prefer_past))


@router.post("/confidence", response_model=ConfidenceResult)
async def confidence(req: ConfidenceRequest) -> ConfidenceResult:
    try:
        record = parse_candidate(req.record)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False)) from e
    return score(record, req.ocr_quality, req.stage)


@router.get("/status")
async def status(service: Annotated[ScanService, Depends(get_service)]) -> dict[str, str | bool | float]:
    return {
        "extractor_enabled": service.extractor.enabled,
        "model": service.extractor.model,
        "vision_model": service.extractor.vision_model,
        "store": type(service.store).__name__,
        "confidence_threshold": service.pipeline.confidence_threshold,
    }
