from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from scanflow.models import AnalysisStage, ConfirmationLevel, CorrectionItem, SourceMedium


class AnalyzeRequest(BaseModel):
    text: str = ""
    image_base64: str | None = None
    ocr_quality: float | None = Field(default=None, ge=0, le=100)
    prefer_past: bool | None = None
    now: datetime | None = None
    source: SourceMedium | None = None


class ResolveDatesRequest(BaseModel):
    text: str
    now: datetime | None = None
    prefer_past: bool | None = None


class ResolveDatesResponse(BaseModel):
    text: str


class ConfidenceRequest(BaseModel):
    record: dict[str, Any]
    ocr_quality: float = Field(default=100.0, ge=0, le=100)
    stage: AnalysisStage = AnalysisStage.TEXT


class FeedbackRequest(BaseModel):
    original: dict[str, Any] | None = None
    final: dict[str, Any]
    confirmation_level: ConfirmationLevel = ConfirmationLevel.EDITED_CONFIRM
    raw_text: str | None = None
    session_id: str | None = None


class CorrectionsRequest(BaseModel):
    session_id: str | None = None
    image_base64: str | None = None
    source: str | None = None
    corrections: list[CorrectionItem] = Field(default_factory=list)
