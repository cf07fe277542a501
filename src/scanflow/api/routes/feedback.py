from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from scanflow.api.dependencies import get_feedback, get_fewshots
from scanflow.api.schemas import CorrectionsRequest, FeedbackRequest
from scanflow.errors import StoreError
from scanflow.extractors.fewshot import FewShotProvider
from scanflow.logger import get_logger
from scanflow.services.feedback import FeedbackService

logger = get_logger(__name__)

router = APIRouter()


@router.post("/feedback", status_code=202)
async def submit_feedback(
    req: FeedbackRequest,
    background_tasks: BackgroundTasks,
    feedback: Annotated[FeedbackService, Depends(get_feedback)],
) -> dict[str, str]:
    if req.original is None:
        return {"status": "ignored", "reason": "no original result"}

    background_tasks.add_task(
        feedback.process_user_feedback,
        req.original,
        req.final,
        req.confirmation_level,
        raw_text=req.raw_text,
        session_id=req.session_id,
    )
    return {"status": "accepted"}


@router.post("/corrections")
async def log_corrections(
    req: CorrectionsRequest,
    feedback: Annotated[FeedbackService, Depends(get_feedback)],
) -> dict[str, str | int]:
    try:
        count = await feedback.log_corrections(
            req.corrections,
            session_id=req.session_id,
            image_base64=req.image_base64,
            source=req.source,
        )
    except StoreError as e:
        logger.error("[STORE] Could not log corrections: %s", e)
        raise HTTPException(status_code=502, detail="Could not save corrections") from e
    return {"status": "logged", "count": count}


@router.post("/fewshots/invalidate")
async def invalidate_fewshots(
    fewshots: Annotated[FewShotProvider, Depends(get_fewshots)],
) -> dict[str, str]:
    fewshots.invalidate()
    return {"status": "invalidated"}
