from fastapi import HTTPException, Request

from scanflow.extractors.fewshot import FewShotProvider
from scanflow.manager import ScanService
from scanflow.services.analysis import AnalysisPipeline
from scanflow.services.feedback import FeedbackService


def get_service(request: Request) -> ScanService:
    service = getattr(request.app.state, "service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_pipeline(request: Request) -> AnalysisPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return pipeline


def get_feedback(request: Request) -> FeedbackService:
    feedback = getattr(request.app.state, "feedback", None)
    if not feedback:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return feedback


def get_fewshots(request: Request) -> FewShotProvider:
    fewshots = getattr(request.app.state, "fewshots", None)
    if not fewshots:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return fewshots
