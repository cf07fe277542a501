import asyncio
from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from scanflow.app import app
from scanflow.errors import StoreError
from scanflow.integration.store import USER_EDITS_TABLE
from scanflow.models import StorePaymentRecord
from scanflow.services.analysis import AnalysisPipeline
from scanflow.services.feedback import FeedbackService

client = TestClient(app)

TEXT = "스타벅스 4,500원 결제 2026-01-10"


def _swap_state(values: dict[str, Any]) -> Generator[None, None, None]:
    missing = object()
    originals = {name: getattr(app.state, name, missing) for name in values}
    for name, value in values.items():
        setattr(app.state, name, value)
    yield
    for name, original in originals.items():
        if original is missing:
            delattr(app.state, name)
        else:
            setattr(app.state, name, original)


@pytest.fixture
def mock_extractor() -> MagicMock:
    mock = MagicMock()
    mock.extract_from_text = AsyncMock(
        return_value=[StorePaymentRecord(merchant="스타벅스", amount=4500, date="2026-01-10", confidence=0.9)]
    )
    mock.extract_from_image = AsyncMock()
    return mock


@pytest.fixture
def pipeline(mock_extractor: MagicMock) -> Generator[AnalysisPipeline, None, None]:
    pipeline = AnalysisPipeline(
        mock_extractor, None, text_timeout=1.0, vision_timeout=0.05, confidence_threshold=0.6, prefer_past=False
    )
    yield from _swap_state({"pipeline": pipeline})


@pytest.fixture
def mock_store() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def feedback(mock_store: AsyncMock) -> Generator[FeedbackService, None, None]:
    service = FeedbackService(mock_store, promote_unknown_kind_change=True)
    yield from _swap_state({"feedback": service})


def test_analyze(pipeline: AnalysisPipeline) -> None:
    response = client.post("/analyze", json={"text": TEXT, "ocr_quality": 80, "source": "SCREENSHOT"})

    assert response.status_code == 200
    data = response.json()
    assert data["stage"] == "text"
    assert data["record"]["type"] == "STORE_PAYMENT"
    assert data["record"]["merchant"] == "스타벅스"
    assert data["record"]["source"] == "SCREENSHOT"
    assert data["record"]["confidence"] == pytest.approx(0.91)
    assert len(data["candidates"]) == 1
    assert data["session_id"]


def test_analyze_vision_timeout(pipeline: AnalysisPipeline, mock_extractor: MagicMock) -> None:
    async def slow_image(*args, **kwargs):
        await asyncio.sleep(1)

    mock_extractor.extract_from_text.return_value = []
    mock_extractor.extract_from_image.side_effect = slow_image

    response = client.post("/analyze", json={"text": TEXT, "image_base64": "aGVsbG8="})

    assert response.status_code == 504
    data = response.json()
    assert data["kind"] == "timeout"
    assert data["retryable"] is True
    assert data["stage"] == "vision"
    assert data["message"]


def test_analyze_rejects_bad_quality(pipeline: AnalysisPipeline) -> None:
    response = client.post("/analyze", json={"text": TEXT, "ocr_quality": 150})

    assert response.status_code == 422


def test_analyze_without_services() -> None:
    response = client.post("/analyze", json={"text": TEXT})

    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_resolve_dates(pipeline: AnalysisPipeline) -> None:
    response = client.post("/resolve-dates", json={"text": "어제 결제", "now": "2026-01-10T09:00:00"})

    assert response.status_code == 200
    assert response.json() == {"text": "2026-01-09 결제"}


def test_resolve_dates_prefer_past(pipeline: AnalysisPipeline) -> None:
    response = client.post(
        "/resolve-dates", json={"text": "12/31 어제 결제", "now": "2026-01-02T09:00:00", "prefer_past": True}
    )

    assert response.json() == {"text": "12/31 2025-12-30 결제"}


def test_confidence() -> None:
    response = client.post(
        "/confidence",
        json={
            "record": {"type": "STORE_PAYMENT", "merchant": "스타벅스", "amount": 4500, "date": "2026-01-10", "confidence": 0.9},
            "ocr_quality": 80,
            "stage": "text",
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["score"] == pytest.approx(0.91)
    assert set(data["breakdown"]) == {"ocr", "struct", "type", "consistency"}


def test_confidence_rejects_invalid_record() -> None:
    response = client.post("/confidence", json={"record": {"type": "BILL", "confidence": "high"}})

    assert response.status_code == 422


def test_feedback_runs_in_background(feedback: FeedbackService, mock_store: AsyncMock) -> None:
    response = client.post(
        "/feedback",
        json={
            "original": {"type": "STORE_PAYMENT", "merchant": "스타벅스", "amount": 4500, "confidence": 0.6},
            "final": {"type": "STORE_PAYMENT", "merchant": "스타벅스 강남점", "amount": 4500},
            "confirmation_level": "edited_confirm",
            "raw_text": "스타벅스 4,500원",
            "session_id": "s1",
        },
    )

    assert response.status_code == 202
    assert response.json() == {"status": "accepted"}
    table, row = mock_store.insert.await_args_list[0].args
    assert table == USER_EDITS_TABLE
    assert row["session_id"] == "s1"
    assert row["edited_fields"] == ["merchant"]


def test_feedback_without_original(feedback: FeedbackService, mock_store: AsyncMock) -> None:
    response = client.post("/feedback", json={"final": {"type": "BILL", "amount": 1000}})

    assert response.status_code == 202
    assert response.json()["status"] == "ignored"
    mock_store.insert.assert_not_awaited()


def test_corrections(feedback: FeedbackService, mock_store: AsyncMock) -> None:
    response = client.post(
        "/corrections",
        json={
            "session_id": "s1",
            "corrections": [
                {"item_index": 0, "original_data": {"amount": 4500}, "corrected_data": {"amount": 5000}},
                {"item_index": 1, "corrected_data": {"amount": 1200}, "was_selected": False},
            ],
        },
    )

    assert response.status_code == 200
    assert response.json() == {"status": "logged", "count": 2}


def test_corrections_store_failure(feedback: FeedbackService, mock_store: AsyncMock) -> None:
    mock_store.insert.side_effect = StoreError("down")

    response = client.post("/corrections", json={"corrections": [{"item_index": 0, "corrected_data": {}}]})

    assert response.status_code == 502


@pytest.fixture
def mock_fewshots() -> Generator[MagicMock, None, None]:
    mock = MagicMock()
    swap = _swap_state({"fewshots": mock})
    next(swap)
    yield mock
    next(swap, None)


def test_invalidate_fewshots(mock_fewshots: MagicMock) -> None:
    response = client.post("/fewshots/invalidate")

    assert response.status_code == 200
    assert response.json() == {"status": "invalidated"}
    mock_fewshots.invalidate.assert_called_once()


@pytest.fixture
def mock_service() -> Generator[MagicMock, None, None]:
    mock = MagicMock()
    mock.extractor.enabled = False
    mock.extractor.model = "gpt-4o-mini"
    mock.extractor.vision_model = "gpt-4o-mini"
    mock.pipeline.confidence_threshold = 0.6
    yield from _swap_state({"service": mock})


def test_status(mock_service: MagicMock) -> None:
    response = client.get("/status")

    assert response.status_code == 200
    data = response.json()
    assert data["extractor_enabled"] is False
    assert data["model"] == "gpt-4o-mini"
    assert data["confidence_threshold"] == 0.6
