import base64
import json
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from scanflow.errors import ErrorKind, ExtractionError
from scanflow.extractors.llm import LLMExtractor
from scanflow.integration.image_hash import get_image_hash
from scanflow.models import GifticonRecord, StorePaymentRecord, UnknownRecord

IMAGE = "data:image/png;base64,aGVsbG8gd29ybGQ="


def _completion(content: str | None) -> MagicMock:
    completion = MagicMock()
    completion.choices[0].message.content = content
    return completion


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def extractor(mock_client: MagicMock) -> LLMExtractor:
    return LLMExtractor(api_key="sk-fake", model="gpt-4o-mini", client=mock_client, cache_ttl=600)


@pytest.mark.anyio
async def test_extract_from_text(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion(
        json.dumps(
            {
                "transactions": [
                    {"type": "STORE_PAYMENT", "confidence": 0.9, "merchant": "스타벅스", "amount": 4500, "date": "2026-01-10"},
                    {"type": "STORE_PAYMENT", "confidence": 0.8, "merchant": "GS25", "amount": "1,200원"},
                ]
            }
        )
    )

    records = await extractor.extract_from_text("스타벅스 4,500원\nGS25 1,200원")

    assert len(records) == 2
    assert all(isinstance(record, StorePaymentRecord) for record in records)
    assert records[1].amount == 1200
    assert records[0].raw_text == "스타벅스 4,500원\nGS25 1,200원"

    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "GS25 1,200원" in kwargs["messages"][1]["content"]


@pytest.mark.anyio
async def test_text_prompt_includes_few_shots(mock_client: MagicMock) -> None:
    fewshots = MagicMock()
    fewshots.prompt_section = AsyncMock(return_value="\nFEW-SHOT EXAMPLES:\nExample 1 (Type: BILL):\n")
    extractor = LLMExtractor(api_key="sk-fake", client=mock_client, fewshots=fewshots, cache_ttl=0)
    mock_client.chat.completions.create.return_value = _completion('{"transactions": []}')

    assert await extractor.extract_from_text("관리비 납부") == []

    system_prompt = mock_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert "Example 1 (Type: BILL)" in system_prompt


@pytest.mark.anyio
@pytest.mark.parametrize(
    "content",
    [
        None,
        "this is not json",
        '{"items": []}',
        '{"transactions": [{"type": "STORE_PAYMENT"}]}',
        '{"transactions": [{"type": "STORE_PAYMENT", "confidence": "sure"}]}',
    ],
)
async def test_malformed_text_response_is_parsing_error(
    extractor: LLMExtractor, mock_client: MagicMock, content: str | None
) -> None:
    mock_client.chat.completions.create.return_value = _completion(content)

    with pytest.raises(ExtractionError) as info:
        await extractor.extract_from_text("스타벅스 4,500원")

    assert info.value.kind == ErrorKind.PARSING
    assert info.value.stage == "text"


@pytest.mark.anyio
async def test_connection_error_is_network_error(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    mock_client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

    with pytest.raises(ExtractionError) as info:
        await extractor.extract_from_text("스타벅스 4,500원")

    assert info.value.kind == ErrorKind.NETWORK
    assert info.value.retryable


@pytest.mark.anyio
async def test_missing_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    extractor = LLMExtractor(cache_ttl=0)

    assert not extractor.enabled
    with pytest.raises(ExtractionError) as info:
        await extractor.extract_from_text("스타벅스 4,500원")
    assert info.value.kind == ErrorKind.AUTH


@pytest.mark.anyio
async def test_gifticon_expiry_is_filled_from_text(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion(
        '{"transactions": [{"type": "GIFTICON", "confidence": 0.9, "product_name": "아메리카노 T"}]}'
    )

    records = await extractor.extract_from_text("아메리카노 T\n유효기간 2026.12.31")

    assert isinstance(records[0], GifticonRecord)
    assert records[0].expiry_date == "2026-12-31"


@pytest.mark.anyio
async def test_extract_from_image_accepts_wrapped_json(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion(
        '```json\n{"type": "STORE_PAYMENT", "confidence": 0.85, "merchant": "이마트", "amount": 32000}\n```'
    )

    record = await extractor.extract_from_image(IMAGE)

    assert isinstance(record, StorePaymentRecord)
    assert record.merchant == "이마트"
    kwargs = mock_client.chat.completions.create.call_args.kwargs
    image_part = kwargs["messages"][1]["content"][1]
    assert image_part["image_url"]["url"] == IMAGE
    assert kwargs["max_tokens"] == 1000


@pytest.mark.anyio
async def test_extract_from_image_takes_first_transaction(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion(
        '{"transactions": [{"type": "BILL", "confidence": 0.7, "amount": 52000}, {"type": "SOCIAL"}]}'
    )

    record = await extractor.extract_from_image("aGVsbG8=")

    assert record.type == "BILL"
    url = mock_client.chat.completions.create.call_args.kwargs["messages"][1]["content"][1]["image_url"]["url"]
    assert url == "data:image/jpeg;base64,aGVsbG8="


@pytest.mark.anyio
async def test_empty_transaction_list_from_image_is_unknown(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion('{"transactions": []}')

    assert isinstance(await extractor.extract_from_image(IMAGE), UnknownRecord)


@pytest.mark.anyio
async def test_vision_results_are_cached_by_image(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion(
        '{"type": "STORE_PAYMENT", "confidence": 0.85, "merchant": "이마트"}'
    )

    first = await extractor.extract_from_image(IMAGE)
    second = await extractor.extract_from_image(IMAGE)

    assert mock_client.chat.completions.create.await_count == 1
    assert second == first
    assert second is not first


@pytest.mark.anyio
async def test_vision_cache_expires(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion('{"type": "BILL", "confidence": 0.7}')

    with patch("scanflow.extractors.llm.monotonic", return_value=1000.0):
        await extractor.extract_from_image(IMAGE)
    with patch("scanflow.extractors.llm.monotonic", return_value=1000.0 + 601):
        await extractor.extract_from_image(IMAGE)

    assert mock_client.chat.completions.create.await_count == 2


@pytest.mark.anyio
async def test_vision_cache_drops_expired_and_oldest_entries(mock_client: MagicMock) -> None:
    mock_client.chat.completions.create.return_value = _completion('{"type": "BILL", "confidence": 0.7}')
    extractor = LLMExtractor(api_key="sk-fake", client=mock_client, cache_ttl=10, cache_size=3)
    images = [base64.b64encode(f"image-{index}".encode()).decode() for index in range(5)]

    with patch("scanflow.extractors.llm.monotonic", return_value=1000.0):
        for image in images[:2]:
            await extractor.extract_from_image(image)
    with patch("scanflow.extractors.llm.monotonic", return_value=1011.0):
        await extractor.extract_from_image(images[2])

    assert len(extractor._vision_cache) == 1

    with patch("scanflow.extractors.llm.monotonic", return_value=1012.0):
        for image in (images[3], images[4], images[0]):
            await extractor.extract_from_image(image)

    assert list(extractor._vision_cache) == [get_image_hash(image) for image in (images[3], images[4], images[0])]


@pytest.mark.anyio
async def test_vision_rate_limit_is_quota(extractor: LLMExtractor, mock_client: MagicMock) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    mock_client.chat.completions.create.side_effect = openai.RateLimitError(
        "slow down", response=httpx.Response(429, request=request), body=None
    )

    with pytest.raises(ExtractionError) as info:
        await extractor.extract_from_image(IMAGE)

    assert info.value.kind == ErrorKind.QUOTA
    assert info.value.stage == "vision"


@pytest.fixture
def mock_openai_class() -> Generator[MagicMock, None, None]:
    with patch("scanflow.extractors.llm.AsyncOpenAI") as mock:
        yield mock


def test_client_is_built_from_api_key(mock_openai_class: MagicMock) -> None:
    extractor = LLMExtractor(api_key="sk-fake", base_url="http://localhost:1234/v1", cache_ttl=0)

    assert extractor.enabled
    mock_openai_class.assert_called_once_with(api_key="sk-fake", base_url="http://localhost:1234/v1")
