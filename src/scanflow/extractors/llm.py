import json
import os
import re
from time import monotonic
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from scanflow.core.settings import DEFAULT_OPENAI_MODEL, vision_cache_ttl
from scanflow.domain.heuristics import guess_expiry_date
from scanflow.errors import ErrorKind, ExtractionError, classify_exception
from scanflow.extractors.base import Extractor
from scanflow.extractors.fewshot import FewShotProvider
from scanflow.extractors.prompts import (
    TEXT_USER_PROMPT,
    VISION_SYSTEM_PROMPT,
    VISION_USER_PROMPT,
    build_text_system_prompt,
)
from scanflow.integration.image_hash import get_image_hash
from scanflow.logger import get_logger
from scanflow.models import DocumentKind, RecordBase, parse_candidate

logger = get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
VISION_CACHE_MAX_ENTRIES = 128


class LLMExtractor(Extractor):
    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
        base_url: str | None = None,
        fewshots: FewShotProvider | None = None,
        client: AsyncOpenAI | None = None,
        cache_ttl: float | None = None,
        cache_size: int = VISION_CACHE_MAX_ENTRIES,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL
        self.vision_model = vision_model or os.getenv("OPENAI_VISION_MODEL") or self.model
        self.base_url = base_url or os.getenv("OPENAI_BASE_URL") or None
        self.fewshots = fewshots
        self.client = client
        if self.client is None and self.api_key:
            self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        self.cache_ttl = max(0.0, vision_cache_ttl() if cache_ttl is None else cache_ttl)
        self.cache_size = max(1, cache_size)
        self._vision_cache: dict[str, tuple[float, RecordBase]] = {}

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _require_client(self, stage: str) -> AsyncOpenAI:
        if self.client is None:
            raise ExtractionError(ErrorKind.AUTH, "OpenAI API key is missing", stage=stage)
        return self.client

    @staticmethod
    def _message_content(response: Any, stage: str) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            content = None
        if not content:
            raise ExtractionError(ErrorKind.PARSING, "Empty response from extraction service", stage=stage)
        return content

    @staticmethod
    def _load_json(content: str, stage: str) -> Any:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            # Vision answers sometimes wrap the object in prose or code fences.
            match = _JSON_OBJECT.search(content)
            if match:
                try:
                    return json.loads(match.group(0))
                except json.JSONDecodeError:
                    pass
            raise ExtractionError(
                ErrorKind.PARSING, f"Response is not valid JSON: {e}", stage=stage, original_error=e
            ) from e

    @staticmethod
    def _parse_transactions(payload: Any, stage: str) -> list[RecordBase]:
        items = payload.get("transactions") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise ExtractionError(ErrorKind.PARSING, "Response has no 'transactions' list", stage=stage)

        records = []
        for index, item in enumerate(items):
            if not isinstance(item, dict) or "type" not in item or "confidence" not in item:
                raise ExtractionError(
                    ErrorKind.PARSING,
                    f"Transaction {index} is missing 'type' or 'confidence'",
                    stage=stage,
                )
            try:
                records.append(parse_candidate(item))
            except ValidationError as e:
                raise ExtractionError(
                    ErrorKind.PARSING, f"Transaction {index} failed validation", stage=stage, original_error=e
                ) from e
        return records

    @staticmethod
    def _fill_gifticon_expiry(record: RecordBase, fallback_expiry: str | None) -> RecordBase:
        if record.kind != DocumentKind.GIFTICON or not fallback_expiry:
            return record
        if getattr(record, "expiry_date", None):
            return record
        return record.model_copy(update={"expiry_date": fallback_expiry})

    async def extract_from_text(self, text: str) -> list[RecordBase]:
        client = self._require_client("text")
        few_shot_section = await self.fewshots.prompt_section() if self.fewshots else ""

        logger.debug("[TEXT] Requesting extraction (model=%s, length=%d).", self.model, len(text))
        try:
            response = await client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                temperature=0.0,
                messages=[
                    {"role": "system", "content": build_text_system_prompt(few_shot_section)},
                    {"role": "user", "content": TEXT_USER_PROMPT.format(text=text)},
                ],
            )
        except openai.OpenAIError as e:
            raise classify_exception(e, stage="text") from e

        payload = self._load_json(self._message_content(response, "text"), "text")
        records = self._parse_transactions(payload, "text")

        fallback_expiry = guess_expiry_date(text)
        records = [
            self._fill_gifticon_expiry(record, fallback_expiry).model_copy(update={"raw_text": text})
            for record in records
        ]
        logger.info("[TEXT] Extracted %d candidate(s): %s", len(records), [record.type for record in records])
        return records

    def _get_cached(self, image_hash: str | None) -> RecordBase | None:
        if not image_hash or self.cache_ttl <= 0:
            return None
        entry = self._vision_cache.get(image_hash)
        if entry is None:
            return None
        expires_at, record = entry
        if monotonic() >= expires_at:
            self._vision_cache.pop(image_hash, None)
            return None
        return record

    def _set_cached(self, image_hash: str | None, record: RecordBase) -> None:
        if not image_hash or self.cache_ttl <= 0:
            return
        now = monotonic()
        for key in [key for key, (expires_at, _) in self._vision_cache.items() if now >= expires_at]:
            del self._vision_cache[key]
        self._vision_cache.pop(image_hash, None)
        self._vision_cache[image_hash] = (now + self.cache_ttl, record)
        # Insertion order doubles as age order.
        while len(self._vision_cache) > self.cache_size:
            del self._vision_cache[next(iter(self._vision_cache))]

    async def extract_from_image(self, image_base64: str, text: str | None = None) -> RecordBase:
        image_hash = get_image_hash(image_base64)
        cached = self._get_cached(image_hash)
        if cached is not None:
            logger.info("[VISION] Cache hit for image %s.", image_hash[:12] if image_hash else None)
            return cached.model_copy(deep=True)

        client = self._require_client("vision")
        image_url = image_base64 if image_base64.startswith("data:") else f"data:image/jpeg;base64,{image_base64}"
        user_text = VISION_USER_PROMPT
        if text:
            user_text = f"{VISION_USER_PROMPT}\n\nOCR text (may be noisy):\n{text}"

        logger.debug("[VISION] Requesting extraction (model=%s).", self.vision_model)
        try:
            response = await client.chat.completions.create(
                model=self.vision_model,
                response_format={"type": "json_object"},
                temperature=0.0,
                max_tokens=1000,
                messages=[
                    {"role": "system", "content": VISION_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": user_text},
                            {"type": "image_url", "image_url": {"url": image_url}},
                        ],
                    },
                ],
            )
        except openai.OpenAIError as e:
            raise classify_exception(e, stage="vision") from e

        payload = self._load_json(self._message_content(response, "vision"), "vision")
        if isinstance(payload, dict) and isinstance(payload.get("transactions"), list):
            items = payload["transactions"]
            payload = items[0] if items else {"type": "UNKNOWN"}
        if not isinstance(payload, dict):
            raise ExtractionError(ErrorKind.PARSING, "Vision response is not an object", stage="vision")

        try:
            record = parse_candidate(payload)
        except ValidationError as e:
            raise ExtractionError(ErrorKind.PARSING, "Vision result failed validation", stage="vision", original_error=e) from e

        if text:
            record = self._fill_gifticon_expiry(record, guess_expiry_date(text))
        record = record.model_copy(update={"raw_text": text or None})
        self._set_cached(image_hash, record)
        logger.info("[VISION] Extracted %s.", record.type)
        return record
