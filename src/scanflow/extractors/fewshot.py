import asyncio
import json
import random
from time import monotonic
from typing import Any

from pydantic import ValidationError
from rapidfuzz import fuzz, process

from scanflow.core import settings
from scanflow.errors import StoreError
from scanflow.extractors.prompts import STATIC_FEW_SHOTS
from scanflow.integration.store import FEWSHOTS_TABLE, RecordStore
from scanflow.logger import get_logger
from scanflow.models import OUTPUT_FIELDS, FewShotExample

logger = get_logger(__name__)

MAX_TOTAL_EXAMPLES = 20
DUPLICATE_SCORE = 92.0
PROMPT_INPUT_LIMIT = 300


def normalize_output(output: dict[str, Any] | str | None) -> dict[str, Any]:
    """Keep only fields a model answer may carry, dropping empty values."""
    if isinstance(output, str):
        try:
            output = json.loads(output)
        except json.JSONDecodeError:
            return {}
    if not isinstance(output, dict):
        return {}
    return {key: value for key, value in output.items() if key in OUTPUT_FIELDS and value not in (None, "", [])}


class FewShotProvider:
    def __init__(
        self,
        store: RecordStore | None = None,
        *,
        cache_ttl: float | None = None,
        fetch_timeout: float | None = None,
        max_dynamic: int | None = None,
        max_total: int = MAX_TOTAL_EXAMPLES,
        static_examples: list[dict[str, Any]] | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.cache_ttl = max(0.0, settings.fewshot_cache_ttl() if cache_ttl is None else cache_ttl)
        self.fetch_timeout = settings.fewshot_fetch_timeout() if fetch_timeout is None else fetch_timeout
        self.max_dynamic = settings.fewshot_max_dynamic() if max_dynamic is None else max_dynamic
        self.max_total = max_total
        self.static_examples = [
            FewShotExample(**example)
            for example in (STATIC_FEW_SHOTS if static_examples is None else static_examples)
        ]
        self._rng = rng or random.Random()
        self._cache: list[FewShotExample] | None = None
        self._cache_expires_at = 0.0
        self._cache_lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._cache = None
        self._cache_expires_at = 0.0
        logger.info("[FEWSHOT] Cache invalidated.")

    def _get_cached(self, *, allow_stale: bool = False) -> list[FewShotExample] | None:
        if self._cache is None:
            return None
        if allow_stale:
            return self._cache
        if self.cache_ttl <= 0 or monotonic() >= self._cache_expires_at:
            return None
        return self._cache

    @staticmethod
    def _parse_rows(rows: list[dict[str, Any]]) -> list[FewShotExample]:
        examples = []
        for row in rows:
            try:
                examples.append(
                    FewShotExample(
                        document_type=row.get("document_type") or "UNKNOWN",
                        input_text=row.get("input_text") or "",
                        output_json=normalize_output(row.get("output_json")),
                        priority=row.get("priority") or 1,
                        is_active=bool(row.get("is_active", True)),
                    )
                )
            except ValidationError as e:
                logger.warning("[FEWSHOT] Skipping malformed row: %s", e)
        return [example for example in examples if example.input_text and example.output_json]

    async def get_active_examples(self) -> list[FewShotExample]:
        """Active user-verified examples, highest priority first.

        A slow or failing store never blocks extraction: the stale cache is
        returned when present, otherwise an empty list.
        """
        cached = self._get_cached()
        if cached is not None:
            return cached[: self.max_dynamic]
        if self.store is None:
            return []

        async with self._cache_lock:
            cached = self._get_cached()
            if cached is not None:
                return cached[: self.max_dynamic]
            try:
                rows = await asyncio.wait_for(
                    self.store.query(
                        FEWSHOTS_TABLE,
                        {"is_active": True},
                        order_by="priority",
                        descending=True,
                        limit=self.max_dynamic,
                    ),
                    timeout=self.fetch_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("[FEWSHOT] Fetch timed out after %.1fs.", self.fetch_timeout)
                return self._get_cached(allow_stale=True) or []
            except StoreError as e:
                logger.warning("[FEWSHOT] Fetch failed: %s", e)
                return self._get_cached(allow_stale=True) or []

            examples = self._parse_rows(rows)
            self._cache = examples
            self._cache_expires_at = monotonic() + self.cache_ttl
            logger.debug("[FEWSHOT] Loaded %d active examples.", len(examples))
            return examples[: self.max_dynamic]

    def _static_pool(self, dynamic: list[FewShotExample]) -> list[FewShotExample]:
        if not dynamic:
            return list(self.static_examples)
        dynamic_inputs = [example.input_text for example in dynamic]
        pool = []
        for example in self.static_examples:
            match = process.extractOne(example.input_text, dynamic_inputs, scorer=fuzz.token_sort_ratio)
            if match and match[1] >= DUPLICATE_SCORE:
                continue
            pool.append(example)
        return pool

    async def build_examples(self) -> list[FewShotExample]:
        dynamic = (await self.get_active_examples())[: min(self.max_dynamic, self.max_total)]
        pool = self._static_pool(dynamic)
        room = max(0, self.max_total - len(dynamic))
        sampled = self._rng.sample(pool, min(room, len(pool)))
        merged = dynamic + sampled
        return [
            example.model_copy(update={"output_json": normalize_output(example.output_json)})
            for example in merged
        ]

    @staticmethod
    def format_for_prompt(examples: list[FewShotExample]) -> str:
        if not examples:
            return ""
        blocks = []
        for index, example in enumerate(examples, start=1):
            text = example.input_text
            if len(text) > PROMPT_INPUT_LIMIT:
                text = text[:PROMPT_INPUT_LIMIT] + "..."
            blocks.append(
                f"Example {index} (Type: {example.document_type}):\n"
                f"Input: {json.dumps(text, ensure_ascii=False)}\n"
                f"Output: {json.dumps(example.output_json, ensure_ascii=False)}"
            )
        return "\nFEW-SHOT EXAMPLES:\n" + "\n\n".join(blocks) + "\n"

    async def prompt_section(self) -> str:
        return self.format_for_prompt(await self.build_examples())
