import os

from scanflow.core import settings
from scanflow.extractors.fewshot import FewShotProvider
from scanflow.extractors.llm import LLMExtractor
from scanflow.integration.store import JsonRecordStore, RecordStore, RestRecordStore
from scanflow.logger import get_logger
from scanflow.services.analysis import AnalysisPipeline
from scanflow.services.feedback import FeedbackService

logger = get_logger(__name__)


def build_store(data_dir: str = ".") -> RecordStore:
    store_url = os.getenv("STORE_URL")
    if store_url:
        logger.info(f"Record store: REST at {store_url}")
        return RestRecordStore(base_url=store_url, api_key=os.getenv("STORE_KEY"))
    path = os.path.join(data_dir, "records.json")
    logger.info(f"Record store: local JSON file {path}")
    return JsonRecordStore(data_path=path)


class ScanService:
    def __init__(
        self,
        data_dir: str = ".",
        store: RecordStore | None = None,
        extractor: LLMExtractor | None = None,
    ):
        self.store = store or build_store(data_dir)
        self.fewshots = FewShotProvider(self.store)

        if extractor is None:
            extractor = LLMExtractor(fewshots=self.fewshots)
        self.extractor = extractor
        if self.extractor.enabled:
            logger.info(
                f"LLM extractor enabled: model={self.extractor.model}, "
                f"vision_model={self.extractor.vision_model}, base_url={self.extractor.base_url or 'default'}"
            )
        else:
            logger.warning("OPENAI_API_KEY not found. Extraction falls back to regex results only.")

        self.pipeline = AnalysisPipeline(self.extractor, self.store)
        self.feedback = FeedbackService(self.store)

    async def aclose(self) -> None:
        await self.store.aclose()


def create_service() -> ScanService:
    return ScanService(data_dir=settings.DATA_DIR)
