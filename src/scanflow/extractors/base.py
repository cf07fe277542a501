from abc import ABC, abstractmethod

from scanflow.models import RecordBase


class Extractor(ABC):
    @abstractmethod
    async def extract_from_text(self, text: str) -> list[RecordBase]:
        """Return every candidate record found in the (date-resolved) text."""
        pass

    @abstractmethod
    async def extract_from_image(self, image_base64: str, text: str | None = None) -> RecordBase:
        """Return the single record shown in the image, ``UNKNOWN`` when unreadable."""
        pass
