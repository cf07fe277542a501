import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from typing import Any

import httpx

from scanflow.errors import StoreError
from scanflow.logger import get_logger

logger = get_logger(__name__)

USER_EDITS_TABLE = "ocr_user_edits"
FEWSHOTS_TABLE = "approved_fewshots"
PIPELINE_LOGS_TABLE = "ocr_pipeline_logs"
CORRECTIONS_TABLE = "ocr_corrections"


class RecordStore(ABC):
    """Generic async table store used for logs, corrections and few-shot examples."""

    @abstractmethod
    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def update(self, table: str, match: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, table: str, match: dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def query(
        self,
        table: str,
        match: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        pass

    async def aclose(self) -> None:
        return None


def _as_rows(rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(rows, dict):
        return [rows]
    return list(rows)


class RestRecordStore(RecordStore):
    """PostgREST-style store: one endpoint per table under ``{base_url}/rest/v1``."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = (base_url or os.getenv("STORE_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("STORE_KEY")
        self.headers = {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self.timeout = timeout
        self._client = client
        self._client_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    @staticmethod
    def _filters(match: dict[str, Any] | None) -> dict[str, str]:
        params: dict[str, str] = {}
        for key, value in (match or {}).items():
            if isinstance(value, bool):
                value = "true" if value else "false"
            params[key] = f"eq.{value}"
        return params

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> Any:
        if not self.base_url:
            raise StoreError("Record store URL is not configured")
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        client = await self._get_client()
        try:
            response = await client.request(method, self._url(table), params=params, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {table} failed with status {e.response.status_code}: {e.response.text[:200]}",
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {table} failed: {e}", original_error=e) from e

        if not response.content:
            return []
        return response.json()

    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        data = await self._request("POST", table, payload=_as_rows(rows), prefer="return=representation")
        return data if isinstance(data, list) else []

    async def update(self, table: str, match: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._request(
            "PATCH", table, params=self._filters(match), payload=values, prefer="return=representation"
        )
        return data if isinstance(data, list) else []

    async def delete(self, table: str, match: dict[str, Any]) -> int:
        data = await self._request("DELETE", table, params=self._filters(match), prefer="return=representation")
        return len(data) if isinstance(data, list) else 0

    async def query(
        self,
        table: str,
        match: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = self._filters(match)
        params["select"] = "*"
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        data = await self._request("GET", table, params=params)
        return data if isinstance(data, list) else []


class JsonRecordStore(RecordStore):
    """Local store keeping every table in a single JSON file."""

    def __init__(self, data_path: str = "records.json"):
        self.data_path = data_path
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self.load()

    def load(self) -> None:
        if os.path.exists(self.data_path):
            try:
                with open(self.data_path, encoding="utf-8") as f:
                    self.tables = json.load(f)
            except json.JSONDecodeError:
                logger.warning("[STORE] Could not decode %s, starting empty.", self.data_path)
                self.tables = {}

    def save(self, tables: dict[str, list[dict[str, Any]]]) -> None:
        try:
            with open(self.data_path, "w", encoding="utf-8") as f:
                json.dump(tables, f, indent=2, ensure_ascii=False, default=str)
        except OSError as e:
            raise StoreError(f"Could not write {self.data_path}: {e}", original_error=e) from e

    def _commit(self, table: str, rows: list[dict[str, Any]]) -> None:
        # Memory only changes once the file write went through.
        tables = {**self.tables, table: rows}
        self.save(tables)
        self.tables = tables

    @staticmethod
    def _matches(row: dict[str, Any], match: dict[str, Any] | None) -> bool:
        return all(row.get(key) == value for key, value in (match or {}).items())

    async def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        async with self._lock:
            stored = [{"id": str(uuid.uuid4()), **row} for row in _as_rows(rows)]
            self._commit(table, [*self.tables.get(table, []), *stored])
            return stored

    async def update(self, table: str, match: dict[str, Any], values: dict[str, Any]) -> list[dict[str, Any]]:
        async with self._lock:
            rows = []
            updated = []
            for row in self.tables.get(table, []):
                if self._matches(row, match):
                    row = {**row, **values}
                    updated.append(row)
                rows.append(row)
            if updated:
                self._commit(table, rows)
            return updated

    async def delete(self, table: str, match: dict[str, Any]) -> int:
        async with self._lock:
            rows = self.tables.get(table, [])
            kept = [row for row in rows if not self._matches(row, match)]
            removed = len(rows) - len(kept)
            if removed:
                self._commit(table, kept)
            return removed

    async def query(
        self,
        table: str,
        match: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self.tables.get(table, []) if self._matches(row, match)]
        if order_by:
            ordered = sorted(
                (row for row in rows if row.get(order_by) is not None),
                key=lambda row: row[order_by],
                reverse=descending,
            )
            rows = ordered + [row for row in rows if row.get(order_by) is None]
        if limit is not None:
            rows = rows[:limit]
        return rows
