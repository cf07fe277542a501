import json
from pathlib import Path

import httpx
import pytest

from scanflow.errors import StoreError
from scanflow.integration.store import FEWSHOTS_TABLE, USER_EDITS_TABLE, JsonRecordStore, RestRecordStore


def _rest_store(handler) -> RestRecordStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RestRecordStore(base_url="https://db.example.com/", api_key="service-key", client=client)


@pytest.mark.anyio
async def test_rest_query_builds_filters_and_ordering() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 1, "input_text": "x"}])

    store = _rest_store(handler)
    rows = await store.query(FEWSHOTS_TABLE, {"is_active": True}, order_by="priority", descending=True, limit=15)

    assert rows == [{"id": 1, "input_text": "x"}]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/approved_fewshots"
    assert request.url.params["is_active"] == "eq.true"
    assert request.url.params["order"] == "priority.desc"
    assert request.url.params["limit"] == "15"
    assert request.url.params["select"] == "*"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"
    await store.aclose()


@pytest.mark.anyio
async def test_rest_insert_sends_rows_and_prefers_representation() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json=[{"id": "a", "session_id": "s1"}])

    store = _rest_store(handler)
    stored = await store.insert(USER_EDITS_TABLE, {"session_id": "s1"})

    assert stored == [{"id": "a", "session_id": "s1"}]
    assert seen[0].method == "POST"
    assert seen[0].headers["Prefer"] == "return=representation"
    assert json.loads(seen[0].content) == [{"session_id": "s1"}]


@pytest.mark.anyio
async def test_rest_update_and_delete() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PATCH":
            assert request.url.params["id"] == "eq.7"
            return httpx.Response(200, json=[{"id": 7, "is_active": True}])
        return httpx.Response(200, json=[{"id": 7}, {"id": 8}])

    store = _rest_store(handler)

    assert await store.update(FEWSHOTS_TABLE, {"id": 7}, {"is_active": True}) == [{"id": 7, "is_active": True}]
    assert await store.delete(FEWSHOTS_TABLE, {"is_active": False}) == 2


@pytest.mark.anyio
async def test_rest_error_status_raises_store_error() -> None:
    store = _rest_store(lambda request: httpx.Response(401, text="invalid key"))

    with pytest.raises(StoreError) as info:
        await store.query(FEWSHOTS_TABLE)

    assert "401" in str(info.value)
    assert isinstance(info.value.original_error, httpx.HTTPStatusError)


@pytest.mark.anyio
async def test_rest_transport_error_raises_store_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    store = _rest_store(handler)

    with pytest.raises(StoreError):
        await store.insert(USER_EDITS_TABLE, [{"a": 1}])


@pytest.mark.anyio
async def test_rest_without_url_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STORE_URL", raising=False)
    store = RestRecordStore(api_key="service-key")

    with pytest.raises(StoreError):
        await store.query(FEWSHOTS_TABLE)


@pytest.mark.anyio
async def test_json_store_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    store = JsonRecordStore(str(path))

    stored = await store.insert(FEWSHOTS_TABLE, [{"input_text": "a", "priority": 1}, {"input_text": "b", "priority": 3}])
    assert all("id" in row for row in stored)

    reloaded = JsonRecordStore(str(path))
    rows = await reloaded.query(FEWSHOTS_TABLE, order_by="priority", descending=True)
    assert [row["input_text"] for row in rows] == ["b", "a"]


@pytest.mark.anyio
async def test_json_store_query_filters_orders_and_limits(tmp_path: Path) -> None:
    store = JsonRecordStore(str(tmp_path / "records.json"))
    await store.insert(
        FEWSHOTS_TABLE,
        [
            {"input_text": "a", "priority": 1, "is_active": True},
            {"input_text": "b", "priority": None, "is_active": True},
            {"input_text": "c", "priority": 5, "is_active": True},
            {"input_text": "d", "priority": 9, "is_active": False},
        ],
    )

    rows = await store.query(FEWSHOTS_TABLE, {"is_active": True}, order_by="priority", descending=True)
    assert [row["input_text"] for row in rows] == ["c", "a", "b"]

    limited = await store.query(FEWSHOTS_TABLE, {"is_active": True}, order_by="priority", limit=1)
    assert [row["input_text"] for row in limited] == ["a"]


@pytest.mark.anyio
async def test_json_store_update_and_delete(tmp_path: Path) -> None:
    store = JsonRecordStore(str(tmp_path / "records.json"))
    await store.insert(FEWSHOTS_TABLE, [{"input_text": "a", "is_active": False}, {"input_text": "b", "is_active": False}])

    updated = await store.update(FEWSHOTS_TABLE, {"input_text": "a"}, {"is_active": True})
    assert len(updated) == 1
    assert [row["input_text"] for row in await store.query(FEWSHOTS_TABLE, {"is_active": True})] == ["a"]

    assert await store.delete(FEWSHOTS_TABLE, {"is_active": False}) == 1
    assert await store.query("missing_table") == []


@pytest.mark.anyio
async def test_json_store_failed_write_leaves_memory_untouched(tmp_path: Path) -> None:
    store = JsonRecordStore(str(tmp_path / "records.json"))
    await store.insert(FEWSHOTS_TABLE, {"input_text": "a", "is_active": False})
    before = json.loads(json.dumps(store.tables))
    store.data_path = str(tmp_path / "missing_dir" / "records.json")

    with pytest.raises(StoreError):
        await store.insert(USER_EDITS_TABLE, {"session_id": "s1"})
    with pytest.raises(StoreError):
        await store.update(FEWSHOTS_TABLE, {"input_text": "a"}, {"is_active": True})
    with pytest.raises(StoreError):
        await store.delete(FEWSHOTS_TABLE, {"input_text": "a"})

    assert store.tables == before
    assert await store.query(USER_EDITS_TABLE) == []


def test_json_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonRecordStore(str(path))

    assert store.tables == {}
