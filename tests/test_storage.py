from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from marketmind.errors import PersistenceError
from marketmind.services.storage import (
    InMemoryStorage,
    JsonFileStorage,
    RedisStorage,
    build_storage,
)
from marketmind.settings import Settings


@pytest.mark.asyncio
async def test_json_file_storage_round_trip(tmp_path) -> None:
    storage = JsonFileStorage(tmp_path / "nested" / "memory.json")
    assert await storage.load() is None

    await storage.save({"sessions": {"s1": {"session_id": "s1"}}})

    assert storage.path.exists()
    assert not storage.path.with_suffix(".json.tmp").exists()
    assert await storage.load() == {"sessions": {"s1": {"session_id": "s1"}}}


@pytest.mark.asyncio
async def test_json_file_storage_corrupt_file(tmp_path) -> None:
    path = tmp_path / "memory.json"
    path.write_text("{oops", encoding="utf-8")
    with pytest.raises(PersistenceError):
        await JsonFileStorage(path).load()


@pytest.mark.asyncio
async def test_in_memory_storage_rejects_unserializable() -> None:
    storage = InMemoryStorage()
    with pytest.raises(PersistenceError):
        await storage.save({"bad": object()})
    assert storage.payload is None


def _redis_storage(client: MagicMock) -> RedisStorage:
    storage = RedisStorage("redis://localhost:6379/0", "marketmind:test")
    storage._client = client
    return storage


@pytest.mark.asyncio
async def test_redis_storage_get_and_set() -> None:
    client = MagicMock()
    client.get = AsyncMock(return_value='{"sessions": {}}')
    client.set = AsyncMock(return_value=True)
    storage = _redis_storage(client)

    assert await storage.load() == {"sessions": {}}
    await storage.save({"sessions": {"s1": {}}})

    client.get.assert_awaited_once_with("marketmind:test")
    client.set.assert_awaited_once_with("marketmind:test", '{"sessions": {"s1": {}}}')


@pytest.mark.asyncio
async def test_redis_storage_missing_key_and_errors() -> None:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    storage = _redis_storage(client)

    assert await storage.load() is None
    with pytest.raises(PersistenceError):
        await storage.save({})


@pytest.mark.asyncio
async def test_redis_storage_close() -> None:
    client = MagicMock()
    client.aclose = AsyncMock()
    storage = _redis_storage(client)
    await storage.close()
    client.aclose.assert_awaited_once()
    await storage.close()
    client.aclose.assert_awaited_once()


def test_build_storage_selects_backend(tmp_path) -> None:
    assert isinstance(build_storage(Settings(memory_backend="memory")), InMemoryStorage)

    file_storage = build_storage(
        Settings(memory_backend="file", memory_file_path=tmp_path / "m.json")
    )
    assert isinstance(file_storage, JsonFileStorage)
    assert file_storage.path == tmp_path / "m.json"

    assert isinstance(
        build_storage(Settings(memory_backend="redis", redis_url="redis://localhost:6379/0")),
        RedisStorage,
    )
    with pytest.raises(ValueError):
        build_storage(Settings(memory_backend="redis", redis_url=None))
