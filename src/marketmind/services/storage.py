import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import PersistenceError
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]


class StorageBackend(Protocol):
    """Uniform read/write contract for the durable memory snapshot.

    `load` returns None when nothing was ever saved and raises
    PersistenceError when something exists but cannot be decoded.
    `save` overwrites the snapshot and raises PersistenceError on failure.
    """

    async def load(self) -> Snapshot | None: ...

    async def save(self, snapshot: Snapshot) -> None: ...

    async def close(self) -> None: ...


class InMemoryStorage:
    """Keeps the serialized snapshot in process. Used by tests and ephemeral runs."""

    def __init__(self, initial: str | None = None) -> None:
        self._payload = initial

    async def load(self) -> Snapshot | None:
        if self._payload is None:
            return None
        try:
            return json.loads(self._payload)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt in-memory snapshot: {e}") from e

    async def save(self, snapshot: Snapshot) -> None:
        try:
            self._payload = json.dumps(snapshot)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Snapshot serialization failed: {e}") from e

    async def close(self) -> None:
        return None

    @property
    def payload(self) -> str | None:
        return self._payload


class JsonFileStorage:
    """Single JSON file, replaced atomically on every save."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, self._path)

    async def load(self) -> Snapshot | None:
        try:
            raw = await asyncio.to_thread(self._read)
        except OSError as e:
            raise PersistenceError(f"Cannot read {self._path}: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt memory file {self._path}: {e}") from e

    async def save(self, snapshot: Snapshot) -> None:
        try:
            payload = json.dumps(snapshot, indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Snapshot serialization failed: {e}") from e
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self._path}: {e}") from e

    async def close(self) -> None:
        return None


class RedisStorage:
    """Snapshot stored under a single Redis key (redis.asyncio)."""

    def __init__(self, url: str, key: str) -> None:
        self._url = url
        self._key = key
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise PersistenceError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def load(self) -> Snapshot | None:
        await self.connect()
        try:
            raw = await self._client.get(self._key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise PersistenceError(f"Redis get {self._key} failed: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt snapshot under {self._key}: {e}") from e

    async def save(self, snapshot: Snapshot) -> None:
        await self.connect()
        try:
            payload = json.dumps(snapshot)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Snapshot serialization failed: {e}") from e
        try:
            await self._client.set(self._key, payload)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise PersistenceError(f"Redis set {self._key} failed: {e}") from e


def build_storage(settings: Settings | None = None) -> StorageBackend:
    """Pick the storage backend named by `memory_backend`."""
    settings = settings or get_settings()
    if settings.memory_backend == "redis":
        if not settings.redis_url or not settings.redis_url.strip():
            raise ValueError("memory_backend=redis requires REDIS_URL")
        return RedisStorage(settings.redis_url.strip(), settings.memory_redis_key)
    if settings.memory_backend == "file":
        return JsonFileStorage(settings.memory_file_path)
    return InMemoryStorage()
