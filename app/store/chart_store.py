from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional, Protocol

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from app.services.medical_chart import MedicalChart

logger = logging.getLogger("skin-chart-agent.chart-store")

ChartMutation = Callable[[MedicalChart], MedicalChart]


class ChartStoreUnavailable(Exception):
    """The configured backend could not serve the request."""


class ChartStore(Protocol):
    async def get(self, uid: str) -> Optional[MedicalChart]: ...

    async def set(self, uid: str, chart: MedicalChart) -> None: ...

    async def update(self, uid: str, mutate: ChartMutation) -> Optional[MedicalChart]: ...

    async def close(self) -> None: ...


def _normalize_uid(uid: str) -> str:
    if not isinstance(uid, str):
        raise TypeError("uid must be a string")
    normalized = uid.strip()
    if not normalized:
        raise ValueError("uid must be non-empty")
    if len(normalized) > 200:
        raise ValueError("uid too long")
    return normalized


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _chart_from_json_dict(uid: str, obj: Any) -> Optional[MedicalChart]:
    if not isinstance(obj, dict):
        return None
    try:
        return MedicalChart.model_validate(obj)
    except ValidationError as exc:
        logger.warning("chart_parse_failed uid=%s err=%s", uid, exc.errors()[:3])
        return None


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class _KeyLocks:
    """
    One asyncio.Lock per key so read-modify-write on a uid is serialized.
    An entry lives only while some task holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _KeyLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyLock()
            self._locks[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)


class InMemoryChartStore(ChartStore):
    backend_kind = "memory"

    def __init__(self) -> None:
        self._locks = _KeyLocks()
        self._items: dict[str, dict[str, Any]] = {}

    async def get(self, uid: str) -> Optional[MedicalChart]:
        key = _normalize_uid(uid)
        data = self._items.get(key)
        if data is None:
            return None
        return MedicalChart.model_validate(data)

    async def set(self, uid: str, chart: MedicalChart) -> None:
        key = _normalize_uid(uid)
        async with self._locks.hold(key):
            self._items[key] = chart.to_wire()

    async def update(self, uid: str, mutate: ChartMutation) -> Optional[MedicalChart]:
        key = _normalize_uid(uid)
        async with self._locks.hold(key):
            data = self._items.get(key)
            if data is None:
                return None
            updated = mutate(MedicalChart.model_validate(data))
            self._items[key] = updated.to_wire()
            return updated

    async def close(self) -> None:
        return None


class JsonFileChartStore(ChartStore):
    """All charts in one JSON object keyed by uid, rewritten on every save."""

    backend_kind = "file"

    def __init__(self, *, path: str | Path) -> None:
        self._path = Path(path).expanduser().resolve()
        # Every write rewrites the whole file, so a single lock covers all keys.
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            obj = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            logger.error("chart_file_load_failed path=%s err=%s", self._path, exc)
            return {}
        return obj if isinstance(obj, dict) else {}

    def _write_all(self, charts: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(charts, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)

    async def get(self, uid: str) -> Optional[MedicalChart]:
        key = _normalize_uid(uid)
        charts = await asyncio.to_thread(self._read_all)
        return _chart_from_json_dict(key, charts.get(key))

    async def set(self, uid: str, chart: MedicalChart) -> None:
        key = _normalize_uid(uid)
        async with self._lock:
            charts = await asyncio.to_thread(self._read_all)
            charts[key] = chart.to_wire()
            await asyncio.to_thread(self._write_all, charts)

    async def update(self, uid: str, mutate: ChartMutation) -> Optional[MedicalChart]:
        key = _normalize_uid(uid)
        async with self._lock:
            charts = await asyncio.to_thread(self._read_all)
            existing = _chart_from_json_dict(key, charts.get(key))
            if existing is None:
                return None
            updated = mutate(existing)
            charts[key] = updated.to_wire()
            await asyncio.to_thread(self._write_all, charts)
            return updated

    async def close(self) -> None:
        return None


class RedisChartStore(ChartStore):
    backend_kind = "redis"

    def __init__(
        self,
        *,
        redis_url: str,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skin_chart",
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix.strip(":") or "skin_chart"
        # Serializes updates within this process only.
        self._locks = _KeyLocks()
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, uid: str) -> str:
        return f"{self._key_prefix}:{_normalize_uid(uid)}"

    async def _load(self, key: str, uid: str) -> Optional[MedicalChart]:
        raw = await self._redis.get(key)
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except ValueError:
            logger.warning("redis_chart_parse_failed uid=%s", uid)
            return None
        return _chart_from_json_dict(uid, obj)

    async def get(self, uid: str) -> Optional[MedicalChart]:
        return await self._load(self._key(uid), uid)

    async def set(self, uid: str, chart: MedicalChart) -> None:
        await self._redis.set(self._key(uid), _json_dumps(chart.to_wire()))

    async def update(self, uid: str, mutate: ChartMutation) -> Optional[MedicalChart]:
        key = self._key(uid)
        async with self._locks.hold(key):
            existing = await self._load(key, uid)
            if existing is None:
                return None
            updated = mutate(existing)
            await self._redis.set(key, _json_dumps(updated.to_wire()))
            return updated

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError:
            pass


class PersistentChartStore(ChartStore):
    """
    Chooses a backend at startup: redis when REDIS_URL is reachable, else the
    JSON file at CHART_STORE_PATH, else process memory. Redis errors at runtime
    surface as ChartStoreUnavailable; the backend is never swapped mid-process.
    """

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        file_path: Optional[str] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: Optional[str] = None,
    ) -> None:
        self._redis_url = redis_url
        self._file_path = file_path
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix

        self._backend: ChartStore = InMemoryChartStore()
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def initialize(self) -> None:
        redis_url = (self._redis_url if self._redis_url is not None else os.getenv("REDIS_URL") or "").strip() or None
        file_path = (self._file_path if self._file_path is not None else os.getenv("CHART_STORE_PATH") or "").strip() or None
        key_prefix = self._key_prefix or (os.getenv("CHART_STORE_KEY_PREFIX") or "skin_chart").strip()

        if redis_url:
            redis_backend: Optional[RedisChartStore] = None
            try:
                redis_backend = RedisChartStore(
                    redis_url=redis_url,
                    connect_timeout_s=self._connect_timeout_s,
                    socket_timeout_s=self._socket_timeout_s,
                    key_prefix=key_prefix,
                )
                await redis_backend.ping()
            except (RedisError, OSError, ValueError) as exc:
                if redis_backend is not None:
                    await redis_backend.close()
                logger.warning(
                    "chart_store_redis_unavailable err=%s",
                    getattr(exc, "message", str(exc)),
                )
            else:
                self._backend = redis_backend
                self._backend_kind = "redis"
                logger.info("chart_store_backend=redis")
                return

        if file_path:
            self._backend = JsonFileChartStore(path=file_path)
            self._backend_kind = "file"
            logger.info("chart_store_backend=file path=%s", file_path)
            return

        self._backend = InMemoryChartStore()
        self._backend_kind = "memory"
        logger.info("chart_store_backend=memory reason=%s", "redis_unavailable" if redis_url else "no_store_configured")

    async def get(self, uid: str) -> Optional[MedicalChart]:
        try:
            return await self._backend.get(uid)
        except RedisError as exc:
            raise self._unavailable("get", exc) from exc

    async def set(self, uid: str, chart: MedicalChart) -> None:
        try:
            await self._backend.set(uid, chart)
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    async def update(self, uid: str, mutate: ChartMutation) -> Optional[MedicalChart]:
        try:
            return await self._backend.update(uid, mutate)
        except RedisError as exc:
            raise self._unavailable("update", exc) from exc

    def _unavailable(self, op: str, exc: RedisError) -> ChartStoreUnavailable:
        logger.warning(
            "chart_store_%s_failed backend=%s err=%s",
            op,
            self._backend_kind,
            getattr(exc, "message", str(exc)),
        )
        return ChartStoreUnavailable(f"{self._backend_kind} backend unavailable")

    async def close(self) -> None:
        await self._backend.close()
