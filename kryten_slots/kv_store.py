"""Key-value store contract and its backends.

The game state lives in a NATS JetStream KV bucket reached through kryten-py.
JetStream KV has no per-key TTL and no read-your-writes guarantee across
replicas, so every value is wrapped in a small JSON envelope carrying its
expiry and write metadata:

    {"v": <value>, "exp": <epoch seconds | null>, "meta": {...} | null}

Expired envelopes read as absent. ``MemoryKvStore`` implements the same
contract in-process for tests and single-node setups.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Protocol

from nats.js.errors import NoKeysError

from .errors import TransientStoreError

if TYPE_CHECKING:
    from kryten import KrytenClient


@dataclass
class StoreEntry:
    value: Any
    metadata: dict[str, Any] | None = None


class KeyValueStore(Protocol):
    """Eventually consistent key-value contract used by the ledger."""

    async def get(self, key: str) -> Any | None: ...

    async def get_entry(self, key: str) -> StoreEntry | None: ...

    async def put(
        self,
        key: str,
        value: Any,
        *,
        ttl_seconds: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str) -> list[str]: ...


# ═══════════════════════════════════════════════════════════════
#  In-process backend
# ═══════════════════════════════════════════════════════════════


class MemoryKvStore:
    """Dictionary-backed store honouring TTLs and metadata."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None, dict[str, Any] | None]] = {}

    def _live(self, key: str) -> tuple[Any, float | None, dict[str, Any] | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at, _ = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> Any | None:
        entry = await self.get_entry(key)
        return entry.value if entry else None

    async def get_entry(self, key: str) -> StoreEntry | None:
        item = self._live(key)
        if item is None:
            return None
        value, _, metadata = item
        return StoreEntry(copy.deepcopy(value), copy.deepcopy(metadata))

    async def put(
        self,
        key: str,
        value: Any,
        *,
        ttl_seconds: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (copy.deepcopy(value), expires_at, copy.deepcopy(metadata))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str) -> list[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))


# ═══════════════════════════════════════════════════════════════
#  NATS JetStream KV backend (via kryten-py)
# ═══════════════════════════════════════════════════════════════


class NatsKvStore:
    """KV store backed by a kryten-py JetStream bucket."""

    def __init__(
        self,
        client: KrytenClient,
        bucket: str,
        logger: logging.Logger,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._logger = logger
        self._clock = clock
        self._kv: Any = None

    async def open(self) -> None:
        """Create the bucket if needed and keep its handle for delete/keys."""
        self._kv = await self._client.get_or_create_kv_store(
            self._bucket, description="kryten-slots game state",
        )

    def _unwrap(self, key: str, raw: Any) -> StoreEntry | None:
        if raw is None:
            return None
        if isinstance(raw, (bytes, str)):
            try:
                raw = json.loads(raw)
            except ValueError:
                self._logger.warning("Dropping non-JSON KV value for %s", key)
                return None
        if not isinstance(raw, dict) or "v" not in raw:
            # Legacy bare value without envelope
            return StoreEntry(raw)
        expires_at = raw.get("exp")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return StoreEntry(raw["v"], raw.get("meta"))

    async def get(self, key: str) -> Any | None:
        entry = await self.get_entry(key)
        return entry.value if entry else None

    async def get_entry(self, key: str) -> StoreEntry | None:
        try:
            raw = await self._client.kv_get(self._bucket, key, default=None, parse_json=True)
        except Exception as e:
            raise TransientStoreError("get", key, e) from e
        return self._unwrap(key, raw)

    async def put(
        self,
        key: str,
        value: Any,
        *,
        ttl_seconds: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        envelope = {
            "v": value,
            "exp": self._clock() + ttl_seconds if ttl_seconds else None,
            "meta": metadata,
        }
        try:
            await self._client.kv_put(self._bucket, key, envelope, as_json=True)
        except Exception as e:
            raise TransientStoreError("put", key, e) from e

    async def delete(self, key: str) -> None:
        if self._kv is None:
            await self.open()
        try:
            await self._kv.delete(key)
        except Exception as e:
            raise TransientStoreError("delete", key, e) from e

    async def list(self, prefix: str) -> list[str]:
        if self._kv is None:
            await self.open()
        try:
            keys = await self._kv.keys()
        except NoKeysError:
            return []
        except Exception as e:
            raise TransientStoreError("list", prefix, e) from e
        return sorted(k for k in keys if k.startswith(prefix))
