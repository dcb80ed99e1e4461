"""Economy ledger — optimistic-concurrency read/modify/write/verify over KV.

The backing store has no transactions and only eventual consistency, so every
mutation goes through ``compare_and_retry``: read the current value, compute
the transform, write it tagged with a monotonically increasing attempt tag,
read it back and verify. On mismatch the whole cycle is retried with
exponential backoff. The primitive never raises: after ``max_retries`` failed
attempts it returns the last known safe value with ``verified=False``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

from .errors import MalformedStoredState, TransientStoreError
from .utils import kv_key

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .kv_store import KeyValueStore, StoreEntry

T = TypeVar("T")


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


ABORT: Any = _Abort()
"""Returned by a transform to stop without writing."""


@dataclass
class Codec(Generic[T]):
    """How a stored value of type T is decoded, encoded and defaulted.

    ``decode`` raises MalformedStoredState on wrong shape.
    """

    decode: Callable[[Any], T]
    encode: Callable[[T], Any]
    default: Callable[[], T]


@dataclass
class CasResult(Generic[T]):
    """Outcome of one compare_and_retry call."""

    value: T
    verified: bool
    attempts: int
    previous: T | None = None
    aborted: bool = False


# (previous, expected, observed, observed_metadata, tag) -> ok
Verifier = Callable[[Any, Any, Any, "dict[str, Any] | None", int], bool]


def verify_exact(previous: Any, expected: Any, observed: Any, metadata: dict | None, tag: int) -> bool:
    """Absolute set: value must match, and the tag too when metadata is returned."""
    if observed != expected:
        return False
    return metadata is None or metadata.get("tag") in (None, tag)


def verify_direction(previous: Any, expected: Any, observed: Any, metadata: dict | None, tag: int) -> bool:
    """Delta: the stored value moved the same way as the intended change."""
    if observed is None or previous is None:
        return observed == expected
    if expected > previous:
        return observed > previous
    if expected < previous:
        return observed < previous
    return observed == previous


def int_codec(default: int, low: int | None = None, high: int | None = None) -> Codec[int]:
    """Integer stored as a JSON number or numeric string, optionally clamped."""

    def clamp(v: int) -> int:
        if low is not None:
            v = max(low, v)
        if high is not None:
            v = min(high, v)
        return v

    def decode(raw: Any) -> int:
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            raise MalformedStoredState(f"expected integer, got {type(raw).__name__}")
        try:
            return clamp(int(raw))
        except ValueError as e:
            raise MalformedStoredState(str(e)) from e

    return Codec(decode=decode, encode=clamp, default=lambda: default)


# ═══════════════════════════════════════════════════════════════
#  Ledger
# ═══════════════════════════════════════════════════════════════


class EconomyLedger:
    """Generic optimistic-concurrency primitive plus balance and bank helpers."""

    def __init__(
        self,
        store: KeyValueStore,
        config: LedgerConfig,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._logger = logger or logging.getLogger("slots.ledger")
        self._sleep = sleep
        self._last_tag = 0
        self.exhausted_total = 0

        self._balance_codec = int_codec(config.starting_balance, 0, config.max_balance)
        self._bank_codec = int_codec(config.bank_start_balance)

    @property
    def store(self) -> KeyValueStore:
        return self._store

    def update_config(self, config: LedgerConfig) -> None:
        """Hot-swap the ledger config."""
        self._config = config
        self._balance_codec = int_codec(config.starting_balance, 0, config.max_balance)
        self._bank_codec = int_codec(config.bank_start_balance)

    def _next_tag(self) -> int:
        self._last_tag = max(self._last_tag + 1, time.time_ns())
        return self._last_tag

    async def _backoff(self, attempt: int) -> None:
        delay_ms = self._config.backoff_base_ms * (2 ** attempt)
        delay_ms += delay_ms * 0.5 * random.random()
        await self._sleep(delay_ms / 1000)

    def _decode(self, key: str, codec: Codec[T], entry: StoreEntry | None) -> T:
        if entry is None or entry.value is None:
            return codec.default()
        try:
            return codec.decode(entry.value)
        except MalformedStoredState as e:
            self._logger.warning("Malformed value at %s treated as default: %s", key, e)
            return codec.default()

    # ══════════════════════════════════════════════════════════
    #  Safe single operations
    # ══════════════════════════════════════════════════════════

    async def read(self, key: str, codec: Codec[T]) -> T:
        """Read and decode; transient failures and bad shapes yield the default."""
        try:
            entry = await self._store.get_entry(key)
        except TransientStoreError as e:
            self._logger.warning("Read of %s failed, using default: %s", key, e)
            return codec.default()
        return self._decode(key, codec, entry)

    async def get_raw(self, key: str, default: Any = None) -> Any:
        try:
            value = await self._store.get(key)
        except TransientStoreError as e:
            self._logger.warning("Read of %s failed, using default: %s", key, e)
            return default
        return default if value is None else value

    async def put_raw(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        try:
            await self._store.put(key, value, ttl_seconds=ttl_seconds)
        except TransientStoreError as e:
            self._logger.warning("Write of %s failed: %s", key, e)
            return False
        return True

    async def delete(self, key: str) -> bool:
        try:
            await self._store.delete(key)
        except TransientStoreError as e:
            self._logger.warning("Delete of %s failed: %s", key, e)
            return False
        return True

    async def list_keys(self, prefix: str) -> list[str]:
        try:
            return await self._store.list(prefix)
        except TransientStoreError as e:
            self._logger.warning("Listing %s failed: %s", prefix, e)
            return []

    # ══════════════════════════════════════════════════════════
    #  compare_and_retry
    # ══════════════════════════════════════════════════════════

    async def compare_and_retry(
        self,
        key: str,
        transform: Callable[[T], T],
        codec: Codec[T],
        *,
        verify: Verifier = verify_exact,
        max_retries: int | None = None,
        ttl_seconds: int | None = None,
    ) -> CasResult[T]:
        """Read-modify-write-verify ``key`` until the write is observed.

        ``transform`` receives the decoded current value and returns the new
        value, or ``ABORT`` to stop without writing. The returned CasResult
        holds the observed value on success, or the last value known to be
        safe when every attempt failed.
        """
        attempts = max(1, self._config.max_retries if max_retries is None else max_retries)
        last_safe: T = codec.default()
        previous: T | None = None
        # Tag of a write whose outcome is unknown (put or read-back raised).
        pending_tag: int | None = None

        for attempt in range(attempts):
            if attempt > 0:
                await self._backoff(attempt - 1)

            try:
                entry = await self._store.get_entry(key)
            except TransientStoreError as e:
                self._logger.warning("Ledger read %s attempt %d failed: %s", key, attempt + 1, e)
                continue

            current = self._decode(key, codec, entry)
            if pending_tag is not None and entry is not None and (entry.metadata or {}).get("tag") == pending_tag:
                self._logger.debug("Ledger write %s already landed (tag %d)", key, pending_tag)
                return CasResult(current, True, attempt + 1, previous)
            pending_tag = None
            previous = current
            last_safe = current

            new = transform(current)
            if new is ABORT:
                return CasResult(current, True, attempt + 1, previous, aborted=True)

            tag = self._next_tag()
            pending_tag = tag
            try:
                await self._store.put(
                    key, codec.encode(new), ttl_seconds=ttl_seconds, metadata={"tag": tag},
                )
            except TransientStoreError as e:
                self._logger.warning("Ledger write %s attempt %d failed: %s", key, attempt + 1, e)
                continue
            try:
                observed_entry = await self._store.get_entry(key)
            except TransientStoreError as e:
                self._logger.warning("Ledger read-back %s attempt %d failed: %s", key, attempt + 1, e)
                continue
            pending_tag = None

            observed = self._decode(key, codec, observed_entry) if observed_entry else None
            metadata = observed_entry.metadata if observed_entry else None
            if verify(current, new, observed, metadata, tag):
                return CasResult(observed, True, attempt + 1, previous)

            self._logger.debug(
                "Ledger verify mismatch on %s (attempt %d): wrote %r, read %r",
                key, attempt + 1, new, observed,
            )
            if observed is not None:
                last_safe = observed

        self.exhausted_total += 1
        self._logger.warning(
            "Ledger write for %s not verified after %d attempts; using %r", key, attempts, last_safe,
        )
        return CasResult(last_safe, False, attempts, previous)

    # ══════════════════════════════════════════════════════════
    #  Balances
    # ══════════════════════════════════════════════════════════

    def balance_key(self, account: str) -> str:
        return kv_key("balance", account)

    async def get_balance(self, account: str) -> int:
        """Return the balance, creating the account at the starting balance."""
        key = self.balance_key(account)
        try:
            entry = await self._store.get_entry(key)
        except TransientStoreError as e:
            self._logger.warning("Balance read for %s failed, assuming 0: %s", account, e)
            return 0
        if entry is None:
            start = self._config.starting_balance
            await self.put_raw(key, start)
            return start
        return self._decode(key, self._balance_codec, entry)

    async def adjust_balance(self, account: str, delta: int) -> CasResult[int]:
        """Add ``delta`` (may be negative); result stays within [0, max_balance]."""
        return await self.compare_and_retry(
            self.balance_key(account),
            lambda cur: self._balance_codec.encode(cur + delta),
            self._balance_codec,
            verify=verify_direction,
        )

    async def set_balance(self, account: str, value: int) -> CasResult[int]:
        clamped = self._balance_codec.encode(value)
        return await self.compare_and_retry(
            self.balance_key(account), lambda _cur: clamped, self._balance_codec,
        )

    async def adjust_bank(self, delta: int) -> CasResult[int]:
        """Move the bank balance; the bank is allowed to go negative."""
        if delta == 0:
            return CasResult(await self.read(self.balance_key(self._config.bank_account), self._bank_codec), True, 0)
        return await self.compare_and_retry(
            self.balance_key(self._config.bank_account),
            lambda cur: cur + delta,
            self._bank_codec,
            verify=verify_direction,
        )

    async def get_bank_balance(self) -> int:
        return await self.read(self.balance_key(self._config.bank_account), self._bank_codec)
