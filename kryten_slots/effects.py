"""Active effects — buffs, limited-use boosts, stacking buffs and one-shot tokens.

Every effect is stored under ``effect.<account>.<effect_id>`` as one tagged
JSON document. The ``kind`` field selects the variant:

    timed   {"kind": "timed", "expires_at": ts}
    uses    {"kind": "uses",  "expires_at": ts, "uses": n}
    stack   {"kind": "stack", "expires_at": ts, "stack": n}
    token   {"kind": "token", "claimed_by": null | claim_id, "claimed_at": ts | null}

Consumers dispatch on the variant type, never on the effect name.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Iterable, Union

from .errors import MalformedStoredState
from .ledger import ABORT, Codec, verify_exact
from .utils import kv_key

if TYPE_CHECKING:
    from .config import BuffsConfig
    from .ledger import EconomyLedger


HAPPY_HOUR = "happy_hour"
LUCKY_CHARM = "lucky_charm"
GOLDEN_HOUR = "golden_hour"
PROFIT_DOUBLER = "profit_doubler"
STAR_MAGNET = "star_magnet"
DIAMOND_RUSH = "diamond_rush"
RAGE_MODE = "rage_mode"
DACHS_LOCATOR = "dachs_locator"
GUARANTEED_PAIR = "guaranteed_pair"
WILD_CARD = "wild_card"
WIN_MULTIPLIER = "win_multiplier"

# A claim older than this is treated as abandoned by a crashed request.
STALE_CLAIM_SECONDS = 60


def boost_id(symbol: str) -> str:
    return f"boost:{symbol}"


# ═══════════════════════════════════════════════════════════════
#  Variants
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TimedDuration:
    effect_id: str
    expires_at: float


@dataclass(frozen=True)
class LimitedUses:
    effect_id: str
    expires_at: float
    uses: int


@dataclass(frozen=True)
class StackingPercent:
    effect_id: str
    expires_at: float
    stack: int


@dataclass(frozen=True)
class OneShotToken:
    effect_id: str
    claimed_by: str | None = None
    claimed_at: float | None = None


ActiveEffect = Union[TimedDuration, LimitedUses, StackingPercent, OneShotToken]


def parse_effect(effect_id: str, raw: Any, now: float) -> ActiveEffect | None:
    """Decode a stored effect. Expired effects decode to None.

    Raises MalformedStoredState for anything that is not a known variant.
    """
    if not isinstance(raw, dict):
        raise MalformedStoredState(f"effect {effect_id} is not an object")
    kind = raw.get("kind")
    try:
        if kind == "token":
            return OneShotToken(effect_id, raw.get("claimed_by"), raw.get("claimed_at"))
        expires_at = float(raw["expires_at"])
        if expires_at <= now:
            return None
        if kind == "timed":
            return TimedDuration(effect_id, expires_at)
        if kind == "uses":
            uses = int(raw["uses"])
            if uses <= 0:
                raise MalformedStoredState(f"effect {effect_id} has {uses} uses")
            return LimitedUses(effect_id, expires_at, uses)
        if kind == "stack":
            stack = int(raw["stack"])
            if stack < 0:
                raise MalformedStoredState(f"effect {effect_id} has negative stack")
            return StackingPercent(effect_id, expires_at, stack)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedStoredState(f"effect {effect_id}: {e}") from e
    raise MalformedStoredState(f"effect {effect_id} has unknown kind {kind!r}")


def dump_effect(effect: ActiveEffect) -> dict[str, Any]:
    if isinstance(effect, OneShotToken):
        return {"kind": "token", "claimed_by": effect.claimed_by, "claimed_at": effect.claimed_at}
    if isinstance(effect, LimitedUses):
        return {"kind": "uses", "expires_at": effect.expires_at, "uses": effect.uses}
    if isinstance(effect, StackingPercent):
        return {"kind": "stack", "expires_at": effect.expires_at, "stack": effect.stack}
    return {"kind": "timed", "expires_at": effect.expires_at}


# ═══════════════════════════════════════════════════════════════
#  Store
# ═══════════════════════════════════════════════════════════════


class EffectStore:
    """Grants, reads and consumes active effects through the ledger."""

    def __init__(
        self,
        ledger: EconomyLedger,
        config: BuffsConfig,
        logger: logging.Logger,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._config = config
        self._logger = logger
        self._clock = clock

    def update_config(self, config: BuffsConfig) -> None:
        self._config = config

    def key(self, account: str, effect_id: str) -> str:
        return kv_key("effect", account, effect_id)

    def _codec(self, effect_id: str) -> Codec[ActiveEffect | None]:
        return Codec(
            decode=lambda raw: parse_effect(effect_id, raw, self._clock()),
            encode=lambda eff: dump_effect(eff) if eff is not None else None,
            default=lambda: None,
        )

    def _ttl(self, effect: ActiveEffect) -> int | None:
        if isinstance(effect, OneShotToken):
            return None
        return max(1, int(effect.expires_at - self._clock())) + self._config.ttl_buffer_seconds

    # ── Reads ────────────────────────────────────────────────

    async def get(self, account: str, effect_id: str) -> ActiveEffect | None:
        key = self.key(account, effect_id)
        raw = await self._ledger.get_raw(key)
        if raw is None:
            return None
        try:
            return parse_effect(effect_id, raw, self._clock())
        except MalformedStoredState as e:
            self._logger.warning("Removing corrupted effect %s for %s: %s", effect_id, account, e)
            await self._ledger.delete(key)
            return None

    async def load(self, account: str, effect_ids: Iterable[str]) -> dict[str, ActiveEffect]:
        """Read the given effects concurrently; only active ones are returned."""
        ids = list(effect_ids)
        results = await asyncio.gather(*(self.get(account, eid) for eid in ids))
        return {eid: eff for eid, eff in zip(ids, results) if eff is not None}

    # ── Grants ───────────────────────────────────────────────

    async def _put(self, account: str, effect: ActiveEffect) -> bool:
        return await self._ledger.put_raw(
            self.key(account, effect.effect_id), dump_effect(effect), ttl_seconds=self._ttl(effect),
        )

    async def grant_timed(self, account: str, effect_id: str, duration_seconds: int) -> bool:
        return await self._put(account, TimedDuration(effect_id, self._clock() + duration_seconds))

    async def grant_uses(self, account: str, effect_id: str, uses: int, duration_seconds: int) -> bool:
        return await self._put(account, LimitedUses(effect_id, self._clock() + duration_seconds, uses))

    async def grant_stack(self, account: str, effect_id: str, duration_seconds: int) -> bool:
        return await self._put(account, StackingPercent(effect_id, self._clock() + duration_seconds, 0))

    async def grant_token(self, account: str, effect_id: str) -> bool:
        return await self._put(account, OneShotToken(effect_id))

    # ── Limited uses ─────────────────────────────────────────

    async def decrement_uses(self, account: str, effect_id: str) -> int:
        """Use one charge. Returns the remaining charges (0 once removed)."""

        def transform(eff: ActiveEffect | None) -> ActiveEffect | None:
            if not isinstance(eff, LimitedUses) or eff.uses <= 1:
                return ABORT
            return replace(eff, uses=eff.uses - 1)

        key = self.key(account, effect_id)
        result = await self._ledger.compare_and_retry(key, transform, self._codec(effect_id))
        current = result.value
        if isinstance(current, LimitedUses) and result.aborted:
            # Last charge: remove rather than store a zero counter.
            await self._ledger.delete(key)
            return 0
        if isinstance(current, LimitedUses):
            return current.uses
        return 0

    # ── Stacking ─────────────────────────────────────────────

    async def add_stack(self, account: str, effect_id: str, amount: int, cap: int) -> int:
        def transform(eff: ActiveEffect | None) -> ActiveEffect | None:
            if not isinstance(eff, StackingPercent) or eff.stack >= cap:
                return ABORT
            return replace(eff, stack=min(cap, eff.stack + amount))

        result = await self._ledger.compare_and_retry(
            self.key(account, effect_id), transform, self._codec(effect_id),
        )
        return result.value.stack if isinstance(result.value, StackingPercent) else 0

    async def reset_stack(self, account: str, effect_id: str) -> None:
        def transform(eff: ActiveEffect | None) -> ActiveEffect | None:
            if not isinstance(eff, StackingPercent) or eff.stack == 0:
                return ABORT
            return replace(eff, stack=0)

        await self._ledger.compare_and_retry(
            self.key(account, effect_id), transform, self._codec(effect_id),
        )

    # ── One-shot tokens ──────────────────────────────────────

    async def claim_token(self, account: str, effect_id: str, claim_id: str) -> bool:
        """Consume a one-shot token on behalf of ``claim_id``.

        The token is first marked with the claim id and verified, then
        deleted. A retry with the same claim id sees its own mark and
        succeeds without consuming twice; a concurrent claimant loses.
        """
        now = self._clock()

        def transform(eff: ActiveEffect | None) -> ActiveEffect | None:
            if not isinstance(eff, OneShotToken):
                return ABORT
            if eff.claimed_by == claim_id:
                return ABORT
            if eff.claimed_by and (eff.claimed_at or 0) > now - STALE_CLAIM_SECONDS:
                return ABORT
            return OneShotToken(effect_id, claim_id, now)

        key = self.key(account, effect_id)
        result = await self._ledger.compare_and_retry(
            key, transform, self._codec(effect_id), verify=verify_exact,
        )
        token = result.value
        if not result.verified or not isinstance(token, OneShotToken) or token.claimed_by != claim_id:
            return False
        await self._ledger.delete(key)
        return True

    async def restore_token(self, account: str, effect_id: str) -> None:
        """Give back a token that was claimed but not used."""
        self._logger.info("Restoring unused token %s for %s", effect_id, account)
        await self.grant_token(account, effect_id)
