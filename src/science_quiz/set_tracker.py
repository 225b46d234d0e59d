"""Multi-session set tracking — which question set a session may take.

Sessions coordinate only through a shared key-value store using
read-prune-write updates. There is no lock: two sessions racing may briefly
be handed the same set. Stale claims disappear after ``ACTIVE_SET_TTL``.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import timedelta
from typing import Callable

from pydantic import ValidationError

from science_quiz.kv_store import KVStore
from science_quiz.models import ActiveClaim, Scope

logger = logging.getLogger(__name__)

ACTIVE_SET_TTL = timedelta(minutes=30)
DEFAULT_TOTAL_SETS = 3

Clock = Callable[[], float]  # epoch seconds


def active_key(scope: Scope) -> str:
    return f"activeSets_{scope.grade}_{scope.subject}"


def completed_key(session_id: str, scope: Scope) -> str:
    return f"completedSets_{session_id}_{scope.grade}_{scope.subject}"


def streak_key(session_id: str) -> str:
    return f"streak_{session_id}"


class ActiveUseRegistry:
    """Per-scope map of session id -> set currently being taken."""

    def __init__(
        self,
        store: KVStore,
        ttl: timedelta = ACTIVE_SET_TTL,
        clock: Clock = time.time,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.clock = clock

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def get_active(self, scope: Scope) -> dict[str, ActiveClaim]:
        """Return live claims.

        The mapping is written back only when an expired or malformed entry
        was dropped. A read that finds nothing to prune leaves the stored
        value alone, so a half-written or unreadable file is never replaced
        by an empty mapping.
        """
        key = active_key(scope)
        raw = self.store.get(key) or {}
        now = self._now_ms()
        ttl_ms = self.ttl.total_seconds() * 1000

        active: dict[str, ActiveClaim] = {}
        pruned = not isinstance(raw, dict)
        if pruned:
            logger.warning("Discarding malformed active-set record for %s", scope)
        else:
            for session_id, data in raw.items():
                try:
                    claim = ActiveClaim.model_validate(data)
                except ValidationError:
                    logger.warning("Dropping malformed claim for %s in %s", session_id, scope)
                    pruned = True
                    continue
                if now - claim.timestamp < ttl_ms:
                    active[session_id] = claim
                else:
                    pruned = True

        if pruned:
            self._save(key, active)
        return active

    def mark_active(self, scope: Scope, session_id: str, set_number: int) -> None:
        active = self.get_active(scope)
        active[session_id] = ActiveClaim(set_number=set_number, timestamp=self._now_ms())
        self._save(active_key(scope), active)
        logger.info("Session %s is now using set %d of %s", session_id, set_number, scope)

    def release(self, scope: Scope, session_id: str) -> None:
        active = self.get_active(scope)
        if session_id in active:
            del active[session_id]
            self._save(active_key(scope), active)
            logger.info("Session %s released its set in %s", session_id, scope)

    def _save(self, key: str, active: dict[str, ActiveClaim]) -> None:
        self.store.set(
            key, {sid: claim.model_dump(by_alias=True) for sid, claim in active.items()}
        )


class CompletionLedger:
    """Per-session, per-scope record of completed set numbers."""

    def __init__(self, store: KVStore, registry: ActiveUseRegistry) -> None:
        self.store = store
        self.registry = registry

    def get_completed(self, session_id: str, scope: Scope) -> set[int]:
        raw = self.store.get(completed_key(session_id, scope))
        if not isinstance(raw, list):
            return set()
        return {n for n in raw if isinstance(n, int)}

    def mark_completed(
        self,
        session_id: str,
        scope: Scope,
        set_number: int,
        total_sets: int = DEFAULT_TOTAL_SETS,
    ) -> None:
        """Record a finished set. Completing always releases the active claim."""
        if not 1 <= set_number <= total_sets:
            raise ValueError(f"Set {set_number} outside 1..{total_sets}")
        completed = self.get_completed(session_id, scope)
        completed.add(set_number)
        self.store.set(completed_key(session_id, scope), sorted(completed))
        self.registry.release(scope, session_id)

    def reset(self, session_id: str, scope: Scope) -> None:
        self.store.delete(completed_key(session_id, scope))
        logger.info("Reset completed sets of %s for %s", session_id, scope)


class StreakCounter:
    """Consecutive correct answers of one session, shared across scopes."""

    def __init__(self, store: KVStore, session_id: str) -> None:
        self.store = store
        self.session_id = session_id
        self.key = streak_key(session_id)

    @property
    def value(self) -> int:
        raw = self.store.get(self.key, 0)
        try:
            return max(int(raw), 0)
        except (TypeError, ValueError):
            return 0

    def increment(self) -> int:
        streak = self.value + 1
        self.store.set(self.key, streak)
        return streak

    def reset(self) -> int:
        self.store.set(self.key, 0)
        return 0


class SetAllocator:
    """Chooses a set per session, avoiding completed and contended sets.

    Liveness wins over collision avoidance: a non-empty candidate list is
    always returned, falling back to set 1.
    """

    def __init__(self, registry: ActiveUseRegistry, ledger: CompletionLedger) -> None:
        self.registry = registry
        self.ledger = ledger

    def get_available_sets(
        self,
        session_id: str,
        scope: Scope,
        total_sets: int = DEFAULT_TOTAL_SETS,
    ) -> list[int]:
        if total_sets < 1:
            raise ValueError("total_sets must be at least 1")

        completed = self.ledger.get_completed(session_id, scope)
        active = self.registry.get_active(scope)
        used_by_others = {
            claim.set_number for sid, claim in active.items() if sid != session_id
        }
        universe = range(1, total_sets + 1)

        available = [i for i in universe if i not in completed and i not in used_by_others]
        logger.debug(
            "Set availability for %s in %s: completed=%s used_by_others=%s available=%s",
            session_id,
            scope,
            sorted(completed),
            sorted(used_by_others),
            available,
        )
        if available:
            return available

        if all(i in completed for i in universe):
            # Every set done: start the cycle again
            self.ledger.reset(session_id, scope)

        # Either freshly reset or blocked only by other sessions
        free = [i for i in universe if i not in used_by_others]
        return free or [1]

    def choose_set(
        self,
        session_id: str,
        scope: Scope,
        total_sets: int = DEFAULT_TOTAL_SETS,
        rng: random.Random | None = None,
    ) -> int:
        """Pick a candidate uniformly at random and claim it."""
        candidates = self.get_available_sets(session_id, scope, total_sets)
        chosen = (rng or random).choice(candidates)
        self.registry.mark_active(scope, session_id, chosen)
        return chosen
