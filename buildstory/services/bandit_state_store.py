"""
BanditStateStore - persistence for arms, events and storyboard versions.

The strategist never keeps arm counters in process memory: every read and
write goes through this interface, and concurrent reward application is
serialized by compare_and_set_arm_state (a conditional update on the
expected alpha/beta), not by in-process locks.

Tables (see sql/buildstory_schema.sql):
    - bandit_state: Beta(alpha, beta) per (story_id, section_key, variant_hash)
    - events: append-only interaction and engine events
    - storyboards: saved storyboard versions per (story_id, persona)
    - bandit_timeout_claims: one row per penalized (arm, time bucket)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from ..core.config import Config
from ..core.errors import StorageError, StorageUnavailableError
from .content_hasher import compute_document_hash
from .models import ArmState, EventKind, InteractionEvent, Segment, Storyboard
from .variant_bandit import initial_arm_state

logger = logging.getLogger(__name__)

ARM_KEY_COLUMNS = "story_id,section_key,variant_hash"
CLAIM_KEY_COLUMNS = "story_id,section_key,variant_hash,bucket"

ArmKey = Tuple[str, str, str]


class BanditStateStore(ABC):
    """Storage interface consumed by the strategist and the assembler."""

    # =========================================================================
    # Arm state
    # =========================================================================

    @abstractmethod
    async def get_arm_state(self, scope: str, slot: str, variant_id: str) -> Optional[ArmState]:
        """Current state of one arm, or None if it was never referenced."""

    @abstractmethod
    async def upsert_arm_state(self, state: ArmState) -> None:
        """Unconditional write (used for resets)."""

    @abstractmethod
    async def ensure_arm_state(self, scope: str, slot: str, variant_id: str) -> ArmState:
        """Insert the Beta(1, 1) prior if absent and return the stored row.

        Concurrent callers never double-initialize: creation is
        insert-if-absent, not read-then-write.
        """

    @abstractmethod
    async def compare_and_set_arm_state(self, expected: ArmState, updated: ArmState) -> bool:
        """Write updated only if the stored alpha/beta still equal expected's.

        Returns:
            True if the write applied, False if another writer got there first.
        """

    @abstractmethod
    async def list_arm_states(self, scope: str, slot: Optional[str] = None) -> List[ArmState]:
        """All arms under a scope, optionally restricted to one slot."""

    # =========================================================================
    # Events
    # =========================================================================

    @abstractmethod
    async def append_event(self, event: InteractionEvent) -> None:
        """Append one event."""

    @abstractmethod
    async def count_events(
        self,
        scope: str,
        slot: str,
        variant_id: str,
        kinds: Sequence[EventKind],
        since: datetime,
    ) -> int:
        """Number of events of the given kinds for an arm at or after since."""

    @abstractmethod
    async def claim_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> bool:
        """Record that an arm was penalized in a time bucket.

        Returns:
            True for the first claim of (arm, bucket), False afterwards.
        """

    @abstractmethod
    async def release_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> None:
        """Drop a claim whose penalty was never applied, so a later sweep retries it."""

    # =========================================================================
    # Storyboards
    # =========================================================================

    @abstractmethod
    async def list_document_variants(self, scope: str, segment: Segment) -> List[Storyboard]:
        """Saved storyboards for a scope and segment, newest first."""

    @abstractmethod
    async def save_document_variant(
        self, scope: str, segment: Segment, storyboard: Storyboard,
    ) -> str:
        """Persist a storyboard version; returns its document hash."""

    async def get_latest_document(self, scope: str, segment: Segment) -> Optional[Storyboard]:
        """Most recent saved storyboard for a segment."""
        documents = await self.list_document_variants(scope, segment)
        return documents[0] if documents else None


# =============================================================================
# Supabase
# =============================================================================

class SupabaseBanditStateStore(BanditStateStore):
    """Supabase-backed store.

    The Supabase client is synchronous; every call runs in a worker thread and
    is bounded by STORAGE_TIMEOUT_SECONDS so a page render never hangs on the
    database.
    """

    def __init__(self, client=None, timeout_seconds: Optional[float] = None):
        if client is None:
            from buildstory.core.database import get_supabase_client
            client = get_supabase_client()
        self.supabase = client
        self.timeout_seconds = timeout_seconds or Config.STORAGE_TIMEOUT_SECONDS

    async def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from e
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"{operation} failed: {e}") from e

    @staticmethod
    def _row_to_state(row: Dict[str, Any]) -> ArmState:
        return ArmState(
            scope=str(row["story_id"]),
            slot=row["section_key"],
            variant_id=row["variant_hash"],
            alpha=int(row["alpha"]),
            beta=int(row["beta"]),
        )

    @staticmethod
    def _state_to_row(state: ArmState) -> Dict[str, Any]:
        return {
            "story_id": state.scope,
            "section_key": state.slot,
            "variant_hash": state.variant_id,
            "alpha": state.alpha,
            "beta": state.beta,
        }

    def _arm_query(self, query, scope: str, slot: str, variant_id: str):
        return query.eq("story_id", scope).eq("section_key", slot).eq("variant_hash", variant_id)

    async def get_arm_state(self, scope: str, slot: str, variant_id: str) -> Optional[ArmState]:
        def fetch():
            return self._arm_query(
                self.supabase.table("bandit_state").select("*"), scope, slot, variant_id
            ).limit(1).execute()

        result = await self._run("get_arm_state", fetch)
        if not result.data:
            return None
        return self._row_to_state(result.data[0])

    async def upsert_arm_state(self, state: ArmState) -> None:
        row = self._state_to_row(state)
        await self._run(
            "upsert_arm_state",
            lambda: self.supabase.table("bandit_state").upsert(
                row, on_conflict=ARM_KEY_COLUMNS
            ).execute(),
        )

    async def ensure_arm_state(self, scope: str, slot: str, variant_id: str) -> ArmState:
        row = self._state_to_row(initial_arm_state(scope, slot, variant_id))
        # ON CONFLICT DO NOTHING: an existing row keeps its counts
        await self._run(
            "ensure_arm_state",
            lambda: self.supabase.table("bandit_state").upsert(
                row, on_conflict=ARM_KEY_COLUMNS, ignore_duplicates=True
            ).execute(),
        )
        state = await self.get_arm_state(scope, slot, variant_id)
        if state is None:
            raise StorageError(f"Arm {scope}/{slot}/{variant_id[:12]} missing after insert")
        return state

    async def compare_and_set_arm_state(self, expected: ArmState, updated: ArmState) -> bool:
        def conditional_update():
            query = self.supabase.table("bandit_state").update({
                "alpha": updated.alpha,
                "beta": updated.beta,
            })
            query = self._arm_query(query, expected.scope, expected.slot, expected.variant_id)
            return query.eq("alpha", expected.alpha).eq("beta", expected.beta).execute()

        result = await self._run("compare_and_set_arm_state", conditional_update)
        return bool(result.data)

    async def list_arm_states(self, scope: str, slot: Optional[str] = None) -> List[ArmState]:
        def fetch():
            query = self.supabase.table("bandit_state").select("*").eq("story_id", scope)
            if slot is not None:
                query = query.eq("section_key", slot)
            return query.execute()

        result = await self._run("list_arm_states", fetch)
        return [self._row_to_state(row) for row in (result.data or [])]

    async def append_event(self, event: InteractionEvent) -> None:
        row = {
            "story_id": event.scope,
            "persona": event.segment.value if event.segment else None,
            "section_key": event.slot,
            "variant_hash": event.variant_id,
            "event": event.kind.value,
            "meta": event.metadata,
            "ts": event.timestamp.isoformat(),
        }
        await self._run(
            "append_event",
            lambda: self.supabase.table("events").insert(row).execute(),
        )

    async def count_events(
        self,
        scope: str,
        slot: str,
        variant_id: str,
        kinds: Sequence[EventKind],
        since: datetime,
    ) -> int:
        kind_values = [EventKind(k).value for k in kinds]

        def fetch():
            query = self.supabase.table("events").select("id", count="exact")
            query = self._arm_query(query, scope, slot, variant_id)
            return query.in_("event", kind_values).gte("ts", since.isoformat()).execute()

        result = await self._run("count_events", fetch)
        if result.count is not None:
            return result.count
        return len(result.data or [])

    async def claim_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> bool:
        row = {
            "story_id": scope,
            "section_key": slot,
            "variant_hash": variant_id,
            "bucket": bucket,
        }
        result = await self._run(
            "claim_timeout_bucket",
            lambda: self.supabase.table("bandit_timeout_claims").upsert(
                row, on_conflict=CLAIM_KEY_COLUMNS, ignore_duplicates=True
            ).execute(),
        )
        # Conflicting inserts return no rows
        return bool(result.data)

    async def release_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> None:
        await self._run(
            "release_timeout_bucket",
            lambda: self.supabase.table("bandit_timeout_claims").delete().eq(
                "story_id", scope
            ).eq("section_key", slot).eq("variant_hash", variant_id).eq(
                "bucket", bucket
            ).execute(),
        )

    async def list_document_variants(self, scope: str, segment: Segment) -> List[Storyboard]:
        result = await self._run(
            "list_document_variants",
            lambda: self.supabase.table("storyboards").select("json").eq(
                "story_id", scope
            ).eq("persona", Segment(segment).value).order(
                "created_at", desc=True
            ).execute(),
        )
        storyboards = []
        for row in result.data or []:
            try:
                storyboards.append(Storyboard.model_validate(row["json"]))
            except (KeyError, ValidationError) as e:
                logger.warning(
                    f"Skipping malformed storyboard for {scope}/{Segment(segment).value}: {e}"
                )
        return storyboards

    async def save_document_variant(
        self, scope: str, segment: Segment, storyboard: Storyboard,
    ) -> str:
        document_hash = compute_document_hash(storyboard)
        row = {
            "story_id": scope,
            "persona": Segment(segment).value,
            "variant_hash": document_hash,
            "json": storyboard.model_dump(mode="json"),
        }
        await self._run(
            "save_document_variant",
            lambda: self.supabase.table("storyboards").insert(row).execute(),
        )
        logger.info(f"Saved storyboard {document_hash[:12]} for {scope}/{Segment(segment).value}")
        return document_hash


# =============================================================================
# In-memory
# =============================================================================

class InMemoryBanditStateStore(BanditStateStore):
    """Dict-backed store for tests and local runs.

    Each call yields to the event loop first, so coroutines interleave the
    way they would around real I/O. The compare-and-set itself has no await
    between read and write, which makes it atomic on one loop.
    """

    def __init__(self):
        self.arms: Dict[ArmKey, ArmState] = {}
        self.events: List[InteractionEvent] = []
        self.documents: Dict[Tuple[str, str], List[Storyboard]] = {}
        self.timeout_claims: Set[Tuple[str, str, str, int]] = set()

    async def get_arm_state(self, scope: str, slot: str, variant_id: str) -> Optional[ArmState]:
        await asyncio.sleep(0)
        return self.arms.get((scope, slot, variant_id))

    async def upsert_arm_state(self, state: ArmState) -> None:
        await asyncio.sleep(0)
        self.arms[(state.scope, state.slot, state.variant_id)] = state

    async def ensure_arm_state(self, scope: str, slot: str, variant_id: str) -> ArmState:
        await asyncio.sleep(0)
        key = (scope, slot, variant_id)
        if key not in self.arms:
            self.arms[key] = initial_arm_state(scope, slot, variant_id)
        return self.arms[key]

    async def compare_and_set_arm_state(self, expected: ArmState, updated: ArmState) -> bool:
        await asyncio.sleep(0)
        key = (expected.scope, expected.slot, expected.variant_id)
        current = self.arms.get(key)
        if current is None or (current.alpha, current.beta) != (expected.alpha, expected.beta):
            return False
        self.arms[key] = updated
        return True

    async def list_arm_states(self, scope: str, slot: Optional[str] = None) -> List[ArmState]:
        await asyncio.sleep(0)
        return [
            state for (s, sl, _), state in self.arms.items()
            if s == scope and (slot is None or sl == slot)
        ]

    async def append_event(self, event: InteractionEvent) -> None:
        await asyncio.sleep(0)
        self.events.append(event)

    async def count_events(
        self,
        scope: str,
        slot: str,
        variant_id: str,
        kinds: Sequence[EventKind],
        since: datetime,
    ) -> int:
        await asyncio.sleep(0)
        wanted = {EventKind(k) for k in kinds}
        return sum(
            1 for e in self.events
            if e.scope == scope and e.slot == slot and e.variant_id == variant_id
            and e.kind in wanted and e.timestamp >= since
        )

    async def claim_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> bool:
        await asyncio.sleep(0)
        key = (scope, slot, variant_id, bucket)
        if key in self.timeout_claims:
            return False
        self.timeout_claims.add(key)
        return True

    async def release_timeout_bucket(
        self, scope: str, slot: str, variant_id: str, bucket: int,
    ) -> None:
        await asyncio.sleep(0)
        self.timeout_claims.discard((scope, slot, variant_id, bucket))

    async def list_document_variants(self, scope: str, segment: Segment) -> List[Storyboard]:
        await asyncio.sleep(0)
        return list(reversed(self.documents.get((scope, Segment(segment).value), [])))

    async def save_document_variant(
        self, scope: str, segment: Segment, storyboard: Storyboard,
    ) -> str:
        await asyncio.sleep(0)
        self.documents.setdefault((scope, Segment(segment).value), []).append(storyboard)
        return compute_document_hash(storyboard)
