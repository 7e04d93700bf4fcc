"""
Dialogue state persistence
--------------------------
  - DialogueStateStore   get/upsert of one DialogueState per partition (source of truth)
                         current_version / claim_pending for cross-process safety
  - CachedStateStore     bounded in-process LRU in front of any store

Every write bumps the row's `version`. The cache is read-through and
write-through, hands out copies, and only serves an entry whose version still
matches the stored row. Dropping it (max_entries=0) changes latency only.
"""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.state import DialogueState, dump_pending_action, load_pending_action
from db.models import ConversationState, utcnow

logger = logging.getLogger("sales-ledger")


def _row_to_state(row: ConversationState) -> DialogueState:
    try:
        pending = load_pending_action(row.pending_action)
    except ValidationError as e:
        logger.error("Discarding unreadable pending action for %s: %s", row.partition_key, e)
        pending = None

    expires_at = row.pending_expires_at if pending is not None else None
    if pending is not None and expires_at is None:
        logger.error("Discarding pending action without expiry for %s", row.partition_key)
        pending = None
    return DialogueState(
        partition_key=row.partition_key,
        display_name=row.display_name,
        last_message_at=row.last_message_at,
        pending_action=pending,
        pending_confirmation=bool(row.pending_confirmation) and pending is not None,
        pending_expires_at=expires_at,
        last_sale_number=row.last_sale_number,
        last_customer_name=row.last_customer_name,
        version=row.version or 0,
    )


def _apply(row: ConversationState, state: DialogueState) -> None:
    row.display_name = state.display_name
    row.last_message_at = state.last_message_at
    row.pending_action = dump_pending_action(state.pending_action)
    row.pending_confirmation = state.pending_confirmation
    row.pending_expires_at = state.pending_expires_at
    row.last_sale_number = state.last_sale_number
    row.last_customer_name = state.last_customer_name
    row.version = (row.version or 0) + 1


class DialogueStateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def get(self, partition_key: str) -> Optional[DialogueState]:
        async with self._session() as db:
            row = await db.get(ConversationState, partition_key)
            return _row_to_state(row) if row else None

    async def current_version(self, partition_key: str) -> Optional[int]:
        """Stored version of a partition's state, None if nothing is stored."""
        async with self._session() as db:
            res = await db.execute(
                select(ConversationState.version).where(ConversationState.partition_key == partition_key)
            )
            return res.scalar_one_or_none()

    async def upsert(self, state: DialogueState) -> DialogueState:
        # re-validate so an inconsistent pending triple is never written
        state = DialogueState.model_validate(state.model_dump())
        for attempt in (1, 2):
            async with self._session() as db:
                row = await db.get(ConversationState, state.partition_key)
                if row is None:
                    row = ConversationState(partition_key=state.partition_key)
                    db.add(row)
                _apply(row, state)
                version = row.version
                try:
                    await db.commit()
                    return state.model_copy(update={"version": version})
                except IntegrityError:
                    # first message of a partition raced with another writer; update instead
                    await db.rollback()
                    if attempt == 2:
                        raise
        return state

    async def claim_pending(self, state: DialogueState) -> bool:
        """
        Atomically take the confirmation `state` is waiting on.

        Clears the stored pending action only if the row is still at the
        version `state` was read at and still awaits confirmation. On success
        `state.version` follows the row and True is returned; the caller acts
        on its in-memory copy of the action. False means another turn already
        confirmed, cancelled or replaced it.
        """
        async with self._session() as db:
            res = await db.execute(
                update(ConversationState)
                .where(
                    ConversationState.partition_key == state.partition_key,
                    ConversationState.version == state.version,
                    ConversationState.pending_confirmation.is_(True),
                )
                .values(
                    pending_action=None,
                    pending_confirmation=False,
                    pending_expires_at=None,
                    version=ConversationState.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if res.rowcount != 1:
            logger.warning(
                "Confirmation for %s was already handled (read at version %s)",
                state.partition_key, state.version,
            )
            return False
        state.version += 1
        return True


class CachedStateStore:
    def __init__(
        self,
        store: DialogueStateStore,
        *,
        max_entries: int = 512,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, DialogueState]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _put(self, state: DialogueState) -> None:
        if self.max_entries <= 0:
            return
        self._entries[state.partition_key] = (self._clock(), state.model_copy(deep=True))
        self._entries.move_to_end(state.partition_key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, partition_key: str) -> None:
        self._entries.pop(partition_key, None)

    async def get(self, partition_key: str) -> Optional[DialogueState]:
        entry = self._entries.get(partition_key)
        if entry is not None:
            stored_at, state = entry
            fresh = self._clock() - stored_at <= self.ttl_seconds
            if fresh and await self._store.current_version(partition_key) == state.version:
                self._entries.move_to_end(partition_key)
                self.hits += 1
                return state.model_copy(deep=True)
            self.invalidate(partition_key)
        self.misses += 1
        state = await self._store.get(partition_key)
        if state is not None:
            self._put(state)
        return state

    async def current_version(self, partition_key: str) -> Optional[int]:
        return await self._store.current_version(partition_key)

    async def upsert(self, state: DialogueState) -> DialogueState:
        try:
            saved = await self._store.upsert(state)
        except Exception:
            self.invalidate(state.partition_key)
            raise
        self._put(saved)
        return saved.model_copy(deep=True)

    async def claim_pending(self, state: DialogueState) -> bool:
        self.invalidate(state.partition_key)
        return await self._store.claim_pending(state)


__all__ = ["DialogueStateStore", "CachedStateStore"]
