"""
Durable journal of local actions awaiting a remote commit.

Entries live in the ``__stash`` sub-store and move through two states::

    append -> pending --drain--> processing --commit_success--> (deleted)
                 ^                    |
                 +--commit_failure----+

Only one batch may be processing at a time. Entries left ``processing`` by a
crash are returned to ``pending`` by ``recover`` on the next start.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from ..exceptions import ActionDecodeError
from ..local.database import StoreHandle, StoreOptions
from .actions import Action, parse_action, serialize_action

logger = logging.getLogger(__name__)

STASH_STORE = "__stash"
STASH_OPTIONS = StoreOptions(
    key_path="id",
    indexes={"seq": ("seq",), "state": ("state",)},
)

PENDING = "pending"
PROCESSING = "processing"


class ActionJournal:
    """FIFO journal of actions backed by a local sub-store."""

    def __init__(self, handle: StoreHandle):
        self.handle = handle

    def _next_seq(self, conn) -> int:
        last = self.handle.find(order_by="seq", descending=True, limit=1, conn=conn)
        return last[0]["seq"] + 1 if last else 1

    def append(self, action: Action, conn=None) -> str:
        """
        Persist an action as a pending entry.

        Args:
            action: Action to record
            conn: Optional connection when appending inside a wider transaction

        Returns:
            The entry id (the action id)
        """
        if conn is None:
            with self.handle.database.transaction() as c:
                return self.append(action, conn=c)

        entry = {
            "id": action.id,
            "seq": self._next_seq(conn),
            "state": PENDING,
            "store": action.store,
            "action": serialize_action(action),
        }
        self.handle.put(entry, conn=conn)
        logger.debug(f"Journaled {action.kind} action {action.id} for {action.store}")
        return action.id

    def _decode(self, entries: List[Dict[str, Any]], conn) -> List[Action]:
        actions = []
        for entry in entries:
            try:
                actions.append(parse_action(entry["action"]))
            except ActionDecodeError as e:
                # Undecodable entries can never be committed.
                logger.error(f"Dropping journal entry {entry['id']}: {e}")
                self.handle.delete(entry["id"], conn=conn)
        return actions

    def drain(self) -> List[Action]:
        """
        Move every pending entry to processing.

        Returns:
            The drained actions in append order, or an empty list when another
            batch is still processing
        """
        with self.handle.database.transaction() as conn:
            if self.handle.count(where={"state": PROCESSING}, conn=conn):
                logger.debug("Journal drain skipped: a batch is already in flight")
                return []
            entries = self.handle.find(
                where={"state": PENDING}, order_by="seq", conn=conn
            )
            if not entries:
                return []
            self.handle.put_many(
                [{**entry, "state": PROCESSING} for entry in entries], conn=conn
            )
            return self._decode(entries, conn)

    def commit_success(self, ids: Iterable[str], conn=None) -> None:
        """Delete committed entries. Unknown ids are ignored."""
        self.handle.delete_many(list(ids), conn=conn)

    def commit_failure(self, ids: Iterable[str]) -> None:
        """Return entries to pending so the next cycle retries them."""
        self._set_state(list(ids), PENDING)

    def _set_state(self, ids: List[str], state: str) -> None:
        if not ids:
            return
        with self.handle.database.transaction() as conn:
            entries = [e for e in self.handle.get_many(ids, conn=conn) if e]
            self.handle.put_many([{**e, "state": state} for e in entries], conn=conn)

    def recover(self) -> int:
        """
        Return entries stranded in processing to pending.

        Returns:
            Number of entries recovered
        """
        with self.handle.database.transaction() as conn:
            stranded = self.handle.find(where={"state": PROCESSING}, conn=conn)
            self.handle.put_many(
                [{**entry, "state": PENDING} for entry in stranded], conn=conn
            )
        if stranded:
            logger.warning(f"Recovered {len(stranded)} interrupted journal entries")
        return len(stranded)

    def entries(self, state: Optional[str] = None) -> List[Dict[str, Any]]:
        where = {"state": state} if state else None
        return self.handle.find(where=where, order_by="seq")

    def pending(self, store: Optional[str] = None, conn=None) -> List[Action]:
        """Pending actions in append order, optionally for one store only."""
        if conn is None:
            with self.handle.database.transaction() as c:
                return self.pending(store, conn=c)

        entries = self.handle.find(where={"state": PENDING}, order_by="seq", conn=conn)
        if store is not None:
            entries = [e for e in entries if e["store"] == store]
        return self._decode(entries, conn)

    def has_pending(self) -> bool:
        return self.handle.count(where={"state": PENDING}) > 0

    def count(self) -> int:
        return self.handle.count()

    @property
    def in_flight(self) -> bool:
        return self.handle.count(where={"state": PROCESSING}) > 0

    def clear(self) -> None:
        self.handle.clear()
