"""
Local-first sync engine.

Writes go to the action journal and are applied to the local store right
away; reads only ever touch the local store. A debounced sync cycle later
replays the journaled actions on top of the current remote state and commits
the result as one atomic remote commit per store.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..config import GitrayConfig
from ..exceptions import GitrayError, HashMismatchError, RemoteContentError
from ..local.database import LocalStoreManager, StoreHandle, StoreOptions
from ..remote.base import RemoteStore
from . import patch as structural
from .actions import (
    COLLECTION_FIELD,
    CREATED_AT_FIELD,
    STORE_FIELD,
    Action,
    AddItemAction,
    ItemChanges,
    MetaAction,
    RemoveItemAction,
    StoreState,
    UpdateItemAction,
    apply_action,
    apply_actions,
    is_deleted,
    new_action_id,
    restore_location,
    stamp_action,
    strip_location,
)
from .assets import (
    decode_assets,
    default_asset_path,
    encode_assets,
    extract_assets,
    iter_strings,
)
from .diff import build_path_map, diff
from .journal import STASH_OPTIONS, STASH_STORE, ActionJournal
from .scheduler import BatchScheduler
from .sha import hash_content
from .structure import (
    ROOT_META_PATH,
    CollectionDetail,
    DetailEntry,
    StoreDetail,
    StoreStructure,
    chunk_path,
    collection_meta_path,
    decode_json,
    encode_json,
)

logger = logging.getLogger(__name__)

ITEM_STORE = "__item"
META_STORE = "__meta"
SNAPSHOT_STORE = "__snapshot"
BLOB_STORE = "__blob"

COMMIT_MESSAGE = "[Gitray] Batch update for {store}"

ChangeListener = Callable[[str], None]
SyncProcessor = Callable[[Dict[str, Optional[str]]], None]


def _meta_path(store: str, collection: Optional[str] = None) -> str:
    return store if collection is None else f"{store}/{collection}"


class Gitray:
    """
    Sync engine for collection-oriented stores kept in git repositories.

    Args:
        config: Engine settings (defaults when None)
        remote: Remote object store backend
        local: Local store manager; one is created from ``config.data_dir``
            when omitted and closed together with the engine

    Example:
        >>> async with Gitray(GitrayConfig(), MemoryRemote()) as gitray:
        ...     store = await gitray.create_store("books")
        ...     await gitray.init_store(store)
        ...     gitray.add(store, "bills", {"id": "b1", "amount": 12})
        ...     await gitray.flush()
    """

    def __init__(
        self,
        config: Optional[GitrayConfig],
        remote: RemoteStore,
        local: Optional[LocalStoreManager] = None,
    ):
        self.config = (config or GitrayConfig()).validate()
        self.remote = remote
        self.local = local or LocalStoreManager(self.config.data_dir)
        self._owns_local = local is None

        self.scheduler = BatchScheduler(
            self.sync,
            delay=self.config.debounce_seconds,
            max_delay=self.config.max_debounce_seconds,
            has_pending=self.is_need_sync,
        )
        self.journal: Optional[ActionJournal] = None
        self._items: Optional[StoreHandle] = None
        self._meta: Optional[StoreHandle] = None
        self._snapshots: Optional[StoreHandle] = None
        self._blobs: Optional[StoreHandle] = None

        self._dirty: set = set()
        self._change_listeners: List[ChangeListener] = []
        self._sync_processors: List[SyncProcessor] = []
        self._sync_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _item_options(self) -> StoreOptions:
        indexes = {
            "id": ("id",),
            "store": (STORE_FIELD,),
            "store_collection": (STORE_FIELD, COLLECTION_FIELD),
            "store_created": (STORE_FIELD, CREATED_AT_FIELD),
        }
        for key in self.config.order_keys:
            indexes[f"store_{key}"] = (STORE_FIELD, key)
        return StoreOptions(key_path=(STORE_FIELD, "id"), indexes=indexes)

    def _open_stores(self) -> None:
        db = self.config.db_name
        self._items = self.local.ensure_store(db, ITEM_STORE, self._item_options())
        self._meta = self.local.ensure_store(
            db, META_STORE, StoreOptions(key_path="path", indexes={"store": ("store",)})
        )
        self.journal = ActionJournal(
            self.local.ensure_store(db, STASH_STORE, STASH_OPTIONS)
        )
        self._snapshots = self.local.ensure_store(
            db, SNAPSHOT_STORE, StoreOptions(key_path="store")
        )
        self._blobs = self.local.ensure_store(
            db,
            BLOB_STORE,
            StoreOptions(key_path=("store", "path"), indexes={"store": ("store",)}),
        )

    async def open(self) -> "Gitray":
        """Open local stores, recover interrupted work and resume syncing."""
        self._open_stores()
        recovered = self.journal.recover()
        if recovered:
            logger.info(f"Resuming {recovered} action(s) interrupted mid-commit")
        if self.is_need_sync():
            self.scheduler.notify()
        return self

    async def close(self) -> None:
        await self.scheduler.close()
        if self._owns_local:
            self.local.close()

    async def __aenter__(self) -> "Gitray":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _require_open(self) -> None:
        if self.journal is None:
            raise GitrayError("Gitray is not open; call open() first")

    # =========================================================================
    # Remote store management
    # =========================================================================

    async def create_store(self, name: str) -> str:
        """Create a remote store and return its full name."""
        return await self.remote.create_store(name)

    async def list_stores(self) -> List[str]:
        return await self.remote.list_stores()

    async def get_asset(self, store: str, reference: str) -> bytes:
        """Download an uploaded asset by its stored path or URL."""
        return await self.remote.fetch_asset(store, reference)

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(store)`` whenever local data of a store changes."""
        self._change_listeners.append(listener)
        return lambda: self._unsubscribe(self._change_listeners, listener)

    def on_sync(self, processor: SyncProcessor) -> Callable[[], None]:
        """Call ``processor(results)`` after every sync cycle.

        ``results`` maps each synced store to its new commit id, or None when
        nothing was committed or the cycle failed for that store.
        """
        self._sync_processors.append(processor)
        return lambda: self._unsubscribe(self._sync_processors, processor)

    @staticmethod
    def _unsubscribe(listeners: list, listener) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _emit_change(self, store: str) -> None:
        for listener in list(self._change_listeners):
            try:
                listener(store)
            except Exception:
                logger.exception(f"Change listener failed for {store}")

    def _emit_sync(self, results: Dict[str, Optional[str]]) -> None:
        for processor in list(self._sync_processors):
            try:
                processor(results)
            except Exception:
                logger.exception("Sync processor failed")

    # =========================================================================
    # Local state
    # =========================================================================

    def _meta_record(
        self, store: str, collection: Optional[str], value: Dict[str, Any]
    ) -> Dict[str, Any]:
        return {
            "path": _meta_path(store, collection),
            "store": store,
            "collection": collection,
            "value": value,
        }

    def _write_state(self, state: StoreState, conn) -> None:
        self._items.delete_where({STORE_FIELD: state.store}, conn=conn)
        self._items.put_many(list(state.items.values()), conn=conn)
        self._meta.delete_where({"store": state.store}, conn=conn)
        self._meta.put_many(
            [
                self._meta_record(state.store, collection, value)
                for collection, value in state.meta.items()
            ],
            conn=conn,
        )

    def _apply_local(self, action: Action, conn) -> None:
        """Apply one action to the local store, touching only what it affects."""
        strategy = self.config.deletion_strategy
        state = StoreState(action.store)

        if isinstance(action, MetaAction):
            path = _meta_path(action.store, action.collection)
            record = self._meta.get(path, conn=conn)
            if record is not None:
                state.meta[action.collection] = record["value"]
            new_state = apply_action(state, action, strategy)
            self._meta.put(
                self._meta_record(
                    action.store, action.collection, new_state.meta[action.collection]
                ),
                conn=conn,
            )
            return

        if isinstance(action, AddItemAction):
            item_id = action.payload["id"]
        elif isinstance(action, UpdateItemAction):
            item_id = action.payload.id
        else:
            item_id = action.payload

        key = (action.collection, item_id)
        existing = self._items.get((action.store, item_id), conn=conn)
        if existing is not None and existing.get(COLLECTION_FIELD) == action.collection:
            state.items[key] = existing

        new_state = apply_action(state, action, strategy)
        item = new_state.items.get(key)
        if item is not None:
            self._items.put(item, conn=conn)
        elif existing is not None and key in state.items:
            self._items.delete((action.store, item_id), conn=conn)

    # =========================================================================
    # Writes
    # =========================================================================

    def batch(self, actions: Iterable[Action]) -> List[str]:
        """
        Journal actions and apply them to the local store.

        Args:
            actions: Actions in the order they should apply

        Returns:
            Journal entry ids of the recorded actions
        """
        self._require_open()
        prepared = [self._prepare(action) for action in actions]
        if not prepared:
            return []

        with self.local.open(self.config.db_name).transaction() as conn:
            for action in prepared:
                self.journal.append(action, conn=conn)
                self._apply_local(action, conn)

        for store in dict.fromkeys(a.store for a in prepared):
            self._emit_change(store)
        self.scheduler.notify()
        return [a.id for a in prepared]

    def _prepare(self, action: Action) -> Action:
        action = stamp_action(action)
        if isinstance(action, AddItemAction):
            if "id" not in action.payload:
                raise ValueError(f"Item added to {action.collection} has no id")
            return action.model_copy(update={"payload": encode_assets(action.payload)})
        if isinstance(action, UpdateItemAction):
            changes = encode_assets(action.payload.changes)
            return action.model_copy(
                update={"payload": ItemChanges(id=action.payload.id, changes=changes)}
            )
        if isinstance(action, MetaAction):
            return action.model_copy(update={"payload": encode_assets(action.payload)})
        return action

    def add(self, store: str, collection: str, item: Dict[str, Any]) -> str:
        """Add (or replace) an item; an id is generated when missing."""
        item = dict(item)
        item.setdefault("id", new_action_id())
        self.batch(
            [AddItemAction(store=store, collection=collection, payload=item)]
        )
        return item["id"]

    def update(
        self, store: str, collection: str, item_id: str, changes: Dict[str, Any]
    ) -> str:
        ids = self.batch(
            [
                UpdateItemAction(
                    store=store,
                    collection=collection,
                    payload=ItemChanges(id=item_id, changes=changes),
                )
            ]
        )
        return ids[0]

    def remove(self, store: str, collection: str, item_id: str) -> str:
        ids = self.batch(
            [RemoveItemAction(store=store, collection=collection, payload=item_id)]
        )
        return ids[0]

    def set_meta(
        self,
        store: str,
        meta: Dict[str, Any],
        collection: Optional[str] = None,
    ) -> Optional[str]:
        """
        Update store or collection metadata.

        Only the fields that differ from the current local metadata are sent,
        as a structural patch, so concurrent edits of other fields survive.

        Returns:
            The journal entry id, or None when nothing changed
        """
        if structural.is_patch(meta):
            patch = meta
        else:
            current = encode_assets(self.get_meta(store, collection))
            patch = structural.diff(current, encode_assets(meta), deletions=True)
        if structural.is_empty_patch(patch):
            return None
        ids = self.batch(
            [MetaAction(store=store, collection=collection, payload=patch)]
        )
        return ids[0]

    # =========================================================================
    # Reads
    # =========================================================================

    def get_all_items(
        self,
        store: str,
        collection: Optional[str] = None,
        order_by: Tuple[str, str] = (CREATED_AT_FIELD, "desc"),
        include_deleted: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Read items from the local store.

        Args:
            store: Store name
            collection: Restrict to one collection
            order_by: ``(field, "asc" | "desc")``
            include_deleted: Also return soft-deleted items

        Returns:
            Items with bookkeeping fields; binaries not yet uploaded are
            returned as ``Asset`` objects
        """
        self._require_open()
        where = {STORE_FIELD: store}
        if collection is not None:
            where[COLLECTION_FIELD] = collection
        field, direction = order_by
        items = self._items.find(
            where=where, order_by=field, descending=direction == "desc"
        )
        return [
            decode_assets(item)
            for item in items
            if include_deleted or not is_deleted(item)
        ]

    def get_item(self, store: str, item_id: str) -> Optional[Dict[str, Any]]:
        self._require_open()
        item = self._items.get((store, item_id))
        return decode_assets(item) if item is not None else None

    def get_meta(self, store: str, collection: Optional[str] = None) -> Dict[str, Any]:
        self._require_open()
        record = self._meta.get(_meta_path(store, collection))
        return decode_assets(record["value"]) if record else {}

    # =========================================================================
    # Remote state
    # =========================================================================

    def _load_snapshot(self, store: str) -> Optional[StoreStructure]:
        if store in self._dirty:
            return None
        record = self._snapshots.get(store)
        return StoreStructure.from_dict(record["structure"]) if record else None

    async def _load_remote_state(
        self, store: str, structure: StoreStructure, changed: Optional[set]
    ) -> StoreState:
        """
        Rebuild a store's state from its remote tree.

        Args:
            store: Store name
            structure: Current remote structure
            changed: Paths known to differ from the last snapshot; None when
                there is no trusted snapshot and every path must be fetched

        Returns:
            StoreState holding the remote items and metadata
        """
        json_refs = [structure.meta]
        for collection in structure.collections:
            json_refs.append(collection.meta)
            json_refs.extend(collection.chunks)

        contents: Dict[str, Any] = {}
        to_fetch = []
        for ref in json_refs:
            if not ref.hash:
                continue
            cached = None
            if changed is not None and ref.path not in changed:
                cached = self._blobs.get((store, ref.path))
            if cached is not None and cached["hash"] == ref.hash:
                contents[ref.path] = cached["content"]
            else:
                to_fetch.append(ref)

        if to_fetch:
            logger.debug(f"Fetching {len(to_fetch)} file(s) from {store}")
            fetched = await self.remote.fetch_content(store, to_fetch)
            for path, payload in fetched.items():
                try:
                    contents[path] = decode_json(payload)
                except ValueError as e:
                    raise RemoteContentError(path, str(e)) from e

        state = StoreState(store)
        root_meta = contents.get(structure.meta.path)
        if root_meta:
            state.meta[None] = root_meta
        for collection in structure.collections:
            state.meta[collection.name] = contents.get(collection.meta.path) or {}
            for chunk in collection.chunks:
                items = contents.get(chunk.path) or []
                if not isinstance(items, list) or not all(
                    isinstance(item, dict) and "id" in item for item in items
                ):
                    raise RemoteContentError(chunk.path, "not a list of items")
                for item in items:
                    state.items[(collection.name, item["id"])] = restore_location(
                        item, store, collection.name
                    )
        return state

    async def _build_detail(
        self, state: StoreState, remote: StoreStructure
    ) -> Tuple[StoreDetail, StoreState]:
        """
        Lay out a state as remote files.

        Returns:
            The StoreDetail to commit and the state as it reads once committed
            (binaries replaced by their asset URLs)
        """
        store = state.store
        per_chunk = self.config.items_per_chunk
        committed = StoreState(store, meta=dict(state.meta))

        root_payload = encode_json(state.meta.get(None, {}))
        detail = StoreDetail(
            meta=DetailEntry(
                path=ROOT_META_PATH,
                hash=await hash_content(root_payload),
                content=state.meta.get(None, {}),
                payload=root_payload,
            )
        )

        for name in state.collections():
            items = sorted(
                state.collection_items(name),
                key=lambda i: (i.get(CREATED_AT_FIELD, 0), str(i["id"])),
            )

            def path_fn(binary, collection=name):
                path = default_asset_path(collection, binary)
                return self.remote.asset_url(store, path), path

            extracted = extract_assets([decode_assets(i) for i in items], path_fn)
            for item in extracted.items:
                committed.items[(name, item["id"])] = item

            assets: Dict[str, DetailEntry] = {}
            for asset in extracted.assets:
                if asset.path not in assets:
                    data = asset.data
                    assets[asset.path] = DetailEntry(
                        path=asset.path, hash=await hash_content(data), payload=data
                    )

            remote_collection = remote.get_collection(name)
            if remote_collection is not None:
                referenced = set(iter_strings(extracted.items))
                for ref in remote_collection.assets:
                    if ref.path in assets:
                        continue
                    if (
                        ref.path in referenced
                        or self.remote.asset_url(store, ref.path) in referenced
                    ):
                        assets[ref.path] = DetailEntry(path=ref.path, hash=ref.hash)

            stored = [strip_location(i) for i in extracted.items]
            chunks = []
            for start in range(0, len(stored), per_chunk):
                content = stored[start : start + per_chunk]
                payload = encode_json(content)
                chunks.append(
                    DetailEntry(
                        path=chunk_path(name, self.config.entry_name, start),
                        hash=await hash_content(payload),
                        content=content,
                        payload=payload,
                    )
                )

            meta_content = state.meta.get(name, {})
            meta_payload = encode_json(meta_content)
            detail.collections.append(
                CollectionDetail(
                    name=name,
                    meta=DetailEntry(
                        path=collection_meta_path(name),
                        hash=await hash_content(meta_payload),
                        content=meta_content,
                        payload=meta_payload,
                    ),
                    chunks=chunks,
                    assets=[assets[path] for path in sorted(assets)],
                )
            )

        return detail, committed

    # =========================================================================
    # Sync
    # =========================================================================

    async def init_store(self, store: str) -> None:
        """Replace local data of ``store`` with the remote state.

        Actions still waiting in the journal are re-applied on top, so local
        edits that were not committed yet stay visible.
        """
        self._require_open()
        async with self._sync_lock:
            structure = await self.remote.fetch_structure(store)
            base = await self._load_remote_state(store, structure, changed=None)
            with self.local.open(self.config.db_name).transaction() as conn:
                pending = self.journal.pending(store, conn=conn)
                state = apply_actions(base, pending, self.config.deletion_strategy)
                self._write_state(state, conn)
                self._snapshots.put(
                    {"store": store, "structure": structure.to_dict()}, conn=conn
                )
            self._dirty.discard(store)
        logger.info(f"Initialized {store}: {len(state.items)} item(s)")
        self._emit_change(store)

    def force_need_sync(self, store: str) -> None:
        """Distrust the last-known remote structure of ``store``.

        The next cycle re-reads every file of the store and commits any
        difference, even when no local action is pending.
        """
        self._dirty.add(store)
        if self._snapshots is not None:
            self._snapshots.delete(store)
        self.scheduler.notify()

    def is_need_sync(self) -> bool:
        if self.journal is None:
            return False
        return bool(self._dirty) or self.journal.has_pending()

    async def flush(self) -> Optional[Dict[str, Optional[str]]]:
        """Run a sync cycle now instead of waiting for the debounce timer.

        Returns:
            The results of ``sync``, or None when the cycle failed. The error
            is not raised here; it is kept in ``scheduler.last_error`` and the
            scheduler retries with back-off.
        """
        return await self.scheduler.flush()

    async def sync(self) -> Dict[str, Optional[str]]:
        """
        Run one sync cycle.

        Returns:
            Store name -> new commit id (None when nothing needed committing)

        Raises:
            GitrayError: The first failure, after every store was attempted;
                failed actions are back in the journal
            Exception: Any other error stops the cycle at once; every drained
                action that was not committed is back in the journal
        """
        self._require_open()
        async with self._sync_lock:
            actions = self.journal.drain()
            grouped: Dict[str, List[Action]] = {}
            for action in actions:
                grouped.setdefault(action.store, []).append(action)
            for store in sorted(self._dirty):
                grouped.setdefault(store, [])
            if not grouped:
                return {}

            results: Dict[str, Optional[str]] = {}
            errors: List[Exception] = []
            committed: set = set()
            try:
                for store, store_actions in grouped.items():
                    try:
                        results[store] = await self._sync_store(store, store_actions)
                        committed.add(store)
                    except HashMismatchError as e:
                        logger.warning(f"Remote changed during sync of {store}: {e}")
                        self._dirty.add(store)
                        results[store] = None
                        errors.append(e)
                    except (GitrayError, asyncio.TimeoutError) as e:
                        logger.error(f"Sync of {store} failed, will retry: {e}")
                        results[store] = None
                        errors.append(e)
            finally:
                # Every drained entry not committed goes back to pending, even
                # for stores the cycle never reached.
                self.journal.commit_failure(
                    a.id
                    for store, store_actions in grouped.items()
                    if store not in committed
                    for a in store_actions
                )

        self._emit_sync(results)
        if errors:
            raise errors[0]
        return results

    async def _sync_store(self, store: str, actions: List[Action]) -> Optional[str]:
        snapshot = self._load_snapshot(store)
        remote = await self.remote.fetch_structure(store)

        changed: Optional[set] = None
        if snapshot is not None:
            external, removed = diff(snapshot, remote)
            changed = set(external)
            if external or removed:
                logger.info(
                    f"{store} changed remotely: {len(external)} changed, "
                    f"{len(removed)} removed"
                )

        base = await self._load_remote_state(store, remote, changed)
        state = apply_actions(base, actions, self.config.deletion_strategy)
        detail, committed = await self._build_detail(state, remote)
        local = detail.structure()

        to_write, to_delete = diff(remote, local)
        remote_hashes = build_path_map(remote)
        entries = detail.files()
        files = {path: entries[path].payload for path in to_write}
        deletions = [path for path in to_delete if remote_hashes.get(path)]

        commit_id = None
        if files or deletions:
            message = "\n".join(
                [COMMIT_MESSAGE.format(store=store), ""]
                + [f"update {path}" for path in sorted(files)]
                + [f"delete {path}" for path in sorted(deletions)]
            )
            commit_id = await asyncio.wait_for(
                self.remote.commit(store, files, deletions, message),
                timeout=self.config.commit_timeout,
            )
            logger.info(
                f"Synced {store}: {len(files)} written, {len(deletions)} deleted "
                f"({len(actions)} action(s))"
            )
        else:
            logger.debug(f"Nothing to commit for {store}")

        with self.local.open(self.config.db_name).transaction() as conn:
            pending = self.journal.pending(store, conn=conn)
            final = apply_actions(committed, pending, self.config.deletion_strategy)
            self._write_state(final, conn)
            self._snapshots.put(
                {"store": store, "structure": local.to_dict()}, conn=conn
            )
            self._blobs.delete_where({"store": store}, conn=conn)
            self._blobs.put_many(
                [
                    {
                        "store": store,
                        "path": entry.path,
                        "hash": entry.hash,
                        "content": entry.content,
                    }
                    for entry in detail.entries()
                    if entry.content is not None
                ],
                conn=conn,
            )
            self.journal.commit_success([a.id for a in actions], conn=conn)

        self._dirty.discard(store)
        self._emit_change(store)
        return commit_id

    async def clear_all(self) -> None:
        """Drop every local store, including unsynced actions. Irreversible."""
        self.scheduler.cancel()
        async with self._sync_lock:
            self.local.delete_database(self.config.db_name)
            self._dirty.clear()
            self._open_stores()
        logger.warning(f"Cleared local database {self.config.db_name}")
