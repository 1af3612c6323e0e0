"""
Offline actions and how they apply to store state.

Every local write is recorded as one of a closed set of actions. Actions are
journaled before they touch the local store and replayed on top of the fresh
remote state during each sync cycle, so application must be deterministic:
``apply_action`` never reads the clock and never mutates its input.
"""

import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import ActionDecodeError
from .patch import is_patch, merge

logger = logging.getLogger(__name__)

STORE_FIELD = "__store"
COLLECTION_FIELD = "__collection"
CREATED_AT_FIELD = "__created_at"
UPDATED_AT_FIELD = "__updated_at"
DELETED_AT_FIELD = "__deleted_at"

# Fields implied by where an item is stored; never written into chunks.
LOCATION_FIELDS = (STORE_FIELD, COLLECTION_FIELD)

DeletionStrategy = Literal["soft", "hard"]

Item = Dict[str, Any]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_action_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Action models
# =============================================================================


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_action_id, description="Journal entry id")
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    store: str = Field(..., description="Remote store the action targets")


class AddItemAction(_ActionBase):
    """Insert an item, replacing any item with the same id."""

    kind: Literal["add"] = "add"
    collection: str
    payload: Item


class RemoveItemAction(_ActionBase):
    """Remove an item by id (soft or hard, depending on configuration)."""

    kind: Literal["remove"] = "remove"
    collection: str
    payload: str = Field(..., description="Id of the item to remove")


class ItemChanges(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    changes: Item


class UpdateItemAction(_ActionBase):
    """Shallow-merge ``changes`` into an existing item."""

    kind: Literal["update"] = "update"
    collection: str
    payload: ItemChanges


class MetaAction(_ActionBase):
    """Update store metadata (``collection=None``) or collection metadata.

    A tagged patch payload is merged structurally; anything else replaces the
    metadata object.
    """

    kind: Literal["meta"] = "meta"
    collection: Optional[str] = None
    payload: Dict[str, Any]


Action = Union[AddItemAction, RemoveItemAction, UpdateItemAction, MetaAction]

ACTION_TYPES = {
    "add": AddItemAction,
    "remove": RemoveItemAction,
    "update": UpdateItemAction,
    "meta": MetaAction,
}


def parse_action(data: Dict[str, Any]) -> Action:
    """
    Decode a serialized action.

    Args:
        data: Dict as produced by ``serialize_action``

    Returns:
        The matching action model

    Raises:
        ActionDecodeError: If the kind is unknown or the fields are invalid
    """
    if not isinstance(data, dict):
        raise ActionDecodeError(f"Action must be an object, got {type(data).__name__}")

    kind = data.get("kind")
    model_class = ACTION_TYPES.get(kind)
    if model_class is None:
        raise ActionDecodeError(
            f"Unknown action kind: {kind!r} (expected one of {list(ACTION_TYPES)})"
        )

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        raise ActionDecodeError(f"Invalid {kind} action: {e}") from e


def serialize_action(action: Action) -> Dict[str, Any]:
    return action.model_dump(mode="json")


# =============================================================================
# Store state
# =============================================================================


@dataclass
class StoreState:
    """Materialized items and metadata of one store.

    ``items`` is keyed by ``(collection, id)``; ``meta`` by collection name,
    with ``None`` for the store's root metadata.
    """

    store: str
    items: Dict[tuple, Item] = field(default_factory=dict)
    meta: Dict[Optional[str], Dict[str, Any]] = field(default_factory=dict)

    def copy(self) -> "StoreState":
        return StoreState(
            store=self.store,
            items=copy.deepcopy(self.items),
            meta=copy.deepcopy(self.meta),
        )

    def collections(self) -> list:
        """Collection names in first-seen order (metadata first, then items)."""
        names: Dict[str, None] = {}
        for name in self.meta:
            if name is not None:
                names[name] = None
        for collection, _ in self.items:
            names[collection] = None
        return list(names)

    def collection_items(self, collection: str) -> list:
        return [item for (c, _), item in self.items.items() if c == collection]


def stamp_action(action: Action) -> Action:
    """Fill in the bookkeeping fields an action's item needs.

    ``add`` gets store, collection and both timestamps (an explicit
    ``__created_at`` on the payload is kept); ``update`` gets ``__updated_at``.
    """
    if isinstance(action, AddItemAction):
        payload = dict(action.payload)
        created_at = payload.get(CREATED_AT_FIELD, action.timestamp)
        payload[STORE_FIELD] = action.store
        payload[COLLECTION_FIELD] = action.collection
        payload[CREATED_AT_FIELD] = created_at
        payload[UPDATED_AT_FIELD] = max(created_at, action.timestamp)
        return action.model_copy(update={"payload": payload})
    if isinstance(action, UpdateItemAction):
        changes = dict(action.payload.changes)
        changes[UPDATED_AT_FIELD] = action.timestamp
        return action.model_copy(
            update={"payload": ItemChanges(id=action.payload.id, changes=changes)}
        )
    return action


def _apply(
    state: StoreState, action: Action, deletion_strategy: DeletionStrategy
) -> None:
    if isinstance(action, MetaAction):
        current = state.meta.get(action.collection, {})
        if is_patch(action.payload):
            state.meta[action.collection] = merge(current, action.payload)
        else:
            state.meta[action.collection] = copy.deepcopy(action.payload)
        return

    if isinstance(action, AddItemAction):
        item = copy.deepcopy(action.payload)
        if "id" not in item:
            raise ActionDecodeError(f"Add action {action.id} carries no item id")
        item[STORE_FIELD] = action.store
        item[COLLECTION_FIELD] = action.collection
        item.setdefault(CREATED_AT_FIELD, action.timestamp)
        item.setdefault(UPDATED_AT_FIELD, item[CREATED_AT_FIELD])
        state.items[(action.collection, item["id"])] = item
        return

    if isinstance(action, UpdateItemAction):
        key = (action.collection, action.payload.id)
        existing = state.items.get(key)
        if existing is None:
            logger.debug(f"Skipping update of missing item {key}")
            return
        updated = {**existing, **copy.deepcopy(action.payload.changes)}
        updated["id"] = existing["id"]
        updated[STORE_FIELD] = action.store
        updated[COLLECTION_FIELD] = action.collection
        created_at = updated.get(CREATED_AT_FIELD, action.timestamp)
        updated[UPDATED_AT_FIELD] = max(
            created_at, updated.get(UPDATED_AT_FIELD, action.timestamp)
        )
        state.items[key] = updated
        return

    if isinstance(action, RemoveItemAction):
        key = (action.collection, action.payload)
        if key not in state.items:
            logger.debug(f"Skipping removal of missing item {key}")
            return
        if deletion_strategy == "hard":
            del state.items[key]
        else:
            state.items[key] = {**state.items[key], DELETED_AT_FIELD: action.timestamp}
        return

    raise ActionDecodeError(f"Unsupported action type: {type(action).__name__}")


def apply_action(
    state: StoreState, action: Action, deletion_strategy: DeletionStrategy = "soft"
) -> StoreState:
    """Return the state after ``action``; ``state`` itself is not modified."""
    new_state = state.copy()
    _apply(new_state, action, deletion_strategy)
    return new_state


def apply_actions(
    state: StoreState,
    actions: Iterable[Action],
    deletion_strategy: DeletionStrategy = "soft",
) -> StoreState:
    """Apply ``actions`` in order on a single copy of ``state``."""
    new_state = state.copy()
    for action in actions:
        if action.store != state.store:
            continue
        _apply(new_state, action, deletion_strategy)
    return new_state


def strip_location(item: Item) -> Item:
    """Drop the fields implied by the item's storage location."""
    return {k: v for k, v in item.items() if k not in LOCATION_FIELDS}


def restore_location(item: Item, store: str, collection: str) -> Item:
    return {**item, STORE_FIELD: store, COLLECTION_FIELD: collection}


def is_deleted(item: Item) -> bool:
    return item.get(DELETED_AT_FIELD) is not None
