"""
Gitray: local-first sync of collection stores kept in git repositories.

Writes land in a local journal and store immediately; a debounced sync cycle
commits them to the remote repository, deduplicating content by git blob id.
"""

import logging

from .config import GitrayConfig, load_config
from .core.actions import (
    AddItemAction,
    ItemChanges,
    MetaAction,
    RemoveItemAction,
    UpdateItemAction,
)
from .core.assets import Asset
from .core.engine import Gitray
from .exceptions import (
    ActionDecodeError,
    GitrayError,
    HashMismatchError,
    LocalStoreCorruptedError,
    PatchApplicationError,
    RemoteContentError,
    RemoteError,
    RemoteUnavailableError,
    SchemaUpgradeConflictError,
    StoreNotFoundError,
)
from .local.database import LocalStoreManager, StoreOptions
from .remote.base import RemoteStore
from .remote.github import GithubRemote
from .remote.memory import MemoryRemote

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Gitray",
    "GitrayConfig",
    "load_config",
    "AddItemAction",
    "ItemChanges",
    "MetaAction",
    "RemoveItemAction",
    "UpdateItemAction",
    "Asset",
    "LocalStoreManager",
    "StoreOptions",
    "RemoteStore",
    "GithubRemote",
    "MemoryRemote",
    "ActionDecodeError",
    "GitrayError",
    "HashMismatchError",
    "LocalStoreCorruptedError",
    "PatchApplicationError",
    "RemoteContentError",
    "RemoteError",
    "RemoteUnavailableError",
    "SchemaUpgradeConflictError",
    "StoreNotFoundError",
]
