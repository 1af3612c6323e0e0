from .database import (
    LocalDatabase,
    LocalStoreManager,
    StoreHandle,
    StoreOptions,
    encode_key,
)

__all__ = [
    "LocalDatabase",
    "LocalStoreManager",
    "StoreHandle",
    "StoreOptions",
    "encode_key",
]
