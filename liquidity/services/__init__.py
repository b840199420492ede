"""Services package."""

from liquidity.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    InMemoryStore,
    NotFoundError,
    PersistenceError,
    SqlStore,
    Store,
)

__all__ = [
    "AuditStorageInterface",
    "DuplicateError",
    "InMemoryStore",
    "NotFoundError",
    "PersistenceError",
    "SqlStore",
    "Store",
]
