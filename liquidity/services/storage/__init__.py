"""
Storage Services Package

Provides abstract repositories, a unit of work and two backends:
an in-memory store (tests, embedding) and a SQLAlchemy store.
"""

from liquidity.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    NotFoundError,
    PersistenceError,
    Store,
    TemplateRepository,
    TransactionRepository,
    UnitOfWork,
)
from liquidity.services.storage.memory import InMemoryStore
from liquidity.services.storage.sql import SqlStore

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "Store",
    "TemplateRepository",
    "TransactionRepository",
    "UnitOfWork",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "PersistenceError",
    # Implementations
    "InMemoryStore",
    "SqlStore",
]
