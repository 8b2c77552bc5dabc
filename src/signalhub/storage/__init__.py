"""Storage layer -- Repository interface plus SQLAlchemy and in-memory backends.

Provides:
- Repository: get / upsert / query / insert / insert_audit_row over dict records
- SQLAlchemyRepository: async SQLAlchemy implementation (PostgreSQL, SQLite)
- InMemoryRepository: in-process implementation enforcing the same constraints
"""

from src.signalhub.storage.memory import InMemoryRepository
from src.signalhub.storage.repository import (
    DuplicateRecordError,
    Repository,
    RepositoryError,
)
from src.signalhub.storage.sql import SQLAlchemyRepository

__all__ = [
    "Repository",
    "RepositoryError",
    "DuplicateRecordError",
    "SQLAlchemyRepository",
    "InMemoryRepository",
]
