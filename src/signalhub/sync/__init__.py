"""CRM sync engine -- identity-mapped pull/push with conflict detection.

Provides:
- SyncEngine: sync_entity_type, incremental_sync, resolve_conflict,
  log_activity_to_crm
- FieldMapping / FieldMappingStore: per-connection field translation
- SyncJob state machine, SyncResult, SyncConflict, EntityIdentityMapping
"""

from src.signalhub.sync.engine import SyncEngine
from src.signalhub.sync.field_mapping import (
    FieldMapping,
    FieldMappingStore,
    FieldPair,
    map_crm_to_internal,
    map_internal_to_crm,
)
from src.signalhub.sync.schemas import (
    ENTITY_TABLES,
    ActivityLogResult,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictResolution,
    EntityIdentityMapping,
    InvalidTransitionError,
    SyncConflict,
    SyncJob,
    SyncJobStatus,
    SyncResult,
)

__all__ = [
    "SyncEngine",
    "FieldMapping",
    "FieldMappingStore",
    "FieldPair",
    "map_crm_to_internal",
    "map_internal_to_crm",
    "ENTITY_TABLES",
    "ActivityLogResult",
    "ConflictAlreadyResolvedError",
    "ConflictNotFoundError",
    "ConflictResolution",
    "EntityIdentityMapping",
    "InvalidTransitionError",
    "SyncConflict",
    "SyncJob",
    "SyncJobStatus",
    "SyncResult",
]
