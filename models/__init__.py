"""ORM models exposed by the TaskMirror engine."""
from .comment import Comment
from .field_metadata import FieldMetadata, FieldValue, METADATA_FIELDS
from .project import Label, Project
from .sync_state import ProviderSyncState, SyncCheckpoint
from .task import Task

__all__ = [
    "Comment",
    "FieldMetadata",
    "FieldValue",
    "Label",
    "METADATA_FIELDS",
    "Project",
    "ProviderSyncState",
    "SyncCheckpoint",
    "Task",
]
