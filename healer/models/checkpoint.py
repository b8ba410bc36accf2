"""
Checkpoint Model
================
On-disk checkpoint metadata and rollback results.

``CheckpointMetadata`` serializes with camelCase keys:

    {id, description, timestamp, fileCount, totalSize, integrity,
     files: {relativePath: {size, mtime, checksum}}, metadata}

File bodies live once in the content-addressed object store, keyed by
``checksum``; the metadata only references them.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileRecord(_CamelModel):
    size: int
    mtime: float
    checksum: str


class CheckpointMetadata(_CamelModel):
    id: str
    description: str = ""
    timestamp: float
    file_count: int = 0
    total_size: int = 0
    integrity: str = ""
    files: Dict[str, FileRecord] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CheckpointSummary(_CamelModel):
    id: str
    description: str = ""
    timestamp: float
    file_count: int = 0
    total_size: int = 0
    pinned: bool = False


class RestorePlan(BaseModel):
    files_to_overwrite: List[str] = Field(default_factory=list)
    files_to_create: List[str] = Field(default_factory=list)
    files_to_delete: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.files_to_overwrite or self.files_to_create or self.files_to_delete)


class RollbackVerification(BaseModel):
    success: bool
    files_verified: int = 0
    mismatches: List[str] = Field(default_factory=list)
    unexpected_files: List[str] = Field(default_factory=list)


class RollbackResult(BaseModel):
    success: bool
    checkpoint_id: str
    dry_run: bool = False
    safety_checkpoint_id: Optional[str] = None
    plan: RestorePlan = Field(default_factory=RestorePlan)
    files_restored: int = 0
    files_deleted: int = 0
    verification: Optional[RollbackVerification] = None
    duration_seconds: float = 0.0
