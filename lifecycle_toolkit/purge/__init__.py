"""
Purge Module - retention enforcement over purgeable data categories.
"""

from .categories import (
    BlobStore,
    CategoryRegistry,
    PurgeableCategory,
    PurgeableRecord,
    RecordPage,
    RecordStore,
    StoreBackedCategory,
    default_resource_type,
)
from .executor import ForcePurgeResult, PurgeExecutor, RunOptions
from .stores import LocalBlobStore, SQLRecordStore

__all__ = [
    # Executor
    "PurgeExecutor",
    "RunOptions",
    "ForcePurgeResult",
    # Categories
    "PurgeableCategory",
    "PurgeableRecord",
    "RecordPage",
    "CategoryRegistry",
    "StoreBackedCategory",
    "default_resource_type",
    # Stores
    "RecordStore",
    "BlobStore",
    "SQLRecordStore",
    "LocalBlobStore",
]
