"""
Purgeable data categories.

Every category of stored data is described by the same small contract so
the executor never needs per-table branches. A category either implements
:class:`PurgeableCategory` directly or is assembled from a
:class:`RecordStore` (rows) and an optional :class:`BlobStore` (files,
objects) through :class:`StoreBackedCategory`.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..exceptions import ConfigurationError
from ..legal_hold.guard import HoldSnapshot
from ..policies.models import DeletionMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeableRecord:
    """A stored record as seen by the purge engine."""

    id: str
    owner_id: str
    category: str
    created_at: datetime
    size_bytes: int = 0
    blob_ref: Optional[str] = None


@dataclass
class RecordPage:
    """One page of eligible records plus the token for the next page."""

    records: List[PurgeableRecord] = field(default_factory=list)
    next_token: Optional[str] = None

    def __len__(self) -> int:
        return len(self.records)


class PurgeableCategory(ABC):
    """
    Descriptor for one data category.

    ``list_eligible`` must return records created before the cutoff that are
    neither purged nor held, in a stable order. Page tokens must stay valid
    when records from earlier pages are deleted (keyset pagination, not
    offsets), otherwise a destructive run would skip records.
    """

    def __init__(self, name: str, resource_type: Optional[str] = None):
        self.name = name
        self.resource_type = resource_type or default_resource_type(name)

    @abstractmethod
    async def list_eligible(
        self,
        cutoff: datetime,
        holds: HoldSnapshot,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> RecordPage:
        """List purge-eligible records created before ``cutoff``."""
        pass

    @abstractmethod
    async def get_records(self, record_ids: Iterable[str]) -> List[PurgeableRecord]:
        """Fetch existing, not yet purged records by id. Unknown ids are omitted."""
        pass

    @abstractmethod
    async def archive_one(self, record: PurgeableRecord, destination: str) -> None:
        """Copy a record to the archive destination."""
        pass

    @abstractmethod
    async def delete_one(self, record: PurgeableRecord, mode: DeletionMode) -> int:
        """
        Delete a record.

        Args:
            record: Record to delete
            mode: Soft (mark deleted) or hard (remove record and blob)

        Returns:
            Storage bytes freed
        """
        pass

    def size_of(self, record: PurgeableRecord) -> int:
        return record.size_bytes

    async def count_eligible(
        self, cutoff: datetime, holds: HoldSnapshot, page_size: int = 500
    ) -> int:
        """Number of records a run would purge now."""
        count = 0
        token: Optional[str] = None
        while True:
            page = await self.list_eligible(cutoff, holds, token, page_size)
            count += len(page.records)
            token = page.next_token
            if not token:
                return count


def default_resource_type(category: str) -> str:
    """
    Singular resource name used in audit actions.

    >>> default_resource_type("exports")
    'export'
    """
    if category.endswith("s") and len(category) > 1:
        return category[:-1]
    return category


class RecordStore(ABC):
    """Row storage behind a category."""

    @abstractmethod
    async def list_eligible(
        self,
        cutoff: datetime,
        holds: HoldSnapshot,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> RecordPage:
        pass

    @abstractmethod
    async def get_records(self, record_ids: Iterable[str]) -> List[PurgeableRecord]:
        pass

    @abstractmethod
    async def mark_soft_deleted(self, record: PurgeableRecord) -> None:
        pass

    @abstractmethod
    async def hard_delete(self, record: PurgeableRecord) -> None:
        pass

    async def count_eligible(
        self, cutoff: datetime, holds: HoldSnapshot, page_size: int = 500
    ) -> int:
        count = 0
        token: Optional[str] = None
        while True:
            page = await self.list_eligible(cutoff, holds, token, page_size)
            count += len(page.records)
            token = page.next_token
            if not token:
                return count


class BlobStore(ABC):
    """Object storage for record payloads."""

    @abstractmethod
    async def archive(self, record: PurgeableRecord, destination: str) -> None:
        pass

    @abstractmethod
    async def delete(self, blob_ref: str) -> None:
        """Remove a blob. Removing a blob that is already gone is not an error."""
        pass


class StoreBackedCategory(PurgeableCategory):
    """Category assembled from a record store and an optional blob store."""

    def __init__(
        self,
        name: str,
        record_store: RecordStore,
        blob_store: Optional[BlobStore] = None,
        resource_type: Optional[str] = None,
    ):
        super().__init__(name, resource_type)
        self.record_store = record_store
        self.blob_store = blob_store

    async def list_eligible(
        self,
        cutoff: datetime,
        holds: HoldSnapshot,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> RecordPage:
        return await self.record_store.list_eligible(cutoff, holds, page_token, page_size)

    async def get_records(self, record_ids: Iterable[str]) -> List[PurgeableRecord]:
        return await self.record_store.get_records(record_ids)

    async def archive_one(self, record: PurgeableRecord, destination: str) -> None:
        if self.blob_store is None:
            raise ConfigurationError(
                f"Category '{self.name}' has no blob store to archive with",
                category=self.name,
            )
        await self.blob_store.archive(record, destination)

    async def delete_one(self, record: PurgeableRecord, mode: DeletionMode) -> int:
        if DeletionMode(mode) == DeletionMode.SOFT:
            await self.record_store.mark_soft_deleted(record)
            return 0

        # Blob before row, the row is the only reference to the blob
        freed = self.size_of(record)
        if self.blob_store is not None and record.blob_ref:
            await self.blob_store.delete(record.blob_ref)
        await self.record_store.hard_delete(record)
        return freed

    async def count_eligible(
        self, cutoff: datetime, holds: HoldSnapshot, page_size: int = 500
    ) -> int:
        return await self.record_store.count_eligible(cutoff, holds, page_size)


class CategoryRegistry:
    """Named set of purgeable categories available to the executor."""

    def __init__(self, categories: Optional[Iterable[PurgeableCategory]] = None):
        self._categories: Dict[str, PurgeableCategory] = {}
        for category in categories or []:
            self.register(category)

    def register(self, category: PurgeableCategory) -> PurgeableCategory:
        """
        Register a category.

        Raises:
            ConfigurationError: If a category with the same name exists
        """
        if category.name in self._categories:
            raise ConfigurationError(
                f"Category '{category.name}' is already registered", category=category.name
            )
        self._categories[category.name] = category
        logger.debug("Registered purgeable category '%s'", category.name)
        return category

    def get(self, name: str) -> Optional[PurgeableCategory]:
        return self._categories.get(name)

    def names(self) -> List[str]:
        return sorted(self._categories)

    def __contains__(self, name: object) -> bool:
        return name in self._categories

    def __len__(self) -> int:
        return len(self._categories)

    def load_factory(self, reference: str) -> None:
        """
        Populate the registry from a ``module:callable`` reference.

        The callable receives this registry and either registers categories
        itself or returns an iterable of categories to register.
        """
        module_name, _, attr = reference.partition(":")
        if not module_name or not attr:
            raise ConfigurationError(
                f"Invalid category factory '{reference}', expected 'module:callable'"
            )
        try:
            module = importlib.import_module(module_name)
            factory: Callable = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot load category factory '{reference}': {e}") from e

        returned = factory(self)
        if returned is not None and returned is not self:
            for category in returned:
                self.register(category)
        logger.info("Loaded %d purgeable categories from %s", len(self), reference)
