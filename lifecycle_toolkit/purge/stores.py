"""
Store adapters for purgeable categories.

``SQLRecordStore`` exposes any mapped table with id, owner and creation
columns as a record store. ``LocalBlobStore`` keeps payloads as files under
a root directory and archives them by copying.
"""

import asyncio
import base64
import json
import logging
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from sqlalchemy import Integer, and_, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..database import session_lock
from ..exceptions import TransientIOError
from ..legal_hold.guard import HoldSnapshot
from .categories import BlobStore, PurgeableRecord, RecordPage, RecordStore

logger = logging.getLogger(__name__)


def encode_page_token(created_at: datetime, record_id: Any) -> str:
    raw = json.dumps([created_at.isoformat(), record_id])
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_page_token(token: str) -> tuple:
    created_at, record_id = json.loads(base64.urlsafe_b64decode(token.encode()))
    return datetime.fromisoformat(created_at), record_id


class SQLRecordStore(RecordStore):
    """
    Record store over a SQLAlchemy mapped class.

    Pages are ordered by ``(created_at, id)`` and continue after the last
    returned key, so deleting returned rows never shifts later pages.
    Queries run in worker threads.

    Example:
        >>> store = SQLRecordStore(engine, ExportRow, category="exports")
        >>> category = StoreBackedCategory("exports", store, LocalBlobStore("/data"))
    """

    def __init__(
        self,
        engine: Engine,
        model: Any,
        category: str,
        id_column: str = "id",
        owner_column: str = "owner_id",
        created_column: str = "created_at",
        deleted_column: Optional[str] = "deleted_at",
        size_column: Optional[str] = "size_bytes",
        blob_column: Optional[str] = "blob_ref",
    ):
        """
        Initialize the store.

        Args:
            engine: Engine of the database holding the table
            model: Mapped class of the table
            category: Data category the rows belong to
            id_column: Primary key attribute
            owner_column: Attribute holding the owning user id
            created_column: Attribute holding the creation timestamp
            deleted_column: Soft delete timestamp attribute (None disables soft delete)
            size_column: Attribute holding the payload size in bytes
            blob_column: Attribute referencing the payload in a blob store
        """
        self.model = model
        self.category = category
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

        self.id_col = getattr(model, id_column)
        self.owner_col = getattr(model, owner_column)
        self.created_col = getattr(model, created_column)
        self.deleted_col = getattr(model, deleted_column) if deleted_column else None
        self.size_col = getattr(model, size_column) if size_column else None
        self.blob_col = getattr(model, blob_column) if blob_column else None

    def _coerce_id(self, record_id: Any) -> Any:
        if isinstance(self.id_col.type, Integer):
            return int(record_id)
        return record_id

    def _to_record(self, row: Any) -> PurgeableRecord:
        return PurgeableRecord(
            id=str(getattr(row, self.id_col.key)),
            owner_id=str(getattr(row, self.owner_col.key)),
            category=self.category,
            created_at=getattr(row, self.created_col.key),
            size_bytes=int(getattr(row, self.size_col.key) or 0) if self.size_col is not None else 0,
            blob_ref=getattr(row, self.blob_col.key) if self.blob_col is not None else None,
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with session_lock(self.engine):
            with self.SessionLocal() as session:
                yield session

    def _eligible_query(self, session: Any, cutoff: datetime, holds: HoldSnapshot) -> Any:
        q = session.query(self.model).filter(self.created_col < cutoff)
        if self.deleted_col is not None:
            q = q.filter(self.deleted_col.is_(None))
        if holds.held_user_ids:
            q = q.filter(self.owner_col.notin_(sorted(holds.held_user_ids)))
        return q

    async def list_eligible(
        self,
        cutoff: datetime,
        holds: HoldSnapshot,
        page_token: Optional[str] = None,
        page_size: int = 100,
    ) -> RecordPage:
        if holds.category_held:
            return RecordPage()
        return await asyncio.to_thread(self._list_page, cutoff, holds, page_token, page_size)

    def _list_page(
        self,
        cutoff: datetime,
        holds: HoldSnapshot,
        page_token: Optional[str],
        page_size: int,
    ) -> RecordPage:
        try:
            with self._session() as session:
                q = self._eligible_query(session, cutoff, holds)
                if page_token:
                    last_created, last_id = decode_page_token(page_token)
                    q = q.filter(
                        or_(
                            self.created_col > last_created,
                            and_(self.created_col == last_created, self.id_col > last_id),
                        )
                    )
                rows = q.order_by(self.created_col, self.id_col).limit(page_size).all()
        except SQLAlchemyError as e:
            raise TransientIOError(
                f"Listing '{self.category}' failed: {e}", category=self.category
            ) from e

        records = [self._to_record(row) for row in rows]
        next_token = None
        if len(rows) == page_size:
            last = rows[-1]
            next_token = encode_page_token(
                getattr(last, self.created_col.key), getattr(last, self.id_col.key)
            )
        return RecordPage(records=records, next_token=next_token)

    async def count_eligible(
        self, cutoff: datetime, holds: HoldSnapshot, page_size: int = 500
    ) -> int:
        if holds.category_held:
            return 0
        return await asyncio.to_thread(self._count, cutoff, holds)

    def _count(self, cutoff: datetime, holds: HoldSnapshot) -> int:
        with self._session() as session:
            q = self._eligible_query(session, cutoff, holds)
            return q.with_entities(func.count(self.id_col)).scalar() or 0

    async def get_records(self, record_ids: Iterable[str]) -> List[PurgeableRecord]:
        ids = [self._coerce_id(i) for i in record_ids]
        if not ids:
            return []
        return await asyncio.to_thread(self._get_records, ids)

    def _get_records(self, ids: List[Any]) -> List[PurgeableRecord]:
        with self._session() as session:
            q = session.query(self.model).filter(self.id_col.in_(ids))
            if self.deleted_col is not None:
                q = q.filter(self.deleted_col.is_(None))
            return [self._to_record(row) for row in q.all()]

    async def mark_soft_deleted(self, record: PurgeableRecord) -> None:
        if self.deleted_col is None:
            raise TransientIOError(
                f"Category '{self.category}' has no soft delete column",
                record_id=record.id,
                category=self.category,
            )
        await asyncio.to_thread(
            self._update_row, record, "Soft delete", {self.deleted_col: datetime.utcnow()}
        )

    async def hard_delete(self, record: PurgeableRecord) -> None:
        await asyncio.to_thread(self._update_row, record, "Hard delete", None)

    def _update_row(
        self, record: PurgeableRecord, action: str, values: Optional[Dict[Any, Any]]
    ) -> None:
        """Set ``values`` on the record's row, or delete the row when None."""
        try:
            with self._session() as session:
                q = session.query(self.model).filter(self.id_col == self._coerce_id(record.id))
                if values is None:
                    q.delete(synchronize_session=False)
                else:
                    q.update(values, synchronize_session=False)
                session.commit()
        except SQLAlchemyError as e:
            raise TransientIOError(
                f"{action} of {record.id} failed: {e}",
                record_id=record.id,
                category=self.category,
            ) from e


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem. File operations run in worker threads."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, blob_ref: str) -> Path:
        path = (self.root / blob_ref).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob reference escapes the store root: {blob_ref}")
        return path

    async def archive(self, record: PurgeableRecord, destination: str) -> None:
        """
        Copy a record's blob and a JSON manifest under ``destination``.

        Layout: ``<destination>/<category>/<record id>/``.
        """
        await asyncio.to_thread(self._archive, record, destination)

    def _archive(self, record: PurgeableRecord, destination: str) -> None:
        target = Path(destination) / record.category / record.id
        try:
            target.mkdir(parents=True, exist_ok=True)
            if record.blob_ref:
                source = self.path_for(record.blob_ref)
                shutil.copy2(source, target / source.name)
            manifest = {
                "id": record.id,
                "owner_id": record.owner_id,
                "category": record.category,
                "created_at": record.created_at.isoformat(),
                "size_bytes": record.size_bytes,
                "blob_ref": record.blob_ref,
                "archived_at": datetime.utcnow().isoformat(),
            }
            with open(target / "record.json", "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
        except OSError as e:
            raise TransientIOError(
                f"Archiving {record.id} to {destination} failed: {e}",
                record_id=record.id,
                category=record.category,
            ) from e

    async def delete(self, blob_ref: str) -> None:
        await asyncio.to_thread(self._delete, blob_ref)

    def _delete(self, blob_ref: str) -> None:
        try:
            self.path_for(blob_ref).unlink(missing_ok=True)
        except OSError as e:
            raise TransientIOError(f"Deleting blob {blob_ref} failed: {e}") from e
