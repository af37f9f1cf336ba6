"""
Tests for purgeable category adapters.

Covers the SQL record store (keyset paging, hold filtering, soft and hard
deletes), the local blob store and the category registry.
"""

import asyncio
import json
import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from lifecycle_toolkit.exceptions import ConfigurationError, TransientIOError
from lifecycle_toolkit.legal_hold import HoldSnapshot
from lifecycle_toolkit.policies import DeletionMode
from lifecycle_toolkit.purge import (
    CategoryRegistry,
    LocalBlobStore,
    PurgeableRecord,
    SQLRecordStore,
    StoreBackedCategory,
    default_resource_type,
)
from lifecycle_toolkit.purge.stores import decode_page_token, encode_page_token
from lifecycle_toolkit.service import LifecycleService

Base = declarative_base()

NOW = datetime(2024, 6, 1, 12, 0, 0)


class ExportRow(Base):
    """Sample table of generated exports."""

    __tablename__ = "exports"
    __allow_unmapped__ = True

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    size_bytes = Column(Integer, default=0)
    blob_ref = Column(String(200), nullable=True)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def rows(engine):
    """Six exports: ids 1-4 older than a day, 5-6 fresh; owner U1 owns 2 and 4."""
    Session = sessionmaker(bind=engine)
    with Session() as session:
        for i in range(1, 7):
            age = timedelta(days=10 - i) if i <= 4 else timedelta(hours=i)
            session.add(
                ExportRow(
                    id=i,
                    owner_id="U1" if i in (2, 4) else "U2",
                    created_at=NOW - age,
                    size_bytes=i * 100,
                    blob_ref=f"exports/{i}.csv",
                )
            )
        session.commit()
    return Session


@pytest.fixture
def store(engine, rows):
    return SQLRecordStore(engine, ExportRow, category="exports")


def no_holds():
    return HoldSnapshot(category="exports")


CUTOFF = NOW - timedelta(days=1)


class TestSQLRecordStore:
    """SQL-backed record store."""

    @pytest.mark.asyncio
    async def test_pages_in_creation_order(self, store):
        first = await store.list_eligible(CUTOFF, no_holds(), page_size=3)
        assert [r.id for r in first.records] == ["1", "2", "3"]
        assert first.next_token is not None

        second = await store.list_eligible(CUTOFF, no_holds(), first.next_token, page_size=3)
        assert [r.id for r in second.records] == ["4"]
        assert second.next_token is None

    @pytest.mark.asyncio
    async def test_deleting_a_page_does_not_skip_records(self, store):
        first = await store.list_eligible(CUTOFF, no_holds(), page_size=2)
        for record in first.records:
            await store.hard_delete(record)

        second = await store.list_eligible(CUTOFF, no_holds(), first.next_token, page_size=2)
        assert [r.id for r in second.records] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_record_fields(self, store):
        page = await store.list_eligible(CUTOFF, no_holds(), page_size=1)
        record = page.records[0]
        assert record == PurgeableRecord(
            id="1",
            owner_id="U2",
            category="exports",
            created_at=NOW - timedelta(days=9),
            size_bytes=100,
            blob_ref="exports/1.csv",
        )

    @pytest.mark.asyncio
    async def test_held_users_are_excluded(self, store):
        holds = HoldSnapshot(category="exports", held_user_ids=frozenset({"U1"}))
        page = await store.list_eligible(CUTOFF, holds)
        assert [r.id for r in page.records] == ["1", "3"]
        assert await store.count_eligible(CUTOFF, holds) == 2

    @pytest.mark.asyncio
    async def test_category_hold_returns_nothing(self, store):
        holds = HoldSnapshot(category="exports", category_held=True)
        page = await store.list_eligible(CUTOFF, holds)
        assert page.records == []
        assert await store.count_eligible(CUTOFF, holds) == 0

    @pytest.mark.asyncio
    async def test_soft_deleted_rows_are_not_eligible(self, store, rows):
        record = (await store.get_records(["2"]))[0]
        await store.mark_soft_deleted(record)

        page = await store.list_eligible(CUTOFF, no_holds())
        assert [r.id for r in page.records] == ["1", "3", "4"]
        assert await store.get_records(["2"]) == []
        with rows() as session:
            assert session.get(ExportRow, 2).deleted_at is not None

    @pytest.mark.asyncio
    async def test_get_records_skips_unknown_ids(self, store):
        records = await store.get_records(["5", "99"])
        assert [r.id for r in records] == ["5"]
        assert await store.get_records([]) == []

    @pytest.mark.asyncio
    async def test_soft_delete_needs_a_column(self, engine, rows):
        store = SQLRecordStore(engine, ExportRow, category="exports", deleted_column=None)
        record = (await store.get_records(["1"]))[0]
        with pytest.raises(TransientIOError):
            await store.mark_soft_deleted(record)

    def test_page_token_round_trip(self):
        token = encode_page_token(NOW, 42)
        assert decode_page_token(token) == (NOW, 42)


class TestLocalBlobStore:
    @pytest.fixture
    def blobs(self, tmp_path):
        root = tmp_path / "blobs"
        (root / "exports").mkdir(parents=True)
        (root / "exports" / "1.csv").write_text("a,b\n1,2\n")
        return LocalBlobStore(root)

    def record(self, blob_ref="exports/1.csv"):
        return PurgeableRecord(
            id="1",
            owner_id="U2",
            category="exports",
            created_at=NOW,
            size_bytes=8,
            blob_ref=blob_ref,
        )

    @pytest.mark.asyncio
    async def test_archive_copies_blob_and_manifest(self, blobs, tmp_path):
        archive = tmp_path / "archive"

        await blobs.archive(self.record(), str(archive))

        target = archive / "exports" / "1"
        assert (target / "1.csv").read_text() == "a,b\n1,2\n"
        manifest = json.loads((target / "record.json").read_text())
        assert manifest["owner_id"] == "U2"
        assert manifest["blob_ref"] == "exports/1.csv"

    @pytest.mark.asyncio
    async def test_archive_missing_blob_fails(self, blobs, tmp_path):
        with pytest.raises(TransientIOError):
            await blobs.archive(self.record("exports/gone.csv"), str(tmp_path / "archive"))

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, blobs):
        path = blobs.path_for("exports/1.csv")
        await blobs.delete("exports/1.csv")
        assert not path.exists()
        await blobs.delete("exports/1.csv")

    def test_rejects_paths_outside_root(self, blobs):
        with pytest.raises(ValueError, match="escapes"):
            blobs.path_for("../../etc/passwd")


class TestStoreBackedCategory:
    @pytest.fixture
    def category(self, engine, rows, tmp_path):
        root = tmp_path / "blobs"
        (root / "exports").mkdir(parents=True)
        for i in range(1, 7):
            (root / "exports" / f"{i}.csv").write_text("x" * i)
        return StoreBackedCategory(
            "exports",
            SQLRecordStore(engine, ExportRow, category="exports"),
            LocalBlobStore(root),
        )

    @pytest.mark.asyncio
    async def test_hard_delete_removes_blob_and_row(self, category, rows, tmp_path):
        record = (await category.get_records(["3"]))[0]

        freed = await category.delete_one(record, DeletionMode.HARD)

        assert freed == 300
        assert not (tmp_path / "blobs" / "exports" / "3.csv").exists()
        with rows() as session:
            assert session.get(ExportRow, 3) is None

    @pytest.mark.asyncio
    async def test_soft_delete_keeps_blob(self, category, tmp_path):
        record = (await category.get_records(["3"]))[0]

        freed = await category.delete_one(record, DeletionMode.SOFT)

        assert freed == 0
        assert (tmp_path / "blobs" / "exports" / "3.csv").exists()
        assert await category.get_records(["3"]) == []

    @pytest.mark.asyncio
    async def test_archive_without_blob_store(self, engine, rows):
        category = StoreBackedCategory(
            "exports", SQLRecordStore(engine, ExportRow, category="exports")
        )
        record = (await category.get_records(["1"]))[0]
        with pytest.raises(ConfigurationError):
            await category.archive_one(record, "/tmp/archive")

    @pytest.mark.asyncio
    async def test_count_eligible(self, category):
        assert await category.count_eligible(CUTOFF, no_holds()) == 4

    def test_resource_type(self, category):
        assert category.resource_type == "export"


class SlowRecordStore(SQLRecordStore):
    """Record store whose deletes block the calling thread."""

    delay = 0.5

    def _update_row(self, record, action, values):
        time.sleep(self.delay)
        super()._update_row(record, action, values)


class TestBlockingStores:
    """Blocking adapters stay under the executor's per-operation timeout."""

    @pytest.mark.asyncio
    async def test_blocking_delete_times_out(self, engine, rows, database, config):
        category = StoreBackedCategory(
            "exports", SlowRecordStore(engine, ExportRow, category="exports")
        )
        service = LifecycleService(
            database,
            registry=CategoryRegistry([category]),
            config=config.model_copy(
                update={"operation_timeout_seconds": 0.1, "max_retries": 0}
            ),
            clock=lambda: NOW,
        )
        # Only export 1 is older than eight days
        await service.set_policy("exports", timedelta(days=8))

        started = time.monotonic()
        job = await service.trigger_run()
        elapsed = time.monotonic() - started

        assert job.records_scanned == 1
        assert job.records_failed == 1
        assert job.records_deleted == 0
        assert elapsed < SlowRecordStore.delay

        # Let the abandoned worker thread finish before the engine is disposed
        await asyncio.sleep(SlowRecordStore.delay)


class TestCategoryRegistry:
    def test_register_and_lookup(self, exports):
        registry = CategoryRegistry()
        registry.register(exports)
        assert "exports" in registry
        assert registry.get("exports") is exports
        assert registry.get("missing") is None
        assert len(registry) == 1

    def test_duplicate_name_rejected(self, exports):
        registry = CategoryRegistry([exports])
        with pytest.raises(ConfigurationError, match="already registered"):
            registry.register(exports)

    def test_load_factory_that_registers(self):
        registry = CategoryRegistry()
        registry.load_factory("purge_fakes:register_exports")
        assert registry.names() == ["exports"]

    def test_load_factory_that_returns_categories(self):
        registry = CategoryRegistry()
        registry.load_factory("purge_fakes:build_categories")
        assert registry.names() == ["exports", "uploads"]

    @pytest.mark.parametrize(
        "reference", ["purge_fakes", "purge_fakes:missing", "no_such_module:build"]
    )
    def test_bad_factory_reference(self, reference):
        with pytest.raises(ConfigurationError):
            CategoryRegistry().load_factory(reference)

    @pytest.mark.parametrize(
        "category,expected", [("exports", "export"), ("audio", "audio"), ("s", "s")]
    )
    def test_default_resource_type(self, category, expected):
        assert default_resource_type(category) == expected
