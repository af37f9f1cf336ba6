"""
Local spool for audit entries that could not be committed.

When a destructive action has already happened and its audit entry cannot
be written, the entry is parked here as JSON lines. The next purge run for
the same category replays it into the audit log.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditSpool:
    """File-based holding area for unaudited destructive actions."""

    FILE_NAME = "pending_audit.jsonl"

    def __init__(self, storage_path: Union[str, Path]):
        """
        Initialize the spool.

        Args:
            storage_path: Directory holding the spool file
        """
        self.storage_path = Path(storage_path)
        self.file_lock = asyncio.Lock()

    @property
    def spool_file(self) -> Path:
        return self.storage_path / self.FILE_NAME

    def _read_all(self) -> List[AuditEntry]:
        if not self.spool_file.exists():
            return []
        entries = []
        with open(self.spool_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(AuditEntry(**json.loads(line)))
        return entries

    def _rewrite(self, entries: List[AuditEntry]) -> None:
        if not entries:
            if self.spool_file.exists():
                self.spool_file.unlink()
            return
        tmp_file = self.spool_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            for entry in entries:
                f.write(json.dumps(entry.model_dump(mode="json")) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_file, self.spool_file)

    async def write(self, entry: AuditEntry) -> None:
        """Durably park an entry."""
        async with self.file_lock:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            with open(self.spool_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.model_dump(mode="json")) + "\n")
                f.flush()
                os.fsync(f.fileno())
        logger.error(
            "Audit entry %s spooled for replay: %s", entry.id, entry.to_log_format()
        )

    async def pending(self, categories: Optional[Iterable[str]] = None) -> List[AuditEntry]:
        """Entries waiting for replay, optionally for some categories only."""
        async with self.file_lock:
            entries = self._read_all()
        if categories is None:
            return entries
        wanted = set(categories)
        return [e for e in entries if e.category in wanted]

    async def remove(self, entry_ids: Iterable[str]) -> None:
        """Drop entries that have been replayed."""
        done = set(entry_ids)
        if not done:
            return
        async with self.file_lock:
            remaining = [e for e in self._read_all() if e.id not in done]
            self._rewrite(remaining)
