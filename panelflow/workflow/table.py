"""
PanelTable: every panel the engine has seen, keyed by panel id.

Lifecycle is explicit. A panel is ACTIVE from initialization until it
completes, then ARCHIVED: its live record is dropped and only a tombstone
and its transition history remain (until purged). This lets callers tell
"never existed" apart from "completed and archived".

Locking:
- one table lock, held only for map lookups and inserts
- one re-entrant lock per panel, held for the whole of a mutation
  (re-entrant because PASSED may cascade into COMPLETED)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from panelflow.exceptions import DuplicateWorkflowError, PanelNotFoundError
from panelflow.observability.logging_config import panel_context
from panelflow.workflow.record import (
    ArchivedPanel,
    PanelLifecycle,
    PanelWorkflowRecord,
    TransitionHistoryEntry,
    utcnow,
    FINAL_QUALITY_KEY,
)

logger = logging.getLogger(__name__)


class PanelTable:
    """In-memory store of panel records, tombstones and history."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, PanelWorkflowRecord] = {}
        self._archived: dict[str, ArchivedPanel] = {}
        self._history: dict[str, list[TransitionHistoryEntry]] = {}
        self._panel_locks: dict[str, threading.RLock] = {}

    # ─── Lifecycle ────────────────────────────────────────────────────

    def insert(
        self,
        record: PanelWorkflowRecord,
        initial_entry: Optional[TransitionHistoryEntry] = None,
    ) -> None:
        """
        Add a new ACTIVE record, seeding its history with `initial_entry`.

        The record and its first history entry become visible together,
        so no transition can be logged ahead of the initialization.

        Raises:
            DuplicateWorkflowError: If the id is active or archived.
        """
        with self._lock:
            if record.panel_id in self._active or record.panel_id in self._archived:
                raise DuplicateWorkflowError(
                    f"Panel workflow already exists: {record.panel_id}",
                    panel_id=record.panel_id,
                    details={"lifecycle": self._lifecycle_unlocked(record.panel_id).value},
                )
            self._active[record.panel_id] = record
            self._history[record.panel_id] = [initial_entry] if initial_entry is not None else []
            self._panel_locks[record.panel_id] = threading.RLock()

    def archive(self, panel_id: str) -> ArchivedPanel:
        """Move an ACTIVE record to ARCHIVED, keeping a tombstone."""
        with self._lock:
            record = self._active.pop(panel_id)
            tombstone = ArchivedPanel(
                panel_id=record.panel_id,
                barcode=record.barcode,
                panel_type=record.panel_type,
                line=record.line,
                rework_count=record.rework_count,
                completed_at=utcnow(),
                final_quality_data=record.quality_data.get(FINAL_QUALITY_KEY),
            )
            self._archived[panel_id] = tombstone
        logger.info(
            f"Panel {panel_id} archived",
            extra={"panel_id": panel_id, "status": PanelLifecycle.ARCHIVED.value},
        )
        return tombstone

    def purge_archived(self) -> list[str]:
        """Forget archived panels and their history. Returns their ids."""
        with self._lock:
            ids = list(self._archived)
            for panel_id in ids:
                self._archived.pop(panel_id, None)
                self._history.pop(panel_id, None)
                self._panel_locks.pop(panel_id, None)
        if ids:
            logger.info(f"Purged {len(ids)} archived panels")
        return ids

    def clear(self) -> None:
        with self._lock:
            self._active.clear()
            self._archived.clear()
            self._history.clear()
            self._panel_locks.clear()

    # ─── Locking ──────────────────────────────────────────────────────

    @contextmanager
    def locked(self, panel_id: str) -> Iterator[PanelWorkflowRecord]:
        """
        Hold a panel's lock and yield its live record.

        Raises:
            PanelNotFoundError: If the panel is not ACTIVE, either before
                the lock is taken or once it is held.
        """
        with self._lock:
            panel_lock = self._panel_locks.get(panel_id)
        if panel_lock is None:
            raise PanelNotFoundError(f"Panel not found: {panel_id}", panel_id=panel_id)

        with panel_lock, panel_context(panel_id):
            with self._lock:
                record = self._active.get(panel_id)
            if record is None:
                # Completed while we waited for the lock
                raise PanelNotFoundError(
                    f"Panel not found: {panel_id}",
                    panel_id=panel_id,
                    details={"lifecycle": PanelLifecycle.ARCHIVED.value},
                )
            yield record

    # ─── Reads ────────────────────────────────────────────────────────

    def _lifecycle_unlocked(self, panel_id: str) -> Optional[PanelLifecycle]:
        if panel_id in self._active:
            return PanelLifecycle.ACTIVE
        if panel_id in self._archived:
            return PanelLifecycle.ARCHIVED
        return None

    def lifecycle(self, panel_id: str) -> Optional[PanelLifecycle]:
        with self._lock:
            return self._lifecycle_unlocked(panel_id)

    def get_snapshot(self, panel_id: str) -> Optional[PanelWorkflowRecord]:
        """Detached copy of an ACTIVE record, None otherwise."""
        with self._lock:
            panel_lock = self._panel_locks.get(panel_id)
            if panel_id not in self._active or panel_lock is None:
                return None
        with panel_lock:
            with self._lock:
                record = self._active.get(panel_id)
            return record.snapshot() if record is not None else None

    def get_archived(self, panel_id: str) -> Optional[ArchivedPanel]:
        with self._lock:
            return self._archived.get(panel_id)

    def append_history(self, entry: TransitionHistoryEntry) -> None:
        with self._lock:
            self._history.setdefault(entry.panel_id, []).append(entry)

    def get_history(self, panel_id: str) -> list[TransitionHistoryEntry]:
        with self._lock:
            return list(self._history.get(panel_id, []))

    def active_snapshots(self) -> list[PanelWorkflowRecord]:
        with self._lock:
            ids = list(self._active)
        snapshots = []
        for panel_id in ids:
            snapshot = self.get_snapshot(panel_id)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def archived_count(self) -> int:
        with self._lock:
            return len(self._archived)
