"""
Reconciliation - repairs the manifest after a crash or restart.

Runs while the source's lease is held, before a new artifact is built.
Entries that have sat in pending/stored/expiring longer than the staleness
threshold are checked against what the storage backend actually holds. The
backend listing is only a hint: an entry missing from the listing is
confirmed with a point lookup before it is declared orphaned.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from dumpkeeper import db
from dumpkeeper.models import ManifestEntry, RunRecord
from dumpkeeper.utils.clock import utcnow
from .builder import digest_chunks
from .errors import ManifestConflictError, ReconciliationError, StorageError
from .manifest import ManifestStore, PENDING, STORED, VERIFIED, EXPIRING, DELETED, ORPHANED
from .storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    source_id: str
    repaired: List[Tuple[str, str]] = field(default_factory=list)  # (artifact_id, new state)
    unresolved: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    untracked_keys: List[str] = field(default_factory=list)
    interrupted_runs: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.unresolved and not self.conflicts

    def summary(self) -> str:
        return (
            f"repaired={len(self.repaired)} unresolved={len(self.unresolved)} "
            f"conflicts={len(self.conflicts)} untracked={len(self.untracked_keys)} "
            f"interrupted_runs={len(self.interrupted_runs)}"
        )


class Reconciler:
    """Compares manifest entries of one source with the storage backend."""

    def __init__(self, manifest: ManifestStore, storage: StorageBackend, stale_after: float = 3600):
        """
        Args:
            manifest: Manifest store
            storage: Storage backend holding the source's artifacts
            stale_after: Seconds an entry may stay unsettled before it is checked
        """
        self.manifest = manifest
        self.storage = storage
        self.stale_after = timedelta(seconds=stale_after)

    def reconcile(self, source_id: str, current_run_id: Optional[str] = None,
                  now: Optional[datetime] = None) -> ReconciliationResult:
        """
        Repair the manifest of one source.

        Args:
            source_id: Source to reconcile (its lease must be held)
            current_run_id: Run performing the reconciliation, excluded from
                interrupted-run detection
            now: Reference time (naive UTC), defaults to the current time

        Returns:
            ReconciliationResult describing what was repaired or escalated
        """
        now = now or utcnow()
        result = ReconciliationResult(source_id)

        self._close_interrupted_runs(source_id, current_run_id, now, result)

        stale = self.manifest.stale_entries(source_id, now - self.stale_after)
        listed = self._list_keys(source_id)

        for entry in stale:
            try:
                self._reconcile_entry(entry, listed, result)
            except ManifestConflictError as e:
                # Never auto-resolved: somebody else moved the entry or the
                # repair would break lifecycle ordering
                logger.critical(f"ALERT manifest conflict during reconciliation of {entry.artifact_id}: {e}")
                result.conflicts.append(entry.artifact_id)
            except ReconciliationError as e:
                logger.critical(f"ALERT unresolved artifact {entry.artifact_id}: {e}")
                result.unresolved.append(entry.artifact_id)
            except StorageError as e:
                logger.error(f"Storage error while reconciling {entry.artifact_id}: {e}")
                result.unresolved.append(entry.artifact_id)

        if listed is not None:
            known = {
                key for (key,) in db.session.query(ManifestEntry.storage_key)
                .filter(ManifestEntry.source_id == source_id)
            }
            for key in sorted(listed - known):
                logger.warning(f"Untracked object in storage for {source_id}: {key}")
                result.untracked_keys.append(key)

        if result.repaired or not result.clean or result.untracked_keys or result.interrupted_runs:
            logger.info(f"Reconciliation of {source_id}: {result.summary()}")

        return result

    def _list_keys(self, source_id: str):
        try:
            return {obj.key for obj in self.storage.list_objects(f"{source_id}/")}
        except StorageError as e:
            logger.warning(f"Storage listing failed for {source_id}, falling back to point lookups: {e}")
            return None

    def _is_present(self, entry: ManifestEntry, listed) -> bool:
        if listed is not None and entry.storage_key in listed:
            return True
        # Listings can lag behind writes; ask for the object directly
        return self.storage.exists(entry.storage_key)

    def _reconcile_entry(self, entry: ManifestEntry, listed, result: ReconciliationResult):
        present = self._is_present(entry, listed)
        artifact_id = entry.artifact_id

        if entry.state == PENDING:
            if not present:
                self.manifest.update_state(artifact_id, ORPHANED)
                result.repaired.append((artifact_id, ORPHANED))
                return

            # put() is atomic, so an object at the key is a complete write
            # whose commit was lost; adopt the digest of what is stored
            digest, size = digest_chunks(self.storage.get(entry.storage_key))
            self.manifest.update_state(artifact_id, STORED, size_bytes=size, digest=digest)
            self.manifest.update_state(artifact_id, VERIFIED)
            result.repaired.append((artifact_id, VERIFIED))

        elif entry.state == STORED:
            if not present:
                self.manifest.update_state(artifact_id, ORPHANED)
                result.repaired.append((artifact_id, ORPHANED))
                return

            digest, size = digest_chunks(self.storage.get(entry.storage_key))
            if digest != entry.digest:
                raise ReconciliationError(
                    f"Stored object {entry.storage_key} has digest {digest}, manifest records {entry.digest}"
                )
            self.manifest.update_state(artifact_id, VERIFIED)
            result.repaired.append((artifact_id, VERIFIED))

        elif entry.state == EXPIRING:
            if not present:
                self.manifest.update_state(artifact_id, DELETED)
                result.repaired.append((artifact_id, DELETED))
            # Present objects are deleted again by the retention step

    def _close_interrupted_runs(self, source_id: str, current_run_id: Optional[str],
                                now: datetime, result: ReconciliationResult):
        query = RunRecord.query.filter(
            RunRecord.source_id == source_id,
            RunRecord.outcome.is_(None)
        )
        if current_run_id:
            query = query.filter(RunRecord.run_id != current_run_id)

        for record in query.all():
            record.outcome = 'failed'
            record.finished_at = now
            record.error_detail = 'interrupted'
            record.duration_ms = int((now - record.started_at).total_seconds() * 1000)
            record.artifact_ids = record.artifact_ids or json.dumps([])
            result.interrupted_runs.append(record.run_id)
            logger.warning(f"Closed interrupted run {record.run_id} of {source_id}")

        if result.interrupted_runs:
            db.session.commit()
