"""
Manifest store - the authoritative record of every artifact produced.

Entries are appended when a run starts building an artifact and afterwards
only move forward through the lifecycle:

    pending -> stored -> verified -> expiring -> deleted
       |          |
       +----------+--> orphaned

Storage listings are never trusted over the manifest; reconciliation compares
the two and repairs the manifest through the same transition rules.
"""

import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from dumpkeeper import db
from dumpkeeper.models import ManifestEntry
from dumpkeeper.utils.clock import utcnow
from .errors import ManifestConflictError

logger = logging.getLogger(__name__)

PENDING = 'pending'
STORED = 'stored'
VERIFIED = 'verified'
EXPIRING = 'expiring'
DELETED = 'deleted'
ORPHANED = 'orphaned'

STATES = (PENDING, STORED, VERIFIED, EXPIRING, DELETED, ORPHANED)

ALLOWED_TRANSITIONS = {
    PENDING: frozenset({STORED, ORPHANED}),
    STORED: frozenset({VERIFIED, EXPIRING, ORPHANED}),
    VERIFIED: frozenset({EXPIRING}),
    EXPIRING: frozenset({DELETED}),
    DELETED: frozenset(),
    ORPHANED: frozenset(),
}

# States whose artifacts count as restore points
RETAINABLE_STATES = frozenset({STORED, VERIFIED})

# States reconciliation looks at when they stay unchanged for too long
UNSETTLED_STATES = (PENDING, STORED, EXPIRING)


class ArtifactSnapshot(NamedTuple):
    artifact_id: str
    created_at: datetime
    state: str


def check_transition(current: str, new_state: str):
    """
    Validate a lifecycle transition.

    Raises:
        ManifestConflictError: If the transition is not allowed
    """
    if new_state not in STATES:
        raise ManifestConflictError(f"Unknown artifact state: {new_state}")
    if new_state not in ALLOWED_TRANSITIONS[current]:
        raise ManifestConflictError(f"Illegal artifact transition: {current} -> {new_state}")


class ManifestStore:
    """
    Database-backed manifest of artifacts.

    Must be used inside a Flask application context.
    """

    def append(self, entry: ManifestEntry) -> ManifestEntry:
        """
        Record a new artifact.

        Raises:
            ManifestConflictError: If the artifact id already exists or the
                entry does not start in the pending state
        """
        if entry.state is None:
            entry.state = PENDING
        if entry.state != PENDING:
            raise ManifestConflictError(f"New manifest entries must be pending, got {entry.state}")

        entry.state_changed_at = utcnow()
        db.session.add(entry)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ManifestConflictError(f"Artifact already recorded: {entry.artifact_id}")

        logger.debug(f"Manifest append: {entry.artifact_id}")
        return entry

    def get(self, artifact_id: str) -> Optional[ManifestEntry]:
        return ManifestEntry.query.filter_by(artifact_id=artifact_id).first()

    def require(self, artifact_id: str) -> ManifestEntry:
        entry = self.get(artifact_id)
        if entry is None:
            raise KeyError(f"Artifact not found in manifest: {artifact_id}")
        return entry

    def update_state(self, artifact_id: str, new_state: str, size_bytes: Optional[int] = None,
                     digest: Optional[str] = None) -> ManifestEntry:
        """
        Move an artifact to a new lifecycle state.

        The write is a compare-and-set on the current state, so a concurrent
        writer that moved the entry first causes a conflict instead of a
        silent overwrite.

        Args:
            artifact_id: Artifact to update
            new_state: Target state
            size_bytes: Stored size (required when moving to stored)
            digest: Stored digest (required when moving to stored)

        Raises:
            ManifestConflictError: If the transition violates lifecycle ordering
            KeyError: If the artifact is unknown
        """
        entry = self.require(artifact_id)
        current = entry.state
        check_transition(current, new_state)

        now = utcnow()
        values = {'state': new_state, 'state_changed_at': now}

        if new_state == STORED:
            if not digest or size_bytes is None:
                raise ManifestConflictError(f"Cannot mark {artifact_id} stored without digest and size")
            values['digest'] = digest
            values['size_bytes'] = size_bytes
        elif new_state == VERIFIED:
            if not entry.digest:
                raise ManifestConflictError(f"Cannot verify {artifact_id}: no digest recorded")
            values['verified_at'] = now
        elif new_state == DELETED:
            values['deleted_at'] = now

        result = db.session.execute(
            update(ManifestEntry)
            .where(ManifestEntry.artifact_id == artifact_id, ManifestEntry.state == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        if result.rowcount != 1:
            raise ManifestConflictError(
                f"Artifact {artifact_id} changed concurrently (expected state {current})"
            )

        db.session.refresh(entry)
        logger.debug(f"Manifest transition: {artifact_id} {current} -> {new_state}")
        return entry

    def list_all(self, source_id: Optional[str] = None) -> List[ManifestEntry]:
        query = ManifestEntry.query
        if source_id is not None:
            query = query.filter_by(source_id=source_id)
        return query.order_by(ManifestEntry.created_at, ManifestEntry.artifact_id).all()

    def snapshot(self, source_id: str) -> List[ArtifactSnapshot]:
        """Immutable view of a source's entries, as input for the retention planner."""
        return [
            ArtifactSnapshot(entry.artifact_id, entry.created_at, entry.state)
            for entry in self.list_all(source_id)
        ]

    def stale_entries(self, source_id: str, cutoff: datetime) -> List[ManifestEntry]:
        """Entries in an unsettled state whose last transition happened before cutoff."""
        return ManifestEntry.query.filter(
            ManifestEntry.source_id == source_id,
            ManifestEntry.state.in_(UNSETTLED_STATES),
            ManifestEntry.state_changed_at <= cutoff
        ).order_by(ManifestEntry.created_at).all()

    def in_state(self, source_id: str, state: str) -> List[ManifestEntry]:
        return ManifestEntry.query.filter_by(
            source_id=source_id, state=state
        ).order_by(ManifestEntry.created_at).all()
