"""
Backup orchestrator - drives one run of a source through the pipeline.

Workflow:
1. Acquire the source's lease (contention: give up, record nothing)
2. Create RunRecord (outcome: NULL while running)
3. Reconcile leftovers of earlier runs
4. Build the artifact stream and append a pending manifest entry
5. Upload to the storage backend
6. Commit: record digest (stored), read back and compare (verified)
7. Apply retention to the source's artifacts
8. Finalize RunRecord (success/partial/failed), release the lease
"""

import json
import time
import uuid
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from enum import Enum
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional

from flask import current_app

from dumpkeeper import db
from dumpkeeper.models import BackupSource, ManifestEntry, RunRecord
from dumpkeeper.utils.clock import utcnow
from .builder import ArtifactBuilder, ProgressEvent, digest_chunks, restore_stream
from .compression import artifact_extension
from .encryption import KeyProvider, EnvironmentKeyProvider
from .errors import (
    BackupError,
    ArtifactNotFoundError,
    DigestMismatchError,
    LockContentionError,
    RetentionPolicyError,
    RunCancelled,
    StorageError,
    StorageWriteError,
    UploadTimeoutError,
)
from .locking import LeaseLock
from .manifest import ManifestStore, PENDING, STORED, VERIFIED, EXPIRING, DELETED, ORPHANED, RETAINABLE_STATES
from .reconcile import Reconciler
from .retention import RetentionPolicy, plan
from .sources import create_source
from .storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = 'idle'
    ACQUIRING_LOCK = 'acquiring_lock'
    BUILDING = 'building'
    UPLOADING = 'uploading'
    COMMITTING = 'committing'
    RETAINING = 'retaining'
    COMPLETED = 'completed'
    FAILED = 'failed'


RUN_TRANSITIONS = {
    RunState.IDLE: {RunState.ACQUIRING_LOCK},
    RunState.ACQUIRING_LOCK: {RunState.BUILDING},
    RunState.BUILDING: {RunState.UPLOADING},
    RunState.UPLOADING: {RunState.COMMITTING},
    RunState.COMMITTING: {RunState.RETAINING},
    RunState.RETAINING: {RunState.COMPLETED},
    RunState.COMPLETED: set(),
    RunState.FAILED: set(),
}

OUTCOME_SUCCESS = 'success'
OUTCOME_PARTIAL = 'partial'
OUTCOME_FAILED = 'failed'
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_PARTIAL, OUTCOME_FAILED)


@dataclass
class RunReport:
    run_id: str
    source_id: str
    outcome: str
    artifact_id: Optional[str]
    bytes_written: int
    duration_ms: int
    expired_count: int
    error_detail: Optional[str]

    def to_dict(self) -> dict:
        return asdict(self)


class RunContext:
    """
    State of a single run, passed explicitly through every step.
    """

    def __init__(self, source: BackupSource, run_id: str, cancel: Optional[threading.Event] = None,
                 lock: Optional[LeaseLock] = None):
        self.source = source
        self.source_id = source.name
        self.run_id = run_id
        self.cancel = cancel or threading.Event()
        self.lock = lock

        self.state = RunState.IDLE
        self.record = None
        self.artifact = None
        self.bytes_written = 0
        self.expired_count = 0
        self.warnings = []
        self.error_detail = None
        self.logs = []
        self._started = time.monotonic()

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def check_cancel(self):
        if self.cancel.is_set():
            raise RunCancelled(f"Run {self.run_id} cancelled in state {self.state.value}")

    def advance(self, new_state: RunState):
        """
        Move to the next state.

        Cancellation and a lost lease are detected here, at every state
        boundary, before any work of the next state starts.

        Raises:
            RunCancelled: If the run was cancelled
            LockContentionError: If the lease was lost
        """
        if new_state not in RUN_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal run transition: {self.state.value} -> {new_state.value}")

        self.check_cancel()
        if self.lock is not None and self.lock.lost:
            raise LockContentionError(f"Lease for {self.source_id} was lost during {self.state.value}")

        self.state = new_state
        self.log(f"State: {new_state.value}")

        if self.record is not None:
            self.record.state = new_state.value
            self.flush()

    def warn(self, message: str):
        """Record a problem that makes the run partial without failing it."""
        self.warnings.append(message)
        self.log(f"Warning: {message}")
        logger.warning(f"[{self.source_id}] {message}")

    def open_record(self) -> RunRecord:
        self.record = RunRecord(
            run_id=self.run_id,
            source_id=self.source_id,
            state=self.state.value,
            started_at=utcnow(),
            artifact_ids=json.dumps([])
        )
        db.session.add(self.record)
        db.session.commit()
        return self.record

    def finish(self, error: Optional[BaseException] = None) -> str:
        """Write the final outcome to the run record. Called exactly once."""
        if error is not None:
            self.state = RunState.FAILED
            outcome = OUTCOME_FAILED
            self.error_detail = f"{type(error).__name__}: {error}"
            self.log(f"Run failed: {self.error_detail}")
        else:
            if self.warnings:
                outcome = OUTCOME_PARTIAL
                self.error_detail = '; '.join(self.warnings)
            else:
                outcome = OUTCOME_SUCCESS
            self.log(f"Run finished: {outcome}")

        record = self.record
        record.state = self.state.value
        record.outcome = outcome
        record.finished_at = utcnow()
        record.duration_ms = self.duration_ms
        record.bytes_written = self.bytes_written
        record.expired_count = self.expired_count
        record.error_detail = self.error_detail
        record.artifact_ids = json.dumps([self.artifact.artifact_id] if self.artifact is not None else [])
        record.logs = '\n'.join(self.logs)
        db.session.commit()
        return outcome

    def report(self) -> RunReport:
        return RunReport(
            run_id=self.run_id,
            source_id=self.source_id,
            outcome=self.record.outcome,
            artifact_id=self.artifact.artifact_id if self.artifact is not None else None,
            bytes_written=self.bytes_written,
            duration_ms=self.record.duration_ms,
            expired_count=self.expired_count,
            error_detail=self.error_detail
        )

    def log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.debug(f"[{self.source_id}] {message}")

    def flush(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.record is not None:
            self.record.logs = '\n'.join(self.logs)
            db.session.commit()


def make_artifact_id(source_id: str, created_at) -> str:
    return f"{source_id}-{created_at:%Y%m%dT%H%M%S%f}Z"


def make_storage_key(source_id: str, artifact_id: str, created_at, compressed: bool, encrypted: bool) -> str:
    """Storage key in format: {source}/{YYYY}/{MM}/{artifact_id}{ext}"""
    extension = artifact_extension(compressed, encrypted)
    return f"{source_id}/{created_at:%Y}/{created_at:%m}/{artifact_id}{extension}"


def deadline_stream(stream: Iterable[bytes], timeout: Optional[float]) -> Iterator[bytes]:
    """
    Pass chunks through until timeout seconds have elapsed.

    Raises:
        UploadTimeoutError: If the stream is still running after timeout
    """
    iterator = iter(stream)
    deadline = time.monotonic() + timeout if timeout else None
    try:
        for chunk in iterator:
            if deadline is not None and time.monotonic() > deadline:
                raise UploadTimeoutError(f"Upload did not finish within {timeout}s")
            yield chunk
    finally:
        close = getattr(iterator, 'close', None)
        if close is not None:
            close()


class BackupOrchestrator:
    """
    Runs backups for sources: one lease-protected run per source at a time,
    distinct sources in parallel through run_many().
    """

    def __init__(self, storage: StorageBackend, key_provider: Optional[KeyProvider] = None,
                 chunk_size: int = 1024 * 1024,
                 queue_depth: int = 8,
                 progress_interval: float = 5.0,
                 source_read_timeout: Optional[float] = None,
                 upload_timeout: Optional[float] = None,
                 lock_ttl: float = 300,
                 lock_heartbeat: Optional[float] = 60,
                 stale_after: float = 3600,
                 concurrency_limit: int = 4):
        """
        Initialize the orchestrator.

        Args:
            storage: Storage backend for artifacts
            key_provider: Resolves encryption key references
            chunk_size: Bytes read from a source per chunk
            queue_depth: Chunks buffered between source reader and upload
            progress_interval: Seconds between progress log lines
            source_read_timeout: Seconds to wait for the next source chunk
            upload_timeout: Seconds an upload may take in total
            lock_ttl: Lease duration in seconds
            lock_heartbeat: Lease renewal interval in seconds (0 disables renewal)
            stale_after: Seconds before an unsettled manifest entry is reconciled
            concurrency_limit: Maximum parallel runs in run_many()
        """
        if concurrency_limit < 1:
            raise ValueError(f"Invalid concurrency limit: {concurrency_limit}")

        self.storage = storage
        self.key_provider = key_provider
        self.chunk_size = chunk_size
        self.queue_depth = queue_depth
        self.progress_interval = progress_interval
        self.source_read_timeout = source_read_timeout
        self.upload_timeout = upload_timeout
        self.lock_ttl = lock_ttl
        self.lock_heartbeat = lock_heartbeat
        self.concurrency_limit = concurrency_limit

        self.manifest = ManifestStore()
        self.reconciler = Reconciler(self.manifest, storage, stale_after)

    def run_once(self, source_id: str, cancel: Optional[threading.Event] = None,
                 allow_disabled: bool = False) -> RunReport:
        """
        Run one backup of a source.

        Args:
            source_id: Name of the BackupSource
            cancel: Event that aborts the run when set
            allow_disabled: If True, allow running disabled sources (manual triggers)

        Returns:
            RunReport of the finished run

        Raises:
            ValueError: If the source is unknown, or disabled and not allowed
            LockContentionError: If another run holds the source's lease;
                nothing is recorded in that case
            RunCancelled: If cancel is already set before the lease is taken;
                no run record is written
        """
        source = BackupSource.query.filter_by(name=source_id).first()
        if not source:
            raise ValueError(f"Backup source not found: {source_id}")
        if not source.enabled and not allow_disabled:
            raise ValueError(f"Backup source is disabled: {source_id}")

        lock = LeaseLock(source.name, ttl=self.lock_ttl, heartbeat=self.lock_heartbeat)
        ctx = RunContext(source, run_id=uuid.uuid4().hex, cancel=cancel, lock=lock)

        ctx.advance(RunState.ACQUIRING_LOCK)
        lock.acquire()

        try:
            ctx.open_record()
            ctx.log(f"Starting backup of {source.name} (run {ctx.run_id})")
            logger.info(f"Starting backup of {source.name} (run {ctx.run_id})")

            try:
                self._execute(ctx)
            except Exception as e:
                db.session.rollback()
                logger.error(f"Backup of {source.name} failed: {e}")
                self._discard_artifact(ctx, e)
                ctx.finish(error=e)
            else:
                outcome = ctx.finish()
                logger.info(
                    f"Backup of {source.name} finished: {outcome} "
                    f"({ctx.bytes_written} bytes, {ctx.expired_count} expired)"
                )

            return ctx.report()

        finally:
            self._release(lock)

    def run_many(self, source_ids: Optional[List[str]] = None,
                 cancel: Optional[threading.Event] = None) -> Dict[str, Optional[RunReport]]:
        """
        Run several sources in parallel, at most concurrency_limit at a time.

        Args:
            source_ids: Source names (default: all enabled sources)
            cancel: Event that aborts every run when set

        Returns:
            Mapping of source name to RunReport, or None when the source was
            skipped (lease held elsewhere, unknown or disabled)
        """
        if source_ids is None:
            source_ids = [
                s.name for s in BackupSource.query.filter_by(enabled=True).order_by(BackupSource.name)
            ]
        # Each source runs at most once per batch
        source_ids = list(dict.fromkeys(source_ids))

        app = current_app._get_current_object()

        def worker(source_id: str) -> Optional[RunReport]:
            with app.app_context():
                try:
                    return self.run_once(source_id, cancel=cancel)
                except (LockContentionError, RunCancelled, ValueError) as e:
                    logger.warning(f"Skipping {source_id}: {e}")
                return None

        with ThreadPoolExecutor(max_workers=self.concurrency_limit, thread_name_prefix='backup-run') as pool:
            futures = {source_id: pool.submit(worker, source_id) for source_id in source_ids}
            return {source_id: future.result() for source_id, future in futures.items()}

    def reconcile(self, source_id: str):
        """
        Reconcile one source outside of a run, under its lease.

        Raises:
            LockContentionError: If a run currently holds the lease
        """
        lock = LeaseLock(source_id, ttl=self.lock_ttl, heartbeat=self.lock_heartbeat)
        lock.acquire()
        try:
            return self.reconciler.reconcile(source_id)
        finally:
            self._release(lock)

    def verify_artifact(self, artifact_id: str) -> dict:
        """
        Read an artifact back and compare it with the recorded digest.

        A stored entry whose digest matches is moved to verified.

        Returns:
            Dict with artifact_id, expected and actual digest, size and state

        Raises:
            KeyError: If the artifact is unknown
            ArtifactNotFoundError: If the entry has no live object
        """
        entry = self.manifest.require(artifact_id)
        if entry.state not in RETAINABLE_STATES:
            raise ArtifactNotFoundError(f"Artifact {artifact_id} is {entry.state}, nothing to verify")

        digest, size = digest_chunks(self.storage.get(entry.storage_key))
        matches = digest == entry.digest

        if matches and entry.state == STORED:
            entry = self.manifest.update_state(artifact_id, VERIFIED)
        elif not matches:
            logger.critical(
                f"ALERT digest mismatch for {artifact_id}: recorded {entry.digest}, stored {digest}"
            )

        return {
            'artifact_id': artifact_id,
            'expected_digest': entry.digest,
            'actual_digest': digest,
            'size_bytes': size,
            'matches': matches,
            'state': entry.state,
        }

    def restore_artifact(self, artifact_id: str, fileobj: BinaryIO) -> int:
        """
        Write the original dump of an artifact to fileobj.

        The written bytes are only trustworthy if no exception is raised.

        Returns:
            Number of bytes written

        Raises:
            KeyError: If the artifact is unknown
            ArtifactNotFoundError: If the entry has no live object
            DigestMismatchError: If the stored bytes do not match the manifest
        """
        entry = self.manifest.require(artifact_id)
        if entry.state not in RETAINABLE_STATES:
            raise ArtifactNotFoundError(f"Artifact {artifact_id} is {entry.state}, cannot restore")

        written = 0
        for chunk in restore_stream(
            self.storage.get(entry.storage_key),
            compressed=entry.compressed,
            encrypted=entry.encrypted,
            key_ref=entry.key_ref,
            key_provider=self.key_provider,
            expected_digest=entry.digest
        ):
            fileobj.write(chunk)
            written += len(chunk)

        logger.info(f"Restored {artifact_id} ({written} bytes)")
        return written

    def _execute(self, ctx: RunContext):
        """Execute the main run workflow steps."""
        source = ctx.source

        # Reconcile leftovers of crashed or interrupted runs
        result = self.reconciler.reconcile(source.name, current_run_id=ctx.run_id)
        if result.repaired:
            ctx.log(f"Reconciliation repaired {len(result.repaired)} artifacts")
        if result.unresolved:
            ctx.warn(f"Reconciliation left unresolved artifacts: {', '.join(result.unresolved)}")
        if result.conflicts:
            ctx.warn(f"Reconciliation hit manifest conflicts: {', '.join(result.conflicts)}")
        if result.untracked_keys:
            ctx.log(f"Untracked objects in storage: {len(result.untracked_keys)}")

        # Step 1: Build
        ctx.advance(RunState.BUILDING)
        builder = ArtifactBuilder(
            compression=source.compression,
            encryption=source.encryption,
            key_ref=source.key_ref,
            key_provider=self.key_provider,
            chunk_size=self.chunk_size,
            queue_depth=self.queue_depth,
            read_timeout=self.source_read_timeout,
            progress_callback=lambda event: self._log_progress(ctx, event),
            progress_interval=self.progress_interval
        )
        stream = builder.build(create_source(source.source_type, source.config), cancel=ctx.cancel)

        created_at = utcnow()
        artifact_id = make_artifact_id(source.name, created_at)
        ctx.artifact = self.manifest.append(ManifestEntry(
            artifact_id=artifact_id,
            source_id=source.name,
            run_id=ctx.run_id,
            created_at=created_at,
            compressed=source.compression,
            encrypted=source.encryption,
            key_ref=source.key_ref if source.encryption else None,
            storage_key=make_storage_key(source.name, artifact_id, created_at,
                                         source.compression, source.encryption),
            retention_class=source.retention_class,
            state=PENDING
        ))
        ctx.log(f"Artifact: {artifact_id} -> {ctx.artifact.storage_key}")

        # Step 2: Upload
        ctx.advance(RunState.UPLOADING)
        written = self.storage.put(
            ctx.artifact.storage_key,
            deadline_stream(stream, self.upload_timeout),
            cancel_check=ctx.check_cancel
        )
        if written != stream.size:
            raise StorageWriteError(f"Backend stored {written} bytes, builder produced {stream.size}")
        ctx.bytes_written = written
        ctx.log(
            f"Uploaded {written / 1024 / 1024:.2f} MB "
            f"(source {stream.source_bytes / 1024 / 1024:.2f} MB)"
        )

        # Step 3: Commit and verify
        ctx.advance(RunState.COMMITTING)
        ctx.artifact = self.manifest.update_state(
            artifact_id, STORED, size_bytes=stream.size, digest=stream.digest
        )
        digest, size = digest_chunks(self.storage.get(ctx.artifact.storage_key))
        if digest != stream.digest or size != stream.size:
            raise DigestMismatchError(
                f"Read-back of {artifact_id} gave {digest} ({size} bytes), "
                f"expected {stream.digest} ({stream.size} bytes)"
            )
        ctx.artifact = self.manifest.update_state(artifact_id, VERIFIED)
        ctx.log(f"Verified {artifact_id}: {digest}")

        # Step 4: Retention
        ctx.advance(RunState.RETAINING)
        self._apply_retention(ctx)

        ctx.advance(RunState.COMPLETED)

    def _apply_retention(self, ctx: RunContext):
        """Expire and delete artifacts the source's policy no longer keeps."""
        source = ctx.source

        try:
            policy = RetentionPolicy.from_dict(source.policy)
        except (RetentionPolicyError, ValueError) as e:
            ctx.warn(f"Invalid retention policy, nothing expired: {e}")
            return

        # Earlier runs may have left entries whose delete failed
        to_delete = self.manifest.in_state(source.name, EXPIRING)
        if to_delete:
            ctx.log(f"Retrying deletion of {len(to_delete)} expiring artifacts")

        decision = plan(self.manifest.snapshot(source.name), policy, utcnow())
        ctx.log(f"Retention: keep {len(decision.keep)}, expire {len(decision.expire)}")

        for artifact_id in decision.expire:
            to_delete.append(self.manifest.update_state(artifact_id, EXPIRING))

        for entry in to_delete:
            try:
                self.storage.delete(entry.storage_key)
            except StorageError as e:
                ctx.warn(f"Failed to delete {entry.artifact_id}: {e}")
                continue
            self.manifest.update_state(entry.artifact_id, DELETED)
            ctx.expired_count += 1
            ctx.log(f"Deleted expired artifact {entry.artifact_id}")

    def _discard_artifact(self, ctx: RunContext, error: Exception):
        """Settle the run's artifact after a failure."""
        if ctx.artifact is None:
            return

        artifact_id = ctx.artifact.artifact_id
        try:
            entry = self.manifest.require(artifact_id)

            if entry.state == PENDING:
                try:
                    self.storage.delete(entry.storage_key)
                except StorageError as e:
                    logger.warning(f"Could not remove partial artifact {entry.storage_key}: {e}")
                self.manifest.update_state(artifact_id, ORPHANED)
                ctx.log(f"Marked {artifact_id} orphaned")

            elif entry.state == STORED and isinstance(error, DigestMismatchError):
                self.manifest.update_state(artifact_id, ORPHANED)
                ctx.log(f"Marked {artifact_id} orphaned after digest mismatch")

            # Any other stored entry is left for reconciliation to verify

        except BackupError as e:
            db.session.rollback()
            logger.error(f"Failed to settle artifact {artifact_id} after run failure: {e}")
            ctx.log(f"Failed to settle artifact {artifact_id}: {e}")

    def _log_progress(self, ctx: RunContext, event: ProgressEvent):
        ctx.log(
            f"Progress: read {event.source_bytes / 1024 / 1024:.2f} MB, "
            f"wrote {event.output_bytes / 1024 / 1024:.2f} MB in {event.elapsed:.1f}s"
        )

    def _release(self, lock: LeaseLock):
        try:
            lock.release()
        except Exception as e:
            db.session.rollback()
            # The lease expires on its own after the TTL
            logger.error(f"Failed to release lease for {lock.source_id}: {e}")


def create_orchestrator(config) -> BackupOrchestrator:
    """
    Factory function to create an orchestrator from application config.

    Args:
        config: Mapping of settings (Flask config)
    """
    return BackupOrchestrator(
        storage=create_storage(config),
        key_provider=EnvironmentKeyProvider(config.get('KEY_ENV_PREFIX') or 'DUMPKEEPER_KEY_'),
        chunk_size=config.get('CHUNK_SIZE', 1024 * 1024),
        queue_depth=config.get('PIPELINE_QUEUE_DEPTH', 8),
        progress_interval=config.get('PROGRESS_INTERVAL', 5.0),
        source_read_timeout=config.get('SOURCE_READ_TIMEOUT'),
        upload_timeout=config.get('UPLOAD_TIMEOUT'),
        lock_ttl=config.get('LOCK_TTL', 300),
        lock_heartbeat=config.get('LOCK_HEARTBEAT', 60),
        stale_after=config.get('STALE_AFTER', 3600),
        concurrency_limit=config.get('CONCURRENCY_LIMIT', 4)
    )


def get_orchestrator() -> BackupOrchestrator:
    """Orchestrator of the current application, created on first use."""
    app = current_app._get_current_object()
    orchestrator = app.extensions.get('dumpkeeper.orchestrator')
    if orchestrator is None:
        orchestrator = create_orchestrator(app.config)
        app.extensions['dumpkeeper.orchestrator'] = orchestrator
    return orchestrator
