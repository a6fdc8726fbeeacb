"""
Error taxonomy for the backup pipeline.

Every failure the pipeline can raise derives from BackupError so the
orchestrator can turn it into a failed run record with a readable detail.
"""


class BackupError(Exception):
    """Base class for all backup pipeline failures."""
    pass


class SourceReadError(BackupError):
    """Raised when the source dump cannot be read or exits abnormally."""
    pass


class SourceTimeoutError(SourceReadError):
    """Raised when the source produces no data within the read timeout."""
    pass


class TransformError(BackupError):
    """Raised when a pipeline stage (compression, encryption) fails."""
    pass


class CompressionError(TransformError):
    """Raised when compressing or decompressing a stream fails."""
    pass


class EncryptionKeyError(TransformError):
    """Raised when a key reference cannot be resolved or a key is wrong."""
    pass


class StorageError(BackupError):
    """Raised when a storage backend operation fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing or deleting an object fails."""
    pass


class UploadTimeoutError(StorageWriteError):
    """Raised when an upload exceeds its time budget."""
    pass


class StorageReadError(StorageError):
    """Raised when reading or listing objects fails."""
    pass


class ArtifactNotFoundError(StorageReadError):
    """Raised when a requested object does not exist in the backend."""
    pass


class DigestMismatchError(StorageReadError):
    """Raised when the bytes read back do not match the recorded digest."""
    pass


class ManifestConflictError(BackupError):
    """Raised when a manifest write would violate lifecycle ordering."""
    pass


class LockContentionError(BackupError):
    """Raised when another run already holds the lease for a source."""
    pass


class RetentionPolicyError(BackupError):
    """Raised when a retention policy definition is malformed."""
    pass


class ReconciliationError(BackupError):
    """Raised when an inconsistency cannot be repaired automatically."""
    pass


class RunCancelled(BackupError):
    """Raised when a run is cancelled at a state or chunk boundary."""
    pass
