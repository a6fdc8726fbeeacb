"""
Artifact builder - streams a source dump into a single storable artifact.

Data flow:
    source read -> compress (optional) -> encrypt (optional) -> digest

The source is read on its own worker thread into a bounded queue. The
remaining stages run in the consuming thread (normally the storage upload),
so a slow upload throttles the dump read instead of buffering the payload in
memory.
"""

import queue
import logging
import threading
import time
from typing import Callable, Iterable, Iterator, NamedTuple, Optional, Tuple

from .compression import GzipStage, GunzipStage
from .encryption import KeyProvider, FernetEncryptStage, FernetDecryptStage
from .errors import (
    BackupError,
    DigestMismatchError,
    EncryptionKeyError,
    RunCancelled,
    SourceReadError,
    SourceTimeoutError,
)
from .sources import Source
from .stages import DigestStage, run_chain, flush_chain

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_QUEUE_DEPTH = 8

# Seconds to wait for the reader thread when tearing a stream down
READER_JOIN_TIMEOUT = 2.0
# Longest wait on the source queue between cancellation checks
CANCEL_POLL_INTERVAL = 0.2


class ProgressEvent(NamedTuple):
    source_bytes: int
    output_bytes: int
    elapsed: float
    final: bool


class ProgressMeter:
    """Rate-limits progress notifications to one per interval."""

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]], interval: float = 5.0):
        self.callback = callback
        self.interval = interval
        self._started = time.monotonic()
        self._last = self._started

    def update(self, source_bytes: int, output_bytes: int, final: bool = False):
        if self.callback is None:
            return

        now = time.monotonic()
        if not final and now - self._last < self.interval:
            return
        self._last = now

        event = ProgressEvent(source_bytes, output_bytes, now - self._started, final)
        try:
            self.callback(event)
        except Exception:
            # Observers must never break the data path
            logger.exception("Progress callback failed")


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_EOF = object()


class ArtifactStream:
    """
    Iterable over the final artifact bytes.

    Can be consumed exactly once. digest and size become available after the
    iterator is exhausted without error.
    """

    def __init__(self, source: Source, stages, digest_stage: DigestStage,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 queue_depth: int = DEFAULT_QUEUE_DEPTH,
                 read_timeout: Optional[float] = None,
                 cancel: Optional[threading.Event] = None,
                 progress: Optional[ProgressMeter] = None):
        self.source = source
        self.stages = stages
        self.chunk_size = chunk_size
        self.read_timeout = read_timeout
        self.cancel = cancel
        self.progress = progress or ProgressMeter(None)

        self.source_bytes = 0
        self._digest_stage = digest_stage
        self._queue = queue.Queue(maxsize=queue_depth)
        self._stop = threading.Event()
        self._reader = None
        self._started = False
        self._complete = False

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def digest(self) -> str:
        if not self._complete:
            raise RuntimeError("Artifact digest is only known after the stream is fully consumed")
        return self._digest_stage.digest

    @property
    def size(self) -> int:
        if not self._complete:
            raise RuntimeError("Artifact size is only known after the stream is fully consumed")
        return self._digest_stage.size

    def __iter__(self) -> Iterator[bytes]:
        if self._started:
            raise RuntimeError("ArtifactStream can only be consumed once")
        self._started = True
        return self._generate()

    def _generate(self) -> Iterator[bytes]:
        self._reader = threading.Thread(
            target=self._read_source,
            name=f"source-reader[{self.source.description}]",
            daemon=True
        )
        self._reader.start()

        try:
            while True:
                self._check_cancel()
                item = self._next_item()

                if item is _EOF:
                    break
                if isinstance(item, _Failure):
                    raise item.error

                self.source_bytes += len(item)
                output = run_chain(self.stages, item)
                self.progress.update(self.source_bytes, self._digest_stage.size)
                if output:
                    yield output

            tail = flush_chain(self.stages)
            if tail:
                yield tail

            self._complete = True
            self.progress.update(self.source_bytes, self._digest_stage.size, final=True)

        finally:
            self._shutdown()

    def _next_item(self):
        """Wait for the next queued item, noticing cancellation while the source stalls."""
        deadline = None if self.read_timeout is None else time.monotonic() + self.read_timeout
        while True:
            wait = CANCEL_POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SourceTimeoutError(
                        f"No data from {self.source.description} within {self.read_timeout}s"
                    )
                wait = min(wait, remaining)
            try:
                return self._queue.get(timeout=wait)
            except queue.Empty:
                self._check_cancel()

    def _check_cancel(self):
        if self.cancel is not None and self.cancel.is_set():
            raise RunCancelled("Run cancelled while building artifact")

    def _read_source(self):
        """Reader thread: pull chunks from the source into the bounded queue."""
        try:
            self.source.open()
            while not self._stop.is_set():
                chunk = self.source.read(self.chunk_size)
                if not chunk:
                    self.source.finish()
                    self._put(_EOF)
                    return
                self._put(chunk)
        except BackupError as e:
            self._put(_Failure(e))
        except Exception as e:
            self._put(_Failure(SourceReadError(f"Failed to read {self.source.description}: {e}")))
        finally:
            self._close_source()

    def _put(self, item):
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    def _close_source(self):
        try:
            self.source.close()
        except Exception as e:
            logger.warning(f"Failed to close source {self.source.description}: {e}")

    def _shutdown(self):
        self._stop.set()
        if self._reader is None:
            return

        self._reader.join(READER_JOIN_TIMEOUT)
        if self._reader.is_alive():
            # Reader is blocked inside source.read(); closing the source unblocks it
            self._close_source()
            self._reader.join(READER_JOIN_TIMEOUT)
            if self._reader.is_alive():
                logger.warning(f"Source reader for {self.source.description} did not stop")


class ArtifactBuilder:
    """
    Builds the stage chain for one artifact from its configuration.
    """

    def __init__(self, compression: bool = True, encryption: bool = False,
                 key_ref: Optional[str] = None,
                 key_provider: Optional[KeyProvider] = None,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 queue_depth: int = DEFAULT_QUEUE_DEPTH,
                 read_timeout: Optional[float] = None,
                 compression_level: int = 6,
                 progress_callback: Optional[Callable[[ProgressEvent], None]] = None,
                 progress_interval: float = 5.0):
        """
        Initialize the builder.

        Args:
            compression: Gzip the dump
            encryption: Encrypt the (compressed) dump
            key_ref: Key reference resolved through key_provider
            key_provider: Resolves key_ref to a Fernet key
            chunk_size: Bytes read from the source per chunk
            queue_depth: Chunks buffered between reader and consumer
            read_timeout: Seconds to wait for the next source chunk (None waits forever)
            compression_level: zlib level 1-9
            progress_callback: Called with ProgressEvent at most once per progress_interval
            progress_interval: Seconds between progress notifications
        """
        if chunk_size <= 0:
            raise ValueError(f"Invalid chunk size: {chunk_size}")
        if queue_depth <= 0:
            raise ValueError(f"Invalid queue depth: {queue_depth}")

        self.compression = compression
        self.encryption = encryption
        self.key_ref = key_ref
        self.key_provider = key_provider
        self.chunk_size = chunk_size
        self.queue_depth = queue_depth
        self.read_timeout = read_timeout
        self.compression_level = compression_level
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval

    def build_stages(self) -> Tuple[list, DigestStage]:
        """
        Create a fresh stage chain.

        Raises:
            EncryptionKeyError: If encryption is enabled but the key cannot be resolved
        """
        stages = []

        if self.compression:
            stages.append(GzipStage(self.compression_level))

        if self.encryption:
            if self.key_provider is None:
                raise EncryptionKeyError("Encryption enabled but no key provider configured")
            stages.append(FernetEncryptStage(self.key_provider.get_fernet(self.key_ref)))

        digest_stage = DigestStage()
        stages.append(digest_stage)
        return stages, digest_stage

    def build(self, source: Source, cancel: Optional[threading.Event] = None) -> ArtifactStream:
        """
        Prepare an artifact stream for a source.

        Nothing is read until the returned stream is iterated.

        Args:
            source: Source to read the dump from
            cancel: Event that aborts the stream when set

        Returns:
            ArtifactStream yielding the artifact bytes
        """
        stages, digest_stage = self.build_stages()
        return ArtifactStream(
            source,
            stages,
            digest_stage,
            chunk_size=self.chunk_size,
            queue_depth=self.queue_depth,
            read_timeout=self.read_timeout,
            cancel=cancel,
            progress=ProgressMeter(self.progress_callback, self.progress_interval)
        )


def digest_chunks(chunks: Iterable[bytes]) -> Tuple[str, int]:
    """
    Compute the digest and size of a chunk stream.

    Returns:
        Tuple of (digest, size)
    """
    digest_stage = DigestStage()
    for chunk in chunks:
        digest_stage.transform(chunk)
    return digest_stage.digest, digest_stage.size


def restore_stream(chunks: Iterable[bytes], compressed: bool, encrypted: bool,
                   key_ref: Optional[str] = None,
                   key_provider: Optional[KeyProvider] = None,
                   expected_digest: Optional[str] = None) -> Iterator[bytes]:
    """
    Reverse the builder chain: digest -> decrypt -> decompress.

    The digest check happens once the last stored byte has been read, so
    callers must treat already-yielded output as untrusted until the
    generator finishes without raising.

    Raises:
        DigestMismatchError: If the stored bytes do not match expected_digest
        TransformError: If decryption or decompression fails
    """
    digest_stage = DigestStage()
    stages = [digest_stage]

    if encrypted:
        if key_provider is None:
            raise EncryptionKeyError("Artifact is encrypted but no key provider configured")
        stages.append(FernetDecryptStage(key_provider.get_fernet(key_ref)))

    if compressed:
        stages.append(GunzipStage())

    for chunk in chunks:
        output = run_chain(stages, chunk)
        if output:
            yield output

    tail = flush_chain(stages)
    if tail:
        yield tail

    if expected_digest and digest_stage.digest != expected_digest:
        raise DigestMismatchError(
            f"Digest mismatch: expected {expected_digest}, got {digest_stage.digest}"
        )
