"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store artifacts in a local directory (rename-based atomicity)
- S3Storage: Store artifacts in AWS S3 or a compatible object store
  (multipart upload, aborted on failure)

Both honour the same contract: put() either leaves a complete, readable
object at the key or nothing at all, and list_objects() is only a hint that
callers reconcile against the manifest.
"""

import os
import uuid
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, List, NamedTuple, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .errors import (
    BackupError,
    StorageError,
    StorageWriteError,
    StorageReadError,
    ArtifactNotFoundError,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 1024 * 1024

# S3 rejects multipart parts below 5 MiB (except the last one)
S3_MIN_PART_SIZE = 5 * 1024 * 1024

PARTIAL_SUFFIX = '.partial'


class StoredObject(NamedTuple):
    key: str
    size: int
    modified: datetime


class StorageBackend:
    """Interface shared by all storage backends."""

    name = 'storage'

    def put(self, key: str, stream: Iterable[bytes],
            cancel_check: Optional[Callable[[], None]] = None) -> int:
        """
        Durably store a stream under key.

        Args:
            key: Object key
            stream: Iterable of byte chunks
            cancel_check: Called between chunks; raises to abort the write

        Returns:
            Number of bytes written
        """
        raise NotImplementedError

    def get(self, key: str) -> Iterator[bytes]:
        raise NotImplementedError

    def list_objects(self, prefix: str) -> List[StoredObject]:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def test_connection(self) -> bool:
        """
        Check that the backend is reachable and writable.

        Raises:
            StorageError: If the backend cannot be used
        """
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in local filesystem.

    Objects live at {base_path}/{key}. Writes go to a hidden partial file in
    the destination directory which is renamed into place once complete.
    """

    name = 'local'

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        self.base_path = Path(base_path).resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _resolve(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if path == self.base_path or self.base_path not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, stream: Iterable[bytes],
            cancel_check: Optional[Callable[[], None]] = None) -> int:
        dest_path = self._resolve(key)
        temp_path = dest_path.with_name(f".{dest_path.name}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}")
        size = 0

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with open(temp_path, 'wb') as f:
                for chunk in stream:
                    if cancel_check:
                        cancel_check()
                    f.write(chunk)
                    size += len(chunk)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, dest_path)
            self._fsync_directory(dest_path.parent)
            return size

        except BackupError:
            self._discard(temp_path)
            raise
        except PermissionError as e:
            self._discard(temp_path)
            raise StorageWriteError(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            self._discard(temp_path)
            raise StorageWriteError(f"Failed to store locally: {e}")

    def _discard(self, temp_path: Path):
        try:
            if temp_path.exists():
                temp_path.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove partial file {temp_path}: {e}")

    def _fsync_directory(self, directory: Path):
        if not hasattr(os, 'O_DIRECTORY'):
            return
        fd = os.open(directory, os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def get(self, key: str) -> Iterator[bytes]:
        """
        Stream an object from local storage.

        Raises:
            ArtifactNotFoundError: If the object does not exist
            StorageReadError: If reading fails
        """
        full_path = self._resolve(key)
        if not full_path.is_file():
            raise ArtifactNotFoundError(f"Object not found: {key}")
        return self._read(full_path)

    def _read(self, full_path: Path) -> Iterator[bytes]:
        try:
            with open(full_path, 'rb') as f:
                while True:
                    chunk = f.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
        except FileNotFoundError:
            raise ArtifactNotFoundError(f"Object disappeared while reading: {full_path}")
        except OSError as e:
            raise StorageReadError(f"Failed to read {full_path}: {e}")

    def delete(self, key: str):
        """
        Delete an object from local storage. Missing objects are ignored.

        Raises:
            StorageWriteError: If deletion fails
        """
        full_path = self._resolve(key)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageWriteError(f"Permission denied deleting {full_path}: {e}")
        except Exception as e:
            raise StorageWriteError(f"Failed to delete local file: {e}")

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def list_objects(self, prefix: str) -> List[StoredObject]:
        """
        List all objects whose key starts with prefix.

        Partial files from in-flight or abandoned writes are never listed.

        Raises:
            StorageReadError: If listing fails
        """
        try:
            objects = []

            for file_path in self.base_path.rglob('*'):
                if not file_path.is_file() or file_path.name.endswith(PARTIAL_SUFFIX):
                    continue

                key = file_path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = file_path.stat()
                objects.append(StoredObject(
                    key=key,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
                ))

            return sorted(objects, key=lambda obj: obj.key)

        except Exception as e:
            raise StorageReadError(f"Failed to list local files: {e}")

    def test_connection(self) -> bool:
        if not self.base_path.is_dir():
            raise StorageError(f"Local storage directory does not exist: {self.base_path}")
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Local storage directory is not writable: {self.base_path}")
        return True


class S3Storage(StorageBackend):
    """
    Handler for storing backups in AWS S3.

    put() streams into a multipart upload that only becomes visible once
    completed; any failure aborts the upload so no partial object remains.
    Payloads smaller than one part are sent with a single put_object.
    """

    name = 's3'

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 endpoint_url: Optional[str] = None, part_size: int = 8 * 1024 * 1024):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain if omitted)
            secret_key: AWS secret access key
            endpoint_url: Custom endpoint for S3-compatible stores
            part_size: Multipart upload part size in bytes (>= 5 MiB)
        """
        if part_size < S3_MIN_PART_SIZE:
            raise ValueError(f"S3 part size must be at least {S3_MIN_PART_SIZE} bytes")

        self.bucket_name = bucket_name
        self.region = region
        self.part_size = part_size

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def put(self, key: str, stream: Iterable[bytes],
            cancel_check: Optional[Callable[[], None]] = None) -> int:
        """
        Upload a stream to S3.

        Raises:
            StorageWriteError: If upload fails
        """
        chunks = iter(stream)
        buffer = bytearray()
        upload_id = None
        parts = []
        size = 0

        try:
            for chunk in chunks:
                if cancel_check:
                    cancel_check()

                buffer.extend(chunk)
                size += len(chunk)

                while len(buffer) >= self.part_size:
                    if upload_id is None:
                        response = self.s3_client.create_multipart_upload(
                            Bucket=self.bucket_name,
                            Key=key
                        )
                        upload_id = response['UploadId']

                    part = bytes(buffer[:self.part_size])
                    del buffer[:self.part_size]
                    parts.append(self._upload_part(key, upload_id, len(parts) + 1, part))

            if cancel_check:
                cancel_check()

            if upload_id is None:
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=bytes(buffer)
                )
                return size

            if buffer:
                parts.append(self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer)))

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
            return size

        except BackupError:
            self._abort(key, upload_id)
            raise
        except ClientError as e:
            self._abort(key, upload_id)
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageWriteError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            self._abort(key, upload_id)
            raise StorageWriteError(f"S3 upload failed: {e}")
        except Exception as e:
            self._abort(key, upload_id)
            raise StorageWriteError(f"Failed to upload to S3: {e}")

    def _upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> dict:
        response = self.s3_client.upload_part(
            Bucket=self.bucket_name,
            Key=key,
            PartNumber=part_number,
            UploadId=upload_id,
            Body=data
        )
        return {'PartNumber': part_number, 'ETag': response['ETag']}

    def _abort(self, key: str, upload_id: Optional[str]):
        if upload_id is None:
            return
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to abort multipart upload {upload_id} for {key}: {e}")

    def get(self, key: str) -> Iterator[bytes]:
        """
        Stream an object from S3.

        Raises:
            ArtifactNotFoundError: If the object does not exist
            StorageReadError: If download fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404'):
                raise ArtifactNotFoundError(f"Object not found: {key}")
            raise StorageReadError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageReadError(f"S3 download failed: {e}")

        return self._iter_body(key, response['Body'])

    def _iter_body(self, key: str, body) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(READ_CHUNK_SIZE):
                yield chunk
        except (ClientError, BotoCoreError) as e:
            raise StorageReadError(f"S3 download of {key} failed: {e}")
        finally:
            body.close()

    def delete(self, key: str):
        """
        Delete an object from S3.

        Raises:
            StorageWriteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageWriteError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageWriteError(f"Failed to delete from S3: {e}")

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageReadError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageReadError(f"S3 head failed: {e}")

    def list_objects(self, prefix: str) -> List[StoredObject]:
        """
        List objects in S3 with given prefix.

        Raises:
            StorageReadError: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append(StoredObject(
                        key=obj['Key'],
                        size=obj['Size'],
                        modified=obj['LastModified']
                    ))

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageReadError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageReadError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def create_storage(config) -> StorageBackend:
    """
    Factory function to create the configured storage backend.

    Args:
        config: Mapping with STORAGE_BACKEND and backend settings (Flask config)

    Returns:
        LocalStorage or S3Storage instance

    Raises:
        ValueError: If the backend type is invalid or incompletely configured
    """
    backend = config.get('STORAGE_BACKEND', 'local')

    if backend == 'local':
        return LocalStorage(config['LOCAL_BACKUP_DIR'])
    elif backend == 's3':
        if not config.get('S3_BUCKET'):
            raise ValueError("S3 storage requires S3_BUCKET")
        return S3Storage(
            bucket_name=config['S3_BUCKET'],
            region=config.get('S3_REGION') or 'us-east-1',
            access_key=config.get('S3_ACCESS_KEY'),
            secret_key=config.get('S3_SECRET_KEY'),
            endpoint_url=config.get('S3_ENDPOINT_URL'),
            part_size=config.get('S3_PART_SIZE') or 8 * 1024 * 1024
        )
    else:
        raise ValueError(f"Invalid storage backend: {backend}")
