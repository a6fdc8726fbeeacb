"""
Unit tests for storage backends (dumpkeeper/backup/storage.py).

Tests LocalStorage and S3Storage against the shared put/get/list/delete contract.
"""

import os

import pytest
import boto3
from moto import mock_aws

from dumpkeeper.backup.errors import (
    ArtifactNotFoundError,
    RunCancelled,
    StorageError,
    StorageWriteError,
)
from dumpkeeper.backup.storage import (
    LocalStorage,
    S3Storage,
    S3_MIN_PART_SIZE,
    create_storage,
)


def failing_stream(chunks, error):
    for chunk in chunks:
        yield chunk
    raise error


def make_s3_storage(**kwargs):
    return S3Storage(
        bucket_name='test-bucket',
        region='us-east-1',
        access_key='testing',
        secret_key='testing',
        **kwargs
    )


class TestLocalStorage:
    """Test LocalStorage filesystem operations."""

    def test_put_and_get(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'store'))

        size = storage.put('orders-db/2024/03/a.dump.gz', [b'first ', b'second'])

        assert size == 12
        assert b''.join(storage.get('orders-db/2024/03/a.dump.gz')) == b'first second'
        assert storage.exists('orders-db/2024/03/a.dump.gz')
        assert (tmp_path / 'store' / 'orders-db' / '2024' / '03' / 'a.dump.gz').is_file()

    def test_put_replaces_existing(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put('k/a', [b'old'])
        storage.put('k/a', [b'new'])

        assert b''.join(storage.get('k/a')) == b'new'

    def test_failed_put_leaves_nothing(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageWriteError):
            storage.put('orders-db/a.dump', failing_stream([b'partial'], IOError("disk full")))

        assert not storage.exists('orders-db/a.dump')
        assert os.listdir(tmp_path / 'orders-db') == []

    def test_backup_errors_pass_through(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(RunCancelled):
            storage.put('orders-db/a.dump', failing_stream([b'x'], RunCancelled("stop")))

        assert storage.list_objects('') == []

    def test_cancel_check(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        def cancel():
            raise RunCancelled("cancelled")

        with pytest.raises(RunCancelled):
            storage.put('orders-db/a.dump', [b'x', b'y'], cancel_check=cancel)

        assert not storage.exists('orders-db/a.dump')

    def test_get_missing(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(ArtifactNotFoundError):
            storage.get('orders-db/missing.dump')

    def test_delete_is_idempotent(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put('orders-db/a.dump', [b'x'])

        storage.delete('orders-db/a.dump')
        storage.delete('orders-db/a.dump')

        assert not storage.exists('orders-db/a.dump')

    def test_list_objects(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put('orders-db/2024/03/b.dump', [b'bb'])
        storage.put('orders-db/2024/02/a.dump', [b'a'])
        storage.put('billing/2024/03/c.dump', [b'ccc'])

        objects = storage.list_objects('orders-db/')

        assert [obj.key for obj in objects] == ['orders-db/2024/02/a.dump', 'orders-db/2024/03/b.dump']
        assert [obj.size for obj in objects] == [1, 2]
        assert objects[0].modified.tzinfo is not None

    def test_list_skips_partial_files(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.put('orders-db/a.dump', [b'x'])
        (tmp_path / 'orders-db' / '.b.dump.1234.partial').write_bytes(b'half')

        assert [obj.key for obj in storage.list_objects('orders-db/')] == ['orders-db/a.dump']

    def test_connection(self, tmp_path):
        assert LocalStorage(str(tmp_path / 'store')).test_connection() is True

    def test_connection_directory_removed(self, tmp_path):
        storage = LocalStorage(str(tmp_path / 'store'))
        (tmp_path / 'store').rmdir()

        with pytest.raises(StorageError, match='does not exist'):
            storage.test_connection()

    @pytest.mark.parametrize('key', ['../escape.dump', 'orders-db/../../escape.dump', ''])
    def test_keys_cannot_escape_base_path(self, tmp_path, key):
        storage = LocalStorage(str(tmp_path / 'store'))

        with pytest.raises(StorageError):
            storage.put(key, [b'x'])


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def test_put_small_object(self, mock_s3):
        storage = make_s3_storage()

        size = storage.put('orders-db/2024/03/a.dump.gz', [b'test data' * 100])

        assert size == 900
        obj = mock_s3.get_object(Bucket='test-bucket', Key='orders-db/2024/03/a.dump.gz')
        assert obj['Body'].read() == b'test data' * 100

    def test_multipart_upload(self, mock_s3):
        storage = make_s3_storage(part_size=S3_MIN_PART_SIZE)
        chunk = os.urandom(1024 * 1024)
        chunks = [chunk] * 6

        size = storage.put('orders-db/big.dump', chunks)

        assert size == 6 * 1024 * 1024
        assert b''.join(storage.get('orders-db/big.dump')) == chunk * 6
        assert mock_s3.list_multipart_uploads(Bucket='test-bucket').get('Uploads', []) == []

    def test_failed_multipart_is_aborted(self, mock_s3):
        storage = make_s3_storage(part_size=S3_MIN_PART_SIZE)
        chunks = [os.urandom(1024 * 1024)] * 6

        with pytest.raises(StorageWriteError):
            storage.put('orders-db/big.dump', failing_stream(chunks, IOError("source died")))

        assert not storage.exists('orders-db/big.dump')
        assert mock_s3.list_multipart_uploads(Bucket='test-bucket').get('Uploads', []) == []

    def test_get_missing(self, mock_s3):
        storage = make_s3_storage()

        with pytest.raises(ArtifactNotFoundError):
            storage.get('orders-db/missing.dump')

    def test_exists_and_delete(self, mock_s3):
        storage = make_s3_storage()
        storage.put('orders-db/a.dump', [b'x'])

        assert storage.exists('orders-db/a.dump')
        storage.delete('orders-db/a.dump')
        assert not storage.exists('orders-db/a.dump')

    def test_list_objects(self, mock_s3):
        storage = make_s3_storage()
        storage.put('orders-db/2024/03/a.dump', [b'aa'])
        storage.put('billing/2024/03/b.dump', [b'b'])

        objects = storage.list_objects('orders-db/')

        assert [(obj.key, obj.size) for obj in objects] == [('orders-db/2024/03/a.dump', 2)]

    def test_part_size_below_minimum(self):
        with pytest.raises(ValueError):
            make_s3_storage(part_size=1024)

    def test_connection(self, mock_s3):
        assert make_s3_storage().test_connection() is True

    @mock_aws
    def test_connection_missing_bucket(self):
        storage = S3Storage(bucket_name='no-such-bucket', access_key='testing', secret_key='testing')

        with pytest.raises(StorageError):
            storage.test_connection()


class TestCreateStorage:
    """Test the storage factory."""

    def test_local(self, tmp_path):
        storage = create_storage({'STORAGE_BACKEND': 'local', 'LOCAL_BACKUP_DIR': str(tmp_path)})

        assert isinstance(storage, LocalStorage)

    def test_s3(self, mock_s3):
        storage = create_storage({
            'STORAGE_BACKEND': 's3',
            'S3_BUCKET': 'test-bucket',
            'S3_ACCESS_KEY': 'testing',
            'S3_SECRET_KEY': 'testing'
        })

        assert isinstance(storage, S3Storage)
        assert storage.bucket_name == 'test-bucket'

    def test_s3_requires_bucket(self):
        with pytest.raises(ValueError):
            create_storage({'STORAGE_BACKEND': 's3'})

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            create_storage({'STORAGE_BACKEND': 'ftp'})
