"""
Shared pytest fixtures for dumpkeeper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with a file-backed SQLite database
- Operator and authentication fixtures
- Backup source, storage and orchestrator fixtures
- Mock fixtures for external services (S3, SSH)
"""

import os
import json
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dumpkeeper import create_app, db as _db
from dumpkeeper.auth import create_operator
from dumpkeeper.models import BackupSource
from dumpkeeper.backup.encryption import PassphraseKeyProvider
from dumpkeeper.backup.executor import BackupOrchestrator
from dumpkeeper.backup.storage import LocalStorage


TEST_KEY_REF = 'test-key'
TEST_PASSPHRASE = 'correct horse battery staple'


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses a file-backed SQLite database so worker threads share the data.
    """
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'dumpkeeper.db'}",
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables, inside an application context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def api_token(db):
    """Create an operator and return its plain text API token."""
    _, token = create_operator('tester')
    return token


@pytest.fixture(scope='function')
def auth_headers(api_token):
    return {'Authorization': f'Bearer {api_token}'}


@pytest.fixture(scope='function')
def storage(tmp_path):
    """Local storage backend in a temporary directory."""
    return LocalStorage(str(tmp_path / 'store'))


@pytest.fixture(scope='session')
def key_provider():
    """
    Key provider holding the test passphrase.

    Session scoped: deriving the key is deliberately slow.
    """
    return PassphraseKeyProvider({TEST_KEY_REF: TEST_PASSPHRASE})


@pytest.fixture(scope='function')
def dump_file(tmp_path):
    """A fake database dump with compressible and incompressible parts."""
    path = tmp_path / 'orders.dump'
    content = b''.join(
        f"INSERT INTO orders VALUES ({i}, 'customer-{i % 97}', {i * 3});\n".encode()
        for i in range(20000)
    ) + os.urandom(64 * 1024)
    path.write_bytes(content)
    return path


def make_source(name, dump_path, policy=None, **kwargs):
    source = BackupSource(
        name=name,
        description=f'Test source {name}',
        enabled=kwargs.pop('enabled', True),
        source_type='file',
        source_config=json.dumps({'path': str(dump_path)}),
        compression=kwargs.pop('compression', True),
        encryption=kwargs.pop('encryption', False),
        key_ref=kwargs.pop('key_ref', None),
        retention_policy=json.dumps(policy if policy is not None else {'tiers': [{'period': 'daily', 'keep': 7}]}),
        **kwargs
    )
    _db.session.add(source)
    _db.session.commit()
    return source


@pytest.fixture(scope='function')
def backup_source(db, dump_file):
    """A file source with daily retention (keep 7)."""
    return make_source('orders-db', dump_file)


@pytest.fixture(scope='function')
def orchestrator(app, storage, key_provider):
    """
    Orchestrator on local storage, registered as the app's orchestrator.

    The lease heartbeat is disabled; lock tests cover it separately.
    """
    orchestrator = BackupOrchestrator(
        storage=storage,
        key_provider=key_provider,
        chunk_size=64 * 1024,
        queue_depth=4,
        progress_interval=0,
        source_read_timeout=10,
        lock_ttl=300,
        lock_heartbeat=0,
        stale_after=3600,
        concurrency_limit=2
    )
    app.extensions['dumpkeeper.orchestrator'] = orchestrator
    return orchestrator


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.client(
            's3',
            region_name='us-east-1',
            aws_access_key_id='testing',
            aws_secret_access_key='testing'
        )
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for remote dump commands.

    exec_command returns a stdout that yields b'remote dump' and exits 0.
    """
    with patch('dumpkeeper.backup.sources.SSHClient') as mock_ssh:
        stdout = MagicMock()
        stdout.read.side_effect = [b'remote dump', b'']
        stdout.channel.recv_exit_status.return_value = 0
        stderr = MagicMock()
        stderr.read.return_value = b''

        mock_ssh.return_value.exec_command.return_value = (MagicMock(), stdout, stderr)
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh
