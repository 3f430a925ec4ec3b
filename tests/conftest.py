"""
Shared pytest fixtures for Backup Manager tests.

This module provides fixtures for:
- Configuration files in a temporary home
- An in-memory storage backend
- A fake mysqldump process
- Application data directories
- Mock AWS credentials and SSH host keys
"""

import io
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from backupmgr.backup.storage import StorageBackend, StorageTarget, UploadResult
from backupmgr.config import Config, StorageMethod, save_config


DUMP_CONTENT = b"-- MariaDB dump\nCREATE TABLE `users` (`id` int);\n"


class MemoryStorage(StorageBackend):
    """Storage backend keeping uploads in memory."""

    method = StorageMethod.FILESYSTEM

    def __init__(self, fail_on=None):
        super().__init__()
        self.containers = {}
        self.created = []
        self.connected = False
        self.closed = False
        self.fail_on = fail_on

    def connect(self):
        self.connected = True

    def _resolve_target(self, name):
        if name not in self.containers:
            self.containers[name] = {}
            self.created.append(name)
        return StorageTarget(name=name, identifier=name)

    def upload(self, target, name, kind, stream, content_type='application/octet-stream'):
        if self.fail_on is not None and self.fail_on(name, kind):
            from backupmgr.exceptions import UploadFailure
            raise UploadFailure(f"Simulated failure uploading {name}")

        data = stream.read()
        self.containers[target.identifier][name] = data
        return UploadResult(identifier=f"{target.identifier}/{name}", name=name, size=len(data))

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never touches real accounts."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def config_path(tmp_path):
    """Path of a (not yet written) configuration file."""
    return tmp_path / 'home' / 'BackupManager.v1.json'


@pytest.fixture
def app_dir(tmp_path):
    """
    Create an application directory.

    Creates:
    - config/config.ini with a [Storage] section pointing at ./store
    - store/avatars/1.png
    - store/uploads/doc.txt
    """
    app = tmp_path / 'misuzu'
    (app / 'config').mkdir(parents=True)
    (app / 'config' / 'config.ini').write_text('[Database]\nhost=localhost\n\n[Storage]\npath=store\n')

    store = app / 'store'
    (store / 'avatars').mkdir(parents=True)
    (store / 'uploads').mkdir()
    (store / 'avatars' / '1.png').write_bytes(b'\x89PNG fake image')
    (store / 'uploads' / 'doc.txt').write_text('uploaded document')

    return app


@pytest.fixture
def base_config(tmp_path, app_dir):
    """Configuration using the filesystem backend and the test application."""
    config = Config(storage_method=StorageMethod.FILESYSTEM)
    config.filesystem.path = str(tmp_path / 'backups')
    config.mysql.user = 'backup'
    config.mysql.password = 'hunter2'
    config.mysql.databases = 'misuzu'
    config.application.path = str(app_dir)
    return config


@pytest.fixture
def written_config(config_path, base_config):
    """base_config saved to config_path."""
    save_config(base_config, config_path)
    return config_path


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def storage_cls():
    """MemoryStorage class, for tests that need several or failing instances."""
    return MemoryStorage


@pytest.fixture
def fake_mysqldump():
    """
    Replace subprocess.run in the dump producer with a fake mysqldump.

    The fake writes DUMP_CONTENT to --result-file (or stdout) and records the
    command and the defaults file content it was called with.
    """
    calls = []

    def run(command, stdout=None, stderr=None, check=False):
        defaults = next(arg for arg in command if arg.startswith('--defaults-file='))
        defaults_path = Path(defaults.split('=', 1)[1])
        calls.append({
            'command': list(command),
            'defaults': defaults_path.read_text(),
            'defaults_path': defaults_path,
        })

        result_file = next((arg for arg in command if arg.startswith('--result-file=')), None)
        if result_file:
            Path(result_file.split('=', 1)[1]).write_bytes(DUMP_CONTENT)
        else:
            stdout.write(DUMP_CONTENT)

        return subprocess.CompletedProcess(command, 0, stderr=b'')

    with patch('backupmgr.backup.sources.subprocess.run', side_effect=run) as mock_run:
        mock_run.calls = calls
        mock_run.content = DUMP_CONTENT
        yield mock_run


@pytest.fixture
def host_key():
    """A host key double presenting the identity 'ssh-rsa#QUJD#RUZH'."""
    key = MagicMock()
    key.get_name.return_value = 'ssh-rsa'
    key.asbytes.return_value = b'ABC'
    key.get_fingerprint.return_value = b'EFG'
    return key


@pytest.fixture
def byte_stream():
    return io.BytesIO(b'backup payload' * 100)
