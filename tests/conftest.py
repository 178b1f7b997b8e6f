"""
Shared pytest fixtures for Stowaway tests.

This module provides fixtures for:
- Retry policies that never sleep
- Local and mocked S3 object stores
- Uploaders and cloud storages on top of them
- Backup job fixtures
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from stowaway.backup.retry import RetryPolicy
from stowaway.backup.storage import LocalObjectStore, S3ObjectStore
from stowaway.backup.uploader import ChunkedUploader
from stowaway.backup.destinations import CloudStorage
from stowaway.backup.sources import Archive
from stowaway.models import BackupJob


@pytest.fixture
def no_sleep():
    """Patch time.sleep in the retry module so retries run instantly."""
    with patch('stowaway.backup.retry.time.sleep') as mock_sleep:
        yield mock_sleep


@pytest.fixture
def retry_policy():
    """Retry once, without waiting."""
    return RetryPolicy(max_retries=1, wait_seconds=0)


@pytest.fixture
def local_store(tmp_path):
    """LocalObjectStore rooted in a temporary directory."""
    return LocalObjectStore(str(tmp_path / 'store'))


@pytest.fixture
def uploader(local_store, retry_policy):
    """Uploader without segmentation on top of the local store."""
    return ChunkedUploader(local_store, retry_policy=retry_policy)


@pytest.fixture
def cloud_storage(uploader):
    """CloudStorage writing under 'backups/'."""
    return CloudStorage(uploader, path='backups')


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_store(mock_s3):
    """S3ObjectStore on the mocked 'test-bucket'."""
    return S3ObjectStore(
        bucket_name='test-bucket',
        access_key='test_access_key',
        secret_key='test_secret_key',
        region='us-east-1'
    )


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('stowaway.backup.destinations.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/test_file.pyc (should be excluded in tests)
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (data_dir / 'test_file.pyc').write_bytes(b'compiled python')

    return data_dir


@pytest.fixture
def make_file(tmp_path):
    """Factory writing a file of a given size filled with a repeating pattern."""
    def _make_file(name, size):
        path = tmp_path / name
        pattern = bytes(range(256))
        with open(path, 'wb') as f:
            remaining = size
            while remaining > 0:
                chunk = pattern[:remaining] if remaining < len(pattern) else pattern
                f.write(chunk)
                remaining -= len(chunk)
        return str(path)
    return _make_file


@pytest.fixture
def local_backup_job(temp_files, cloud_storage):
    """
    Create a backup job archiving the temp files into the local cloud storage.
    """
    return BackupJob(
        name='test local backup',
        description='Test local backup job',
        archives=[Archive('data', [str(temp_files)], excludes=['*.pyc'])],
        storages=[cloud_storage],
        retention_days=30
    )


@pytest.fixture
def temp_base_dir(tmp_path):
    """Parent directory for executor working directories."""
    path = tmp_path / 'work'
    path.mkdir()
    return str(path)

