"""
Unit tests for backup executor (stowaway/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows.
"""

import os
import tarfile
from datetime import datetime, timezone
from unittest.mock import MagicMock

from stowaway.backup.compression import Gzip
from stowaway.backup.databases import PostgreSQL
from stowaway.backup.encryption import OpenSSLEncryptor
from stowaway.backup.executor import (
    BackupExecutor,
    execute_backup_job,
    execute_backup_jobs,
    generate_package_filename,
    safe_job_name
)
from stowaway.models import BackupJob, BackupHistory


class TestPackageFilename:
    """Test package naming helpers."""

    def test_safe_job_name(self):
        assert safe_job_name('my job/prod!') == 'my_job_prod_'

    def test_generate_package_filename(self):
        started_at = datetime(2024, 1, 15, 12, 30, 45, tzinfo=timezone.utc)

        assert generate_package_filename('nightly db', started_at) == 'nightly_db_20240115_123045.tar'


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, local_backup_job):
        """Test BackupExecutor initializes correctly."""
        executor = BackupExecutor(local_backup_job)

        assert executor.job == local_backup_job
        assert executor.history_record is None
        assert executor.temp_dir is None
        assert executor.package_path is None
        assert executor.logs == []

    def test_executor_successful_backup(self, local_backup_job, local_store, temp_base_dir):
        """Test successful backup execution end to end."""
        result = BackupExecutor(local_backup_job, temp_base_dir).execute()

        assert isinstance(result, BackupHistory)
        assert result.status == 'success', result.error_message
        assert result.error_message is None
        assert result.completed_at is not None
        assert result.file_size_bytes > 0
        assert result.package_name.startswith('test_local_backup_')
        assert len(result.stored_paths) == 1

        stored_path = result.stored_paths[0]
        assert stored_path.startswith('backups/test local backup/')
        assert stored_path.endswith(result.package_name)

        # Package contains the archive inside the job directory
        with tarfile.open(local_store.get_full_path(stored_path)) as tar:
            assert 'test_local_backup/archives/data.tar' in tar.getnames()

        assert 'Backup completed successfully' in result.logs
        assert 'Cleaned up temporary directory' in result.logs
        assert os.listdir(temp_base_dir) == []

    def test_executor_with_database_and_compression(self, cloud_storage, local_store, temp_base_dir):
        job = BackupJob(
            name='db',
            databases=[PostgreSQL(name='app', pg_dump_utility="printf 'SELECT 1;' #")],
            compressor=Gzip(),
            storages=[cloud_storage]
        )

        result = BackupExecutor(job, temp_base_dir).execute()

        assert result.status == 'success', result.error_message
        with tarfile.open(local_store.get_full_path(result.stored_paths[0])) as tar:
            assert 'db/databases/PostgreSQL.sql.gz' in tar.getnames()

    def test_executor_with_encryption(self, cloud_storage, temp_base_dir):
        """Encryption stage is applied to the package and adds its extension."""
        encryptor = OpenSSLEncryptor(passphrase='secret')
        encryptor.utility = 'cat #'
        job = BackupJob(
            name='enc',
            encryptor=encryptor,
            storages=[cloud_storage]
        )

        result = BackupExecutor(job, temp_base_dir).execute()

        assert result.status == 'success', result.error_message
        assert result.package_name.endswith('.tar.enc')

    def test_executor_failed_backup(self, cloud_storage, temp_base_dir):
        """A failing dump marks the run failed and still cleans up."""
        job = BackupJob(
            name='broken',
            databases=[PostgreSQL(name='app', pg_dump_utility="echo 'could not connect' >&2; exit 1 #")],
            storages=[cloud_storage]
        )

        result = BackupExecutor(job, temp_base_dir).execute()

        assert result.status == 'failed'
        assert 'Dump Failed!' in result.error_message
        assert 'could not connect' in result.error_message
        assert 'Backup failed' in result.logs
        assert result.stored_paths == []
        assert os.listdir(temp_base_dir) == []

    def test_executor_storage_failure(self, local_backup_job, temp_base_dir):
        failing_storage = MagicMock()
        failing_storage.name = 'cloud'
        failing_storage.store.side_effect = IOError('disk full')
        local_backup_job.storages = [failing_storage]

        result = BackupExecutor(local_backup_job, temp_base_dir).execute()

        assert result.status == 'failed'
        assert result.error_message == 'disk full'
        assert os.listdir(temp_base_dir) == []

    def test_executor_without_storages_warns(self, temp_base_dir, caplog):
        job = BackupJob(name='nowhere')

        result = BackupExecutor(job, temp_base_dir).execute()

        assert result.status == 'success'
        assert 'No storages configured' in caplog.text

    def test_log_entries_are_timestamped(self, temp_base_dir):
        executor = BackupExecutor(BackupJob(name='logs'), temp_base_dir)
        executor._log('hello')

        assert executor.logs[0].startswith('[')
        assert executor.logs[0].endswith('UTC] hello')


class TestExecuteHelpers:
    """Test module-level helpers."""

    def test_execute_backup_job(self, temp_base_dir):
        result = execute_backup_job(BackupJob(name='quick'), temp_base_dir)

        assert result.job_name == 'quick'
        assert result.status == 'success'

    def test_execute_backup_jobs_continues_after_failure(self, temp_base_dir):
        broken = BackupJob(
            name='broken',
            databases=[PostgreSQL(name='app', pg_dump_utility='exit 1 #')]
        )
        fine = BackupJob(name='fine')

        results = execute_backup_jobs([broken, fine], temp_base_dir)

        assert [r.status for r in results] == ['failed', 'success']
