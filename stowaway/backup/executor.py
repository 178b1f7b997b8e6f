"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create BackupHistory record (status: running)
2. Create a private temporary directory
3. Dump databases and create archives into the job directory
4. Package the job directory (tar, optionally encrypted)
5. Store the package on every configured storage
6. Cleanup temporary files
7. Update BackupHistory (status: success/failed)
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from stowaway.models import BackupJob, BackupHistory
from stowaway.utils.helpers import format_size, shell_quote
from stowaway.utils.tempfiles import temp_directory
from .pipeline import Pipeline, PipelineError

logger = logging.getLogger(__name__)


class PackageError(PipelineError):
    """Raised when the job directory cannot be packaged."""
    pass


def safe_job_name(job_name: str) -> str:
    """Replace spaces and special characters with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in job_name
    )


def generate_package_filename(job_name: str, started_at: Optional[datetime] = None) -> str:
    """
    Generate a standardized package filename.

    Format: {job_name}_{YYYYMMDD_HHMMSS}.tar

    Args:
        job_name: Name of the backup job
        started_at: Run start time (default: now)

    Returns:
        Filename (without path and without encryption extension)
    """
    started_at = started_at or datetime.now(timezone.utc)
    return f"{safe_job_name(job_name)}_{started_at.strftime('%Y%m%d_%H%M%S')}.tar"


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(self, job: BackupJob, temp_base_dir: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            job: BackupJob to execute
            temp_base_dir: Parent of the run's temporary directory (default: system temp dir)
        """
        self.job = job
        self.temp_base_dir = temp_base_dir
        self.history_record = None
        self.temp_dir = None
        self.package_path = None
        self.logs = []

    def execute(self) -> BackupHistory:
        """
        Execute the backup job.

        Never raises: failures are recorded on the returned history record.

        Returns:
            BackupHistory record with execution results
        """
        self.history_record = BackupHistory(
            job_name=self.job.name,
            status='running',
            started_at=datetime.now(timezone.utc)
        )

        self._log(f"Starting backup job: {self.job.name}")

        try:
            with temp_directory(prefix='stowaway_backup_', base_dir=self.temp_base_dir) as temp_dir:
                self.temp_dir = temp_dir
                self._log(f"Temporary directory: {temp_dir}")
                self._execute_workflow()

            self.history_record.status = 'success'
            self.history_record.completed_at = datetime.now(timezone.utc)
            self._log("Backup completed successfully")

        except Exception as e:
            self.history_record.status = 'failed'
            self.history_record.completed_at = datetime.now(timezone.utc)
            self.history_record.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            if self.temp_dir and not os.path.exists(self.temp_dir):
                self._log("Cleaned up temporary directory")
            self.history_record.logs = '\n'.join(self.logs)

        return self.history_record

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        started_at = self.history_record.started_at
        job_dir = os.path.join(self.temp_dir, safe_job_name(self.job.name))
        os.makedirs(job_dir)

        # Step 1: Database dumps
        for database in self.job.databases:
            self._log(f"Dumping database: {database.dump_name}")
            dump_path = database.perform(os.path.join(job_dir, 'databases'), self.job.compressor)
            self._log(f"Dump created: {os.path.basename(dump_path)}")

        # Step 2: Archives
        for archive in self.job.archives:
            self._log(f"Creating archive: {archive.name}")
            archive_path = archive.perform(os.path.join(job_dir, 'archives'), self.job.compressor)
            self._log(f"Archive created: {os.path.basename(archive_path)}")

        # Step 3: Package
        self._log("Packaging backup")
        self.package_path = self._create_package(job_dir, started_at)
        file_size = os.path.getsize(self.package_path)
        self.history_record.package_name = os.path.basename(self.package_path)
        self.history_record.file_size_bytes = file_size
        self._log(f"Package created: {self.history_record.package_name} ({format_size(file_size)})")

        # Step 4: Storages
        if not self.job.storages:
            self._log("No storages configured, skipping", level=logging.WARNING)

        timestamp = started_at.strftime('%Y.%m.%d.%H.%M.%S')
        for storage in self.job.storages:
            self._log(f"Storing package ({storage.name})")
            stored_path = storage.store(self.package_path, self.job.name, timestamp)
            self.history_record.stored_paths.append(stored_path)
            self._log(f"Stored: {stored_path}")

        # Step 5: Syncers
        for syncer in self.job.syncers:
            self._log(f"Syncing directories ({syncer.name})")
            summary = syncer.perform()
            self._log(
                f"Sync complete. Transferred: {summary['transferred']}, "
                f"Unchanged: {summary['unchanged']}, "
                f"Deleted: {summary['deleted']}, "
                f"Orphaned: {summary['orphaned']}, "
                f"Skipped: {summary['skipped']}"
            )

    def _create_package(self, job_dir: str, started_at: datetime) -> str:
        """
        Tar the job directory into a single package, encrypting it if configured.

        Returns:
            Path to the package file

        Raises:
            PackageError: If any stage of the packaging pipeline fails
        """
        filename = generate_package_filename(self.job.name, started_at)
        parent_dir, dir_name = os.path.split(job_dir)

        pipeline = Pipeline()
        pipeline.append(f"tar -cf - -C {shell_quote(parent_dir)} {shell_quote(dir_name)}")

        if self.job.encryptor:
            with self.job.encryptor.encrypt_with() as (encrypt_command, extension):
                pipeline.append(encrypt_command)
                filename += extension
                package_path = os.path.join(self.temp_dir, filename)
                pipeline.append(f"cat > {shell_quote(package_path)}")
                result = pipeline.run()
        else:
            package_path = os.path.join(self.temp_dir, filename)
            pipeline.append(f"cat > {shell_quote(package_path)}")
            result = pipeline.run()

        if not result.success:
            raise PackageError(f"Failed to Create Backup Package\n{result.error_messages()}")

        return package_path

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup_job(job: BackupJob, temp_base_dir: Optional[str] = None) -> BackupHistory:
    """
    Execute a backup job.

    Args:
        job: BackupJob to execute
        temp_base_dir: Parent of the run's temporary directory

    Returns:
        BackupHistory record with execution results
    """
    executor = BackupExecutor(job, temp_base_dir)
    return executor.execute()


def execute_backup_jobs(jobs: List[BackupJob], temp_base_dir: Optional[str] = None) -> List[BackupHistory]:
    """
    Execute several backup jobs one after another.

    A failing job does not stop the remaining ones.

    Returns:
        One BackupHistory per job, in order
    """
    return [execute_backup_job(job, temp_base_dir) for job in jobs]
