"""
Retention policy enforcement for backups.

Removes packages older than a job's retention period, or past the
X-Delete-At time they were uploaded with, from cloud storages.
Segmented packages are removed through their manifest so that no segment is
left behind; plain objects are removed in batches.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from stowaway.models import BackupJob
from .destinations import CloudStorage
from .object_store import StoredObject

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps (local store) are in local time
    return value.astimezone(timezone.utc)


class RetentionManager:
    """
    Manages retention policy enforcement for backup jobs.

    Cleans up packages stored through CloudStorage destinations based on the
    job's retention_days setting and the X-Delete-At time of each package.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def enforce_all_policies(self, jobs: List[BackupJob]) -> Dict[str, Any]:
        """
        Enforce retention policies for several backup jobs.

        Returns:
            Dict with summary of cleanup operations:
            {
                'jobs_processed': int,
                'deleted': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all jobs")

        summary = {
            'jobs_processed': 0,
            'deleted': 0,
            'errors': []
        }

        for job in jobs:
            try:
                result = self.enforce_job_policy(job)
                summary['jobs_processed'] += 1
                summary['deleted'] += result['deleted']
            except Exception as e:
                error_msg = f"Failed to enforce policy for job {job.name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Jobs: {summary['jobs_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def enforce_job_policy(self, job: BackupJob) -> Dict[str, int]:
        """
        Enforce retention policy for a specific job.

        Packages older than the job's retention_days are removed, and so is
        every package whose X-Delete-At time has passed, whether or not the
        job sets retention_days.

        Args:
            job: BackupJob instance

        Returns:
            Dict with counts: {'deleted': int, 'manifests_deleted': int}

        Raises:
            RetryExhaustedError: If listing or deleting still fails after all retries
        """
        self._log(f"Enforcing retention policy for job: {job.name}")
        result = {'deleted': 0, 'manifests_deleted': 0}

        if job.retention_days is None:
            self._log("Retention: not configured, removing only packages past their X-Delete-At")
        else:
            self._log(f"Retention: {job.retention_days} days")

        for storage in job.storages:
            if not isinstance(storage, CloudStorage):
                continue
            deleted, manifests = self.cleanup_storage(storage, job.name, job.retention_days)
            result['deleted'] += deleted
            result['manifests_deleted'] += manifests

        return result

    def cleanup_storage(self, storage: CloudStorage, job_name: str,
                        retention_days: Optional[int] = None) -> Tuple[int, int]:
        """
        Remove a job's expired packages from one cloud storage.

        A package is expired when it is older than retention_days or when its
        X-Delete-At time has passed.

        Args:
            storage: Cloud storage the job writes to
            job_name: Job whose packages are examined
            retention_days: Packages older than this many days are removed (None: no age limit)

        Returns:
            (objects deleted, of which manifests)
        """
        uploader = storage.uploader
        now = datetime.now(timezone.utc)
        cutoff_date = now - timedelta(days=retention_days) if retention_days is not None else None

        manifests: List[StoredObject] = []
        plain: List[StoredObject] = []
        for obj in uploader.objects(storage.job_prefix(job_name)):
            # Listings do not always carry metadata
            metadata = obj if obj.metadata else uploader.head(obj.key)

            too_old = (
                cutoff_date is not None
                and obj.last_modified is not None
                and _as_utc(obj.last_modified) < cutoff_date
            )
            past_delete_at = metadata.delete_at is not None and metadata.delete_at <= now.timestamp()
            if not (too_old or past_delete_at):
                continue

            if metadata.is_manifest:
                manifests.append(obj)
            else:
                plain.append(obj)

        if not manifests and not plain:
            if retention_days is None:
                self._log("No packages past their X-Delete-At")
            else:
                self._log(f"No packages older than {retention_days} days")
            return 0, 0

        if manifests:
            uploader.delete_manifest(manifests)
        if plain:
            uploader.delete(plain)

        for obj in manifests + plain:
            self._log(f"Deleted: {obj.key}")

        return len(manifests) + len(plain), len(manifests)

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


def enforce_retention_policies(jobs: List[BackupJob]) -> Dict[str, Any]:
    """
    Enforce retention policies for the given jobs.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager()
    return manager.enforce_all_policies(jobs)
