"""
Directory syncers.

A syncer copies local directories into an object store file by file instead
of packaging them. Only files whose MD5 differs from the stored object's
checksum are uploaded. Files removed locally are reported as orphans, or
removed from the store as well when mirroring.
"""

import fnmatch
import logging
import os
from typing import Dict, List, Optional, Pattern, Sequence, Union

from .object_store import StoredObject, md5_file
from .retry import RetryExhaustedError
from .uploader import ChunkedUploader, CloudIOError, FileSizeError

logger = logging.getLogger(__name__)

Exclude = Union[str, Pattern]


class SyncerError(Exception):
    """Raised when a directory cannot be synced."""
    pass


class CloudSyncer:
    """
    Syncs local directories to an object store.

    Each directory is synced to `<path>/<directory name>/`. Files are always
    uploaded with a single put so that a stored object's checksum is the MD5
    of its file.

    Usage:
        syncer = CloudSyncer(uploader, path='mirror', directories=['/var/www'], mirror=True)
        summary = syncer.perform()
    """

    name = 'cloud'

    def __init__(self, uploader: ChunkedUploader, path: str = 'backups',
                 directories: Optional[Sequence[str]] = None, mirror: bool = False,
                 excludes: Optional[Sequence[Exclude]] = None):
        """
        Initialize cloud syncer.

        Args:
            uploader: Uploader for the target store. A segmenting uploader is
                replaced by one with segmentation disabled on the same store.
            path: Path prefix within the store
            directories: Local directories to sync
            mirror: Delete stored files that no longer exist locally
            excludes: Glob patterns (matched against the full path and the
                file name) or compiled regular expressions to skip
        """
        if uploader.segment_size:
            uploader = ChunkedUploader(
                uploader.store,
                segments_prefix=uploader.segments_prefix,
                retry_policy=uploader.retry_policy
            )

        self.uploader = uploader
        self.path = path.strip('/')
        self.directories = list(directories or [])
        self.mirror = mirror
        self.excludes = list(excludes or [])

    def perform(self) -> Dict[str, int]:
        """
        Sync every configured directory.

        Returns:
            Dict with counts:
            {
                'transferred': int,
                'unchanged': int,
                'skipped': int,   # files too large for a single put
                'orphaned': int,  # stored files missing locally and not deleted
                'deleted': int
            }

        Raises:
            SyncerError: If a directory is missing or an upload still fails after all retries
        """
        logger.info("Syncer started")
        summary = dict.fromkeys(('transferred', 'unchanged', 'skipped', 'orphaned', 'deleted'), 0)

        orphans: List[str] = []
        for directory in self.directories:
            orphans.extend(self._sync_directory(directory, summary))

        self._process_orphans(orphans, summary)

        logger.info("Summary:")
        logger.info("  Transferred Files: %d", summary['transferred'])
        if self.mirror:
            logger.info("  Deleted Files: %d", summary['deleted'])
        if summary['orphaned'] or not self.mirror:
            logger.info("  Orphaned Files: %d", summary['orphaned'])
        logger.info("  Unchanged Files: %d", summary['unchanged'])
        if summary['skipped']:
            logger.warning("  Skipped Files: %d", summary['skipped'])
        logger.info("Syncer finished")

        return summary

    def remote_base(self, directory: str) -> str:
        """Prefix a local directory is synced to."""
        name = os.path.basename(os.path.abspath(os.path.expanduser(directory)))
        return '/'.join(part for part in (self.path, name) if part)

    def _sync_directory(self, directory: str, summary: Dict[str, int]) -> List[str]:
        """
        Sync one directory.

        Returns:
            Remote paths of stored files with no local counterpart
        """
        local_dir = os.path.abspath(os.path.expanduser(directory))
        if not os.path.isdir(local_dir):
            raise SyncerError(f"Directory not found: {local_dir}")

        remote_base = self.remote_base(local_dir)
        logger.info("Gathering remote data for '%s'...", remote_base)
        remote_files = self._remote_files(remote_base)

        logger.info("Gathering local data for '%s'...", local_dir)
        local_files = self._local_files(local_dir)

        logger.info("Syncing...")
        orphans = []
        for relative_path in sorted(set(local_files) | set(remote_files)):
            remote_path = f"{remote_base}/{relative_path}"
            local_path = local_files.get(relative_path)
            remote = remote_files.get(relative_path)

            if local_path is None or not os.path.isfile(local_path):
                if remote is not None:
                    orphans.append(remote_path)
                continue

            if remote is not None and md5_file(local_path) == self._remote_checksum(remote):
                summary['unchanged'] += 1
                continue

            self._transfer(local_path, remote_path, summary)

        return orphans

    def _remote_files(self, remote_base: str) -> Dict[str, StoredObject]:
        prefix = remote_base + '/'
        return {
            obj.key[len(prefix):]: obj
            for obj in self.uploader.objects(remote_base)
            if obj.key.startswith(prefix)
        }

    def _remote_checksum(self, obj: StoredObject) -> Optional[str]:
        # Local store listings carry no checksum
        if obj.checksum:
            return obj.checksum
        return self.uploader.head(obj.key).checksum

    def _local_files(self, local_dir: str) -> Dict[str, str]:
        """Map of '/'-separated relative path to absolute path for every file to sync."""
        files = {}
        for root, dirs, names in os.walk(local_dir):
            dirs[:] = sorted(d for d in dirs if not self._excluded(os.path.join(root, d)))
            for name in names:
                path = os.path.join(root, name)
                if self._excluded(path) or not os.path.isfile(path):
                    continue
                relative_path = os.path.relpath(path, local_dir).replace(os.sep, '/')
                files[relative_path] = path
        return files

    def _excluded(self, path: str) -> bool:
        for pattern in self.excludes:
            if isinstance(pattern, str):
                if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(os.path.basename(path), pattern):
                    return True
            elif pattern.search(path):
                return True
        return False

    def _transfer(self, local_path: str, remote_path: str, summary: Dict[str, int]):
        logger.info("  [transferring] '%s'", remote_path)
        try:
            self.uploader.upload(local_path, remote_path)
        except FileSizeError as e:
            summary['skipped'] += 1
            logger.warning("Skipping '%s': %s", remote_path, e)
            return
        except (CloudIOError, RetryExhaustedError) as e:
            raise SyncerError(f"Syncer Failed! '{remote_path}' could not be uploaded: {e}") from e

        summary['transferred'] += 1

    def _process_orphans(self, orphans: List[str], summary: Dict[str, int]):
        if not orphans:
            return

        if not self.mirror:
            for remote_path in orphans:
                logger.info("  [orphaned] '%s'", remote_path)
            summary['orphaned'] = len(orphans)
            return

        for remote_path in orphans:
            logger.info("  [removing] '%s'", remote_path)
        try:
            self.uploader.delete(orphans)
            summary['deleted'] = len(orphans)
        except RetryExhaustedError as e:
            logger.warning("Delete Operation Failed: %s", e)
            summary['orphaned'] = len(orphans)
