"""
Chunked, retrying upload of backup packages to an object store.

Small files are stored with a single put. Files larger than the configured
segment size are split into fixed-size segments, uploaded one after another,
and tied together by a manifest that is committed only after every segment
has been stored. Every store call is wrapped in a RetryRunner.
"""

import io
import hashlib
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Union

from stowaway.utils.helpers import format_size
from .object_store import (
    DELETE_AT_HEADER,
    Manifest,
    ObjectStore,
    Segment,
    StoredObject,
    md5_file
)
from .retry import RetryPolicy, RetryRunner, RetryExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_SEGMENTS_PREFIX = 'segments'
DEFAULT_DELETE_BATCH = 10000


class CloudIOError(Exception):
    """Base class for upload errors."""
    pass


class FileSizeError(CloudIOError):
    """Raised when a file exceeds the store's size limits."""
    pass


class ManifestError(CloudIOError):
    """
    Raised when the manifest could not be committed after all segments
    were uploaded.

    The uploaded segments are left in place; `segments` lists them so the
    caller can decide whether to delete them.
    """

    def __init__(self, remote_path: str, segments: List[Segment], cause: BaseException):
        self.remote_path = remote_path
        self.segments = segments
        super().__init__(
            f"Failed to store manifest '{remote_path}' after uploading "
            f"{len(segments)} segments: {cause}"
        )


class FileRegion(io.RawIOBase):
    """
    Read-only, seekable view of `length` bytes of a file starting at `offset`.

    Every read seeks the underlying file, so several regions may share one
    file object as long as they are not read concurrently.
    """

    def __init__(self, f, offset: int, length: int):
        super().__init__()
        self._file = f
        self._offset = offset
        self._length = length
        self._position = 0

    def readable(self):
        return True

    def seekable(self):
        return True

    def tell(self):
        return self._position

    def seek(self, position, whence=io.SEEK_SET):
        if whence == io.SEEK_SET:
            new_position = position
        elif whence == io.SEEK_CUR:
            new_position = self._position + position
        elif whence == io.SEEK_END:
            new_position = self._length + position
        else:
            raise ValueError(f"Invalid whence: {whence}")
        self._position = max(0, new_position)
        return self._position

    def readinto(self, buffer):
        remaining = self._length - self._position
        if remaining <= 0:
            return 0
        self._file.seek(self._offset + self._position)
        data = self._file.read(min(len(buffer), remaining))
        buffer[:len(data)] = data
        self._position += len(data)
        return len(data)


def _region_md5(f, offset: int, length: int, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.md5()
    region = FileRegion(f, offset, length)
    for chunk in iter(lambda: region.read(chunk_size), b''):
        digest.update(chunk)
    return digest.hexdigest()


def _names(objects: Union[str, StoredObject, Iterable[Union[str, StoredObject]]]) -> List[str]:
    if isinstance(objects, (str, StoredObject)):
        objects = [objects]
    return [obj.key if isinstance(obj, StoredObject) else obj for obj in objects]


class ChunkedUploader:
    """
    Uploads files to an ObjectStore, segmenting them when they are large.

    Usage:
        uploader = ChunkedUploader(store, segment_size=100 * 1024 ** 2)
        uploader.upload('/tmp/backup.tar', 'backups/job/backup.tar')
    """

    def __init__(self, store: ObjectStore, segments_prefix: Optional[str] = None,
                 segment_size: int = 0, retry_policy: Optional[RetryPolicy] = None,
                 days_to_keep: Optional[int] = None):
        """
        Initialize chunked uploader.

        Args:
            store: Object store to upload to
            segments_prefix: Path prefix segment objects are stored under
            segment_size: Segment size in bytes; 0 disables segmentation
            retry_policy: Retry limits for every store call (default: RetryPolicy())
            days_to_keep: Mark uploaded objects for deletion after this many days
        """
        if segment_size < 0:
            raise ValueError(f"segment_size must be >= 0, got {segment_size}")
        if store.max_file_size is not None and segment_size > store.max_file_size:
            raise ValueError(
                f"segment_size of {format_size(segment_size)} exceeds the store's "
                f"maximum object size of {format_size(store.max_file_size)}"
            )

        self.store = store
        self.segments_prefix = (segments_prefix or DEFAULT_SEGMENTS_PREFIX).strip('/')
        self.segment_size = segment_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry = RetryRunner(self.retry_policy)
        self.days_to_keep = days_to_keep

        self._prepared = False
        self._headers = None

    @property
    def headers(self) -> dict:
        """
        Headers sent with every put. Computed once so that all segments and
        the manifest of an upload share the same expiry.
        """
        if self._headers is None:
            self._headers = {}
            if self.days_to_keep:
                delete_at = datetime.now(timezone.utc) + timedelta(days=self.days_to_keep)
                self._headers[DELETE_AT_HEADER] = int(delete_at.timestamp())
        return self._headers

    def upload(self, local_path: str, remote_path: str) -> Optional[Manifest]:
        """
        Upload a local file.

        Args:
            local_path: Path to the local file
            remote_path: Destination object path

        Returns:
            The committed Manifest for segmented uploads, None for single puts

        Raises:
            FileSizeError: If the file exceeds the store's limits (raised before any request)
            RetryExhaustedError: If a put still fails after all retries
            ManifestError: If the manifest could not be committed
        """
        try:
            file_size = os.path.getsize(local_path)
        except OSError as e:
            raise CloudIOError(f"Local file not found: {local_path} ({e})") from e

        segment_size = self._segment_size_for(file_size)
        self._prepare()

        if segment_size is None:
            self._put_object(local_path, remote_path)
            return None

        segments = self._upload_segments(local_path, remote_path, segment_size, file_size)
        return self._upload_manifest(remote_path, segments)

    def _segment_size_for(self, file_size: int) -> Optional[int]:
        """
        Work out the segment size to use for a file.

        Returns:
            Segment size in bytes, or None if the file is stored with a single put

        Raises:
            FileSizeError: If the file is too large for the store
        """
        max_file_size = self.store.max_file_size
        max_segments = self.store.max_segments

        if not self.segment_size or file_size <= self.segment_size:
            if max_file_size is not None and file_size > max_file_size:
                raise FileSizeError(
                    f"File size of {format_size(file_size)} exceeds the maximum "
                    f"object size of {format_size(max_file_size)}. "
                    f"Enable segmentation by setting a segment size."
                )
            return None

        if max_file_size is not None and file_size > max_file_size * max_segments:
            raise FileSizeError(
                f"File size of {format_size(file_size)} exceeds the maximum "
                f"segmented object size of {format_size(max_file_size * max_segments)}"
            )

        segment_size = self.segment_size
        if -(-file_size // segment_size) > max_segments:
            adjusted = -(-file_size // max_segments)
            logger.warning(
                "Segment size of %s has been adjusted to %s "
                "to keep the upload within %d segments",
                format_size(segment_size), format_size(adjusted), max_segments
            )
            segment_size = adjusted

        return segment_size

    def _segment_path(self, remote_path: str, number: int, segment_count: int) -> str:
        width = max(4, len(str(segment_count)))
        return f"{self.segments_prefix}/{remote_path.lstrip('/')}/{number:0{width}d}"

    def _put_object(self, local_path: str, remote_path: str):
        checksum = md5_file(local_path)
        self.retry.run(
            f"PUT '{remote_path}'",
            self.store.put, local_path, remote_path, checksum, self.headers
        )

    def _put_segment(self, f, offset: int, length: int, segment_path: str, checksum: str):
        # A fresh region per attempt so retries stream from the segment's start
        region = FileRegion(f, offset, length)
        self.store.put(region, segment_path, checksum, self.headers)

    def _upload_segments(self, local_path: str, remote_path: str,
                         segment_size: int, file_size: int) -> List[Segment]:
        """
        Upload a file as consecutive segments, one at a time.

        Returns:
            Segments in upload order
        """
        segment_count = -(-file_size // segment_size)
        thresholds = {percent: segment_count * percent // 100 for percent in range(10, 100, 10)}
        segments = []

        logger.info("Uploading %d segments for '%s'...", segment_count, remote_path)

        with open(local_path, 'rb') as f:
            for number in range(1, segment_count + 1):
                offset = (number - 1) * segment_size
                length = min(segment_size, file_size - offset)
                segment_path = self._segment_path(remote_path, number, segment_count)
                checksum = _region_md5(f, offset, length)

                self.retry.run(
                    f"PUT '{segment_path}'",
                    self._put_segment, f, offset, length, segment_path, checksum
                )
                segments.append(Segment(number, segment_path, checksum, length))

                reached = [percent for percent, count in thresholds.items() if count == number]
                if reached:
                    logger.info("...%d%% Complete...", max(reached))

        return segments

    def _upload_manifest(self, remote_path: str, segments: List[Segment]) -> Manifest:
        manifest = Manifest(remote_path, list(segments))
        logger.info("Storing manifest '%s' (%d segments, %s)",
                    remote_path, len(segments), format_size(manifest.total_size))

        try:
            self.retry.run(
                f"PUT Manifest '{remote_path}'",
                self.store.put_manifest, remote_path, manifest.segments, self.headers
            )
        except RetryExhaustedError as e:
            raise ManifestError(remote_path, manifest.segments, e) from e

        return manifest

    def delete(self, objects: Union[str, StoredObject, Iterable[Union[str, StoredObject]]]):
        """
        Delete plain objects, batched to the store's per-request limit.

        Args:
            objects: A name, a StoredObject, or a list of either

        Raises:
            RetryExhaustedError: If a batch still fails after all retries
        """
        names = _names(objects)
        batch_size = self.store.max_delete_batch or DEFAULT_DELETE_BATCH

        for start in range(0, len(names), batch_size):
            self.retry.run(
                "DELETE Multiple Objects",
                self.store.delete, names[start:start + batch_size]
            )

    def delete_manifest(self, objects: Union[str, StoredObject, Iterable[Union[str, StoredObject]]]):
        """
        Delete manifest objects together with all of their segments.

        Raises:
            RetryExhaustedError: If a manifest still fails to delete after all retries
        """
        for name in _names(objects):
            self.retry.run(f"DELETE Manifest '{name}'", self.store.delete_manifest, name)

    def objects(self, prefix: str) -> List[StoredObject]:
        """
        List every object under a directory-like prefix.

        Args:
            prefix: Path prefix; a trailing '/' is added if missing

        Returns:
            All objects found, across every page
        """
        self._prepare()
        prefix = prefix.rstrip('/') + '/' if prefix else ''

        results: List[StoredObject] = []
        marker = None
        while True:
            page = self.retry.run(f"GET '{prefix}*'", self.store.list, prefix, marker)
            results.extend(page.objects)
            if not page.next_marker:
                return results
            marker = page.next_marker

    def head(self, remote_path: str) -> StoredObject:
        """Fetch an object's metadata."""
        return self.retry.run(f"HEAD '{remote_path}'", self.store.head, remote_path)

    def _prepare(self):
        if not self._prepared:
            self.retry.run("Prepare storage", self.store.prepare)
            self._prepared = True
