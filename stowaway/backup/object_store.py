"""
Object store contract used by the chunked uploader.

Providers implement a small capability set (put, put_manifest, delete,
delete_manifest, head, list) and describe their limits through instance
attributes. Every provider returns StoredObject records; anything
provider-specific lives in StoredObject.metadata.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Sequence, Union

# Metadata key flagging an object as a manifest of segments
MANIFEST_FLAG = 'stowaway-manifest'

# Header carrying the epoch time after which an object may be removed
DELETE_AT_HEADER = 'X-Delete-At'

GiB = 1024 ** 3

Source = Union[str, BinaryIO]


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


@dataclass(frozen=True)
class Segment:
    """One uploaded slice of a segmented object."""

    sequence_number: int
    remote_path: str
    checksum: str
    size_bytes: int

    def to_entry(self) -> Dict[str, Any]:
        return {'path': self.remote_path, 'etag': self.checksum, 'size_bytes': self.size_bytes}

    @classmethod
    def from_entry(cls, sequence_number: int, entry: Mapping[str, Any]) -> 'Segment':
        return cls(sequence_number, entry['path'], entry['etag'], int(entry['size_bytes']))


@dataclass
class Manifest:
    """Ordered list of segments standing in for one logical object."""

    remote_path: str
    segments: List[Segment] = field(default_factory=list)

    @property
    def total_size(self) -> int:
        return sum(segment.size_bytes for segment in self.segments)

    def to_document(self) -> List[Dict[str, Any]]:
        return [segment.to_entry() for segment in self.segments]

    @classmethod
    def from_document(cls, remote_path: str, document: Sequence[Mapping[str, Any]]) -> 'Manifest':
        """
        Rebuild a manifest from its stored JSON document.

        Raises:
            StorageError: If an entry is missing a field
        """
        try:
            segments = [Segment.from_entry(number, entry) for number, entry in enumerate(document, start=1)]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid manifest {remote_path}: {e}") from e
        return cls(remote_path, segments)


@dataclass
class StoredObject:
    """
    An object as reported by a store.

    Attributes:
        key: Object path within the store
        checksum: Hex MD5 (or provider ETag) of the object's content
        size: Size in bytes
        last_modified: Last modification time, if the provider reports it
        metadata: Provider-specific metadata, lowercase keys
    """

    key: str
    checksum: Optional[str] = None
    size: int = 0
    last_modified: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def get_metadata(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.metadata.get(name.lower(), default)

    @property
    def is_manifest(self) -> bool:
        return str(self.get_metadata(MANIFEST_FLAG, '')).lower() == 'true'

    @property
    def delete_at(self) -> Optional[int]:
        value = self.get_metadata(DELETE_AT_HEADER)
        return int(value) if value else None


@dataclass
class ObjectPage:
    """One page of a listing; next_marker is None on the last page."""

    objects: List[StoredObject]
    next_marker: Optional[str] = None


class ObjectStore(ABC):
    """
    Abstract object store.

    Attributes:
        max_file_size: Largest object a single put may create (None: unlimited)
        max_segments: Most segments a manifest may reference
        max_delete_batch: Most names a single delete request may carry
        page_size: Objects returned per listing page
    """

    max_file_size: Optional[int] = None
    max_segments: int = 1000
    max_delete_batch: int = 10000
    page_size: int = 10000

    def prepare(self) -> None:
        """Make sure the container objects are written to exists."""

    @abstractmethod
    def put(self, source: Source, remote_path: str, checksum: Optional[str] = None,
            headers: Optional[Mapping[str, Any]] = None) -> None:
        """
        Store a file or stream.

        Args:
            source: Local file path or readable binary stream
            remote_path: Destination object path
            checksum: Hex MD5 of the content, verified by the store
            headers: Extra headers/metadata to store with the object
        """

    @abstractmethod
    def put_manifest(self, remote_path: str, segments: Sequence[Segment],
                     headers: Optional[Mapping[str, Any]] = None) -> None:
        """Store a manifest referencing already uploaded segments."""

    @abstractmethod
    def delete(self, remote_paths: Sequence[str]) -> None:
        """
        Delete objects in a single request.

        Raises:
            StorageError: If the request fails or reports any object as not deleted
        """

    @abstractmethod
    def delete_manifest(self, remote_path: str) -> None:
        """Delete a manifest and every segment it references."""

    @abstractmethod
    def head(self, remote_path: str) -> StoredObject:
        """Fetch an object's metadata."""

    @abstractmethod
    def list(self, prefix: str, marker: Optional[str] = None) -> ObjectPage:
        """List one page of objects under prefix, starting after marker."""


def md5_file(path: str, chunk_size: int = 1024 * 1024) -> str:
    """Hex MD5 of a whole file."""
    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()
