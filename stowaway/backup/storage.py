"""
Object store providers for backup packages.

Supports:
- S3ObjectStore: AWS S3 (or any S3-compatible endpoint) through boto3
- LocalObjectStore: A directory on the local filesystem

Both store large packages as independent segment objects plus a JSON
manifest listing them in order.
"""

import base64
import hashlib
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from .object_store import (
    GiB,
    MANIFEST_FLAG,
    Manifest,
    ObjectPage,
    ObjectStore,
    Segment,
    Source,
    StorageError,
    StoredObject,
    md5_file
)


def _metadata(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Convert upload headers to lowercase string metadata."""
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3ObjectStore(ObjectStore):
    """
    Object store backed by an S3 bucket.

    Segments are regular objects; the manifest is a JSON object flagged
    with `stowaway-manifest` metadata.
    """

    max_file_size = 5 * GiB
    max_segments = 1000
    # DeleteObjects accepts at most 1,000 keys per request
    max_delete_batch = 1000
    page_size = 1000

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None, storage_class: Optional[str] = None,
                 encryption: Optional[str] = None):
        """
        Initialize S3 object store.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint of an S3-compatible service
            storage_class: Storage class for uploaded objects (e.g. STANDARD_IA)
            encryption: Server-side encryption algorithm (e.g. AES256)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.storage_class = storage_class
        self.encryption = encryption

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                # Content-MD5 is the only request checksum sent
                config=BotoConfig(request_checksum_calculation='when_required')
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def prepare(self) -> None:
        """
        Create the bucket if it does not exist yet.

        Raises:
            StorageError: If the bucket is not accessible or cannot be created
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            if error_code not in ('404', 'NoSuchBucket'):
                raise StorageError(f"S3 bucket check failed ({error_code}): {e}")

        try:
            if self.region == 'us-east-1':
                self.s3_client.create_bucket(Bucket=self.bucket_name)
            else:
                self.s3_client.create_bucket(
                    Bucket=self.bucket_name,
                    CreateBucketConfiguration={'LocationConstraint': self.region}
                )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to create bucket {self.bucket_name}: {e}")

    def put(self, source: Source, remote_path: str, checksum: Optional[str] = None,
            headers: Optional[Mapping[str, Any]] = None) -> None:
        """
        Upload a file or stream with put_object.

        When a checksum is given it is sent as Content-MD5 and S3 rejects
        the upload if the received bytes do not match.

        Raises:
            StorageError: If the upload fails
        """
        kwargs = self._put_kwargs(remote_path, headers)
        if checksum:
            kwargs['ContentMD5'] = base64.b64encode(bytes.fromhex(checksum)).decode()

        try:
            if isinstance(source, str):
                with open(source, 'rb') as f:
                    self.s3_client.put_object(Body=f, **kwargs)
            else:
                self.s3_client.put_object(Body=source, **kwargs)
        except ClientError as e:
            raise StorageError(f"S3 upload of {remote_path} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload of {remote_path} failed: {e}")

    def put_manifest(self, remote_path: str, segments: Sequence[Segment],
                     headers: Optional[Mapping[str, Any]] = None) -> None:
        """
        Store the manifest document for an uploaded set of segments.

        Raises:
            StorageError: If the upload fails
        """
        body = json.dumps(Manifest(remote_path, list(segments)).to_document()).encode()
        kwargs = self._put_kwargs(remote_path, headers)
        kwargs['Metadata'][MANIFEST_FLAG] = 'true'

        try:
            self.s3_client.put_object(Body=body, ContentType='application/json', **kwargs)
        except ClientError as e:
            raise StorageError(f"S3 manifest upload of {remote_path} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 manifest upload of {remote_path} failed: {e}")

    def _put_kwargs(self, remote_path: str, headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        kwargs = {
            'Bucket': self.bucket_name,
            'Key': remote_path,
            'Metadata': _metadata(headers)
        }
        if self.storage_class:
            kwargs['StorageClass'] = self.storage_class
        if self.encryption:
            kwargs['ServerSideEncryption'] = self.encryption
        return kwargs

    def delete(self, remote_paths: Sequence[str]) -> None:
        """
        Delete up to 1,000 objects with a single DeleteObjects request.

        S3 answers 200 even when some keys could not be deleted; those are
        reported in the response's Errors list and turned into a StorageError.

        Raises:
            StorageError: If the request fails or any key was not deleted
        """
        if not remote_paths:
            return

        try:
            response = self.s3_client.delete_objects(
                Bucket=self.bucket_name,
                Delete={
                    'Objects': [{'Key': key} for key in remote_paths],
                    'Quiet': True
                }
            )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

        errors = response.get('Errors', [])
        if errors:
            details = ', '.join(
                f"{error.get('Key')} ({error.get('Code')}: {error.get('Message')})"
                for error in errors[:5]
            )
            raise StorageError(
                f"S3 failed to delete {len(errors)} of {len(remote_paths)} objects: {details}"
            )

    def delete_manifest(self, remote_path: str) -> None:
        """
        Delete every segment referenced by a manifest, then the manifest.

        Raises:
            StorageError: If the manifest cannot be read or any delete fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=remote_path)
            document = json.loads(response['Body'].read())
        except ClientError as e:
            raise StorageError(f"Failed to read manifest {remote_path} ({_error_code(e)}): {e}")
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to read manifest {remote_path}: {e}")

        manifest = Manifest.from_document(remote_path, document)
        segment_paths = [segment.remote_path for segment in manifest.segments]
        for start in range(0, len(segment_paths), self.max_delete_batch):
            self.delete(segment_paths[start:start + self.max_delete_batch])

        self.delete([remote_path])

    def head(self, remote_path: str) -> StoredObject:
        """
        Fetch an object's size, ETag and metadata.

        Raises:
            StorageError: If the object does not exist or the request fails
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=remote_path)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', 'NoSuchKey'):
                raise StorageError(f"Object not found: {remote_path}")
            raise StorageError(f"S3 head failed ({error_code}): {e}")

        return StoredObject(
            key=remote_path,
            checksum=response.get('ETag', '').strip('"') or None,
            size=response.get('ContentLength', 0),
            last_modified=response.get('LastModified'),
            metadata=_metadata(response.get('Metadata'))
        )

    def list(self, prefix: str, marker: Optional[str] = None) -> ObjectPage:
        """
        List one page of objects under prefix.

        Raises:
            StorageError: If listing fails
        """
        kwargs = {
            'Bucket': self.bucket_name,
            'Prefix': prefix,
            'MaxKeys': self.page_size
        }
        if marker:
            kwargs['StartAfter'] = marker

        try:
            response = self.s3_client.list_objects_v2(**kwargs)
        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

        objects = [
            StoredObject(
                key=obj['Key'],
                checksum=obj.get('ETag', '').strip('"') or None,
                size=obj['Size'],
                last_modified=obj.get('LastModified')
            )
            for obj in response.get('Contents', [])
        ]

        next_marker = objects[-1].key if response.get('IsTruncated') and objects else None
        return ObjectPage(objects, next_marker)


class LocalObjectStore(ObjectStore):
    """
    Object store backed by a local directory.

    Objects live at {base_path}/{remote_path}. Metadata (including the
    manifest flag) is kept in JSON sidecars under {base_path}/.stowaway-meta.
    """

    META_DIR = '.stowaway-meta'

    def __init__(self, base_path: str, max_segments: int = 1000, max_delete_batch: int = 10000):
        """
        Initialize local object store.

        Args:
            base_path: Directory objects are stored in
            max_segments: Most segments a manifest may reference
            max_delete_batch: Most names accepted by a single delete call
        """
        self.base_path = Path(base_path)
        self.max_segments = max_segments
        self.max_delete_batch = max_delete_batch

    def prepare(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _path(self, remote_path: str) -> Path:
        path = (self.base_path / remote_path.lstrip('/')).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid object path: {remote_path}")
        return path

    def _meta_path(self, remote_path: str) -> Path:
        return self.base_path / self.META_DIR / f"{remote_path.lstrip('/')}.json"

    def _write_meta(self, remote_path: str, metadata: Dict[str, str]):
        meta_path = self._meta_path(remote_path)
        if not metadata:
            if meta_path.exists():
                meta_path.unlink()
            return
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps(metadata))

    def _read_meta(self, remote_path: str) -> Dict[str, str]:
        meta_path = self._meta_path(remote_path)
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text())

    def put(self, source: Source, remote_path: str, checksum: Optional[str] = None,
            headers: Optional[Mapping[str, Any]] = None) -> None:
        """
        Copy a file or stream into the store.

        The content is written to a temporary file first and only moved into
        place once its MD5 matches the given checksum.

        Raises:
            StorageError: If writing fails or the checksum does not match
        """
        dest_path = self._path(remote_path)
        temp_path = None

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix='.upload_', dir=str(dest_path.parent))
            digest = hashlib.md5()

            with os.fdopen(fd, 'wb') as out:
                if isinstance(source, str):
                    with open(source, 'rb') as f:
                        _copy_stream(f, out, digest)
                else:
                    _copy_stream(source, out, digest)

            if checksum and digest.hexdigest() != checksum:
                raise StorageError(
                    f"Checksum mismatch for {remote_path}: "
                    f"expected {checksum}, got {digest.hexdigest()}"
                )

            os.replace(temp_path, dest_path)
            temp_path = None
            self._write_meta(remote_path, _metadata(headers))

        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store {remote_path} locally: {e}")
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    def put_manifest(self, remote_path: str, segments: Sequence[Segment],
                     headers: Optional[Mapping[str, Any]] = None) -> None:
        dest_path = self._path(remote_path)
        metadata = _metadata(headers)
        metadata[MANIFEST_FLAG] = 'true'

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_text(json.dumps(Manifest(remote_path, list(segments)).to_document()))
            self._write_meta(remote_path, metadata)
        except OSError as e:
            raise StorageError(f"Failed to store manifest {remote_path}: {e}")

    def delete(self, remote_paths: Sequence[str]) -> None:
        """
        Delete objects; missing objects count as deleted.

        Every path is attempted before failures are reported.

        Raises:
            StorageError: If any object could not be deleted
        """
        failed = []
        for remote_path in remote_paths:
            try:
                path = self._path(remote_path)
                if path.exists():
                    path.unlink()
                meta_path = self._meta_path(remote_path)
                if meta_path.exists():
                    meta_path.unlink()
            except (OSError, StorageError) as e:
                failed.append(f"{remote_path} ({e})")

        if failed:
            raise StorageError(
                f"Failed to delete {len(failed)} of {len(remote_paths)} objects: "
                + ', '.join(failed[:5])
            )

    def delete_manifest(self, remote_path: str) -> None:
        try:
            document = json.loads(self._path(remote_path).read_text())
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read manifest {remote_path}: {e}")

        manifest = Manifest.from_document(remote_path, document)
        segment_paths = [segment.remote_path for segment in manifest.segments]
        for start in range(0, len(segment_paths), self.max_delete_batch):
            self.delete(segment_paths[start:start + self.max_delete_batch])

        self.delete([remote_path])

    def head(self, remote_path: str) -> StoredObject:
        path = self._path(remote_path)
        if not path.is_file():
            raise StorageError(f"Object not found: {remote_path}")

        try:
            stat = path.stat()
            return StoredObject(
                key=remote_path,
                checksum=md5_file(str(path)),
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime),
                metadata=self._read_meta(remote_path)
            )
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {remote_path}: {e}")

    def list(self, prefix: str, marker: Optional[str] = None) -> ObjectPage:
        """
        List one page of objects under prefix, sorted by key.

        Checksums are not computed here; use head() for a single object.
        """
        if not self.base_path.exists():
            return ObjectPage([])

        try:
            keys = sorted(
                path.relative_to(self.base_path).as_posix()
                for path in self.base_path.rglob('*')
                if path.is_file()
            )
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

        keys = [
            key for key in keys
            if key.startswith(prefix)
            and not key.startswith(self.META_DIR + '/')
            and (marker is None or key > marker)
        ]

        page_keys = keys[:self.page_size]
        objects: List[StoredObject] = []
        for key in page_keys:
            stat = (self.base_path / key).stat()
            objects.append(StoredObject(
                key=key,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime),
                metadata=self._read_meta(key)
            ))

        next_marker = page_keys[-1] if len(keys) > len(page_keys) else None
        return ObjectPage(objects, next_marker)

    def get_full_path(self, remote_path: str) -> str:
        """
        Get full filesystem path of an object.
        """
        return str(self._path(remote_path))


def _copy_stream(source, dest, digest, chunk_size: int = 1024 * 1024):
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        digest.update(chunk)
        dest.write(chunk)
