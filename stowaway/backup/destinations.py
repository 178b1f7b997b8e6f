"""
Storage destinations for finished backup packages.

Supports:
- CloudStorage: An ObjectStore (S3 or local) through the ChunkedUploader
- SFTPStorage: A directory on a remote host over SFTP (paramiko)

Every destination stores a package under `<path>/<job name>/<timestamp>/`.
"""

import logging
import os
import posixpath
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .retry import RetryPolicy, RetryRunner
from .uploader import ChunkedUploader

logger = logging.getLogger(__name__)


class DestinationError(Exception):
    """Raised when a package cannot be stored."""
    pass


def _package_path(base_path: str, job_name: str, timestamp: str, package_name: str) -> str:
    parts = [part.strip('/') for part in (base_path, job_name, timestamp, package_name) if part]
    return '/'.join(parts)


class CloudStorage:
    """
    Stores packages in an object store.

    Large packages are segmented by the uploader; retention uses the same
    uploader to list and remove expired packages.
    """

    name = 'cloud'

    def __init__(self, uploader: ChunkedUploader, path: str = 'backups'):
        """
        Initialize cloud storage.

        Args:
            uploader: Configured uploader for the target store
            path: Path prefix within the store
        """
        self.uploader = uploader
        self.path = path.strip('/')

    def job_prefix(self, job_name: str) -> str:
        """Prefix every package of a job is stored under."""
        return _package_path(self.path, job_name, '', '')

    def store(self, package_path: str, job_name: str, timestamp: str) -> str:
        """
        Upload a package.

        Args:
            package_path: Local package file
            job_name: Job the package belongs to
            timestamp: Run timestamp, used as a directory name

        Returns:
            Object path of the stored package
        """
        remote_path = _package_path(self.path, job_name, timestamp, os.path.basename(package_path))
        logger.info("Storing '%s'...", remote_path)
        self.uploader.upload(package_path, remote_path)
        logger.info("Storage complete: %s", remote_path)
        return remote_path


class SFTPStorage:
    """
    Stores packages on a remote host over SFTP.

    Parent directories are created as needed.
    """

    name = 'sftp'

    def __init__(self, host: str, username: str, path: str = 'backups', port: int = 22,
                 password: Optional[str] = None, private_key_path: Optional[str] = None,
                 retry_policy: Optional[RetryPolicy] = None, timeout: int = 30):
        """
        Initialize SFTP storage.

        Args:
            host: Remote host
            username: SSH username
            path: Remote base directory (relative paths are relative to the login directory)
            port: SSH port
            password: Password authentication
            private_key_path: Private key authentication (used when no password is set)
            retry_policy: Retry limits for the upload (default: RetryPolicy())
            timeout: Connection timeout in seconds
        """
        if not password and not private_key_path:
            raise DestinationError("Either password or private_key_path must be provided")

        self.host = host
        self.port = port
        self.username = username
        self.path = path.rstrip('/') or '/'
        self.password = password
        self.private_key_path = private_key_path
        self.timeout = timeout
        self.retry = RetryRunner(retry_policy or RetryPolicy())

    @contextmanager
    def _connect(self) -> Iterator[paramiko.SFTPClient]:
        """
        Open an SSH connection and yield an SFTP client.

        Raises:
            DestinationError: If the connection cannot be established
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout
        }

        if self.password:
            connect_kwargs['password'] = self.password
        else:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise DestinationError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise DestinationError(f"SSH authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise DestinationError(f"Failed to connect to {self.host}: {e}") from e

        sftp_client = ssh_client.open_sftp()
        try:
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    @staticmethod
    def _ensure_dir(sftp: paramiko.SFTPClient, remote_dir: str):
        """Create remote_dir and any missing parents."""
        current = '/' if remote_dir.startswith('/') else ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            try:
                attr = sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)
                continue
            if not stat.S_ISDIR(attr.st_mode):
                raise DestinationError(f"Remote path exists and is not a directory: {current}")

    def _upload(self, package_path: str, remote_path: str):
        with self._connect() as sftp:
            self._ensure_dir(sftp, posixpath.dirname(remote_path))
            sftp.put(package_path, remote_path)

    def store(self, package_path: str, job_name: str, timestamp: str) -> str:
        """
        Copy a package to the remote host.

        Returns:
            Remote path of the stored package

        Raises:
            RetryExhaustedError: If the transfer still fails after all retries
        """
        remote_path = _package_path(self.path, job_name, timestamp, os.path.basename(package_path))
        if self.path.startswith('/'):
            remote_path = '/' + remote_path

        logger.info("Storing '%s' on %s...", remote_path, self.host)
        self.retry.run(f"SFTP PUT '{remote_path}'", self._upload, package_path, remote_path)
        logger.info("Storage complete: %s:%s", self.host, remote_path)
        return remote_path
