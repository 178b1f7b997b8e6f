"""
File archives.

An Archive tars a set of local paths straight into the job directory,
optionally through the job's compressor, without copying the files first.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from stowaway.utils.helpers import shell_quote
from .compression import Compressor
from .pipeline import Pipeline

logger = logging.getLogger(__name__)

# tar exits 1 when files changed while being read; the archive is still usable
TAR_ACCEPTABLE_EXIT_CODES = (0, 1)


class ArchiveError(Exception):
    """Raised when an archive cannot be created."""
    pass


class Archive:
    """
    Archive of local files and directories.

    Usage:
        archive = Archive('configs', ['/etc/nginx', '~/app/config'], excludes=['*.bak'])
        path = archive.perform('/tmp/job/archives', Gzip())
    """

    def __init__(self, name: str, paths: List[str], excludes: Optional[List[str]] = None,
                 tar_options: Optional[str] = None, use_sudo: bool = False,
                 utility: str = 'tar'):
        """
        Initialize archive.

        Args:
            name: Archive name, used as the base filename
            paths: Files and directories to include
            excludes: Paths or glob patterns passed to tar --exclude
            tar_options: Extra options for tar, e.g. '-h --xattrs'
            use_sudo: Run tar via `sudo -n`
            utility: tar executable
        """
        if not name:
            raise ArchiveError("Archive name is required")

        self.name = name
        self.paths = paths
        self.excludes = excludes or []
        self.tar_options = tar_options
        self.use_sudo = use_sudo
        self.utility = utility

    def _resolved_paths(self) -> List[str]:
        resolved = []
        for path in self.paths:
            source_path = Path(path).expanduser().resolve()
            if not source_path.exists():
                logger.warning("Archive '%s': path does not exist: %s", self.name, path)
            resolved.append(str(source_path))
        return resolved

    def _resolved_excludes(self) -> List[str]:
        # Glob patterns are left for tar to match; absolute paths are normalized
        return [
            str(Path(pattern).expanduser()) if pattern.startswith(('/', '~')) else pattern
            for pattern in self.excludes
        ]

    def tar_command(self) -> str:
        """Build the tar command writing the archive to stdout."""
        paths = self._resolved_paths()
        if not paths:
            raise ArchiveError(f"Archive '{self.name}' has no paths to archive")

        parts = []
        if self.use_sudo:
            parts.append('sudo -n')
        parts.append(self.utility)
        if self.tar_options:
            parts.append(self.tar_options)
        parts.append('-cPf -')
        parts.extend(f"--exclude={shell_quote(pattern)}" for pattern in self._resolved_excludes())
        parts.extend(shell_quote(path) for path in paths)
        return ' '.join(parts)

    def perform(self, archive_dir: str, compressor: Optional[Compressor] = None) -> str:
        """
        Create the archive in archive_dir.

        Args:
            archive_dir: Directory to write the archive into (created if missing)
            compressor: Optional compressor to pipe the archive through

        Returns:
            Path to the archive file

        Raises:
            ArchiveError: If tar or any later stage fails
        """
        os.makedirs(archive_dir, exist_ok=True)
        logger.info("Creating Archive '%s'...", self.name)

        pipeline = Pipeline()
        pipeline.add(self.tar_command(), TAR_ACCEPTABLE_EXIT_CODES)

        extension = '.tar'
        if compressor:
            compress_command, compress_extension = compressor.compress_with()
            pipeline.append(compress_command)
            extension += compress_extension

        archive_path = os.path.join(archive_dir, f"{self.name}{extension}")
        pipeline.append(f"cat > {shell_quote(archive_path)}")

        result = pipeline.run()
        if not result.success:
            raise ArchiveError(f"Failed to Create Archive '{self.name}'\n{result.error_messages()}")

        logger.info("Archive '%s' Complete!", self.name)
        return archive_path
