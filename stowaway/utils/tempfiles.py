"""
Scoped temporary resources.

Secrets handed to external commands (database passwords, encryption
passphrases) are written to private temporary files that only live for the
duration of the command. Working directories get the same treatment.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


@contextmanager
def secret_file(content: str, prefix: str = 'stowaway_secret_',
                dir: Optional[str] = None) -> Iterator[str]:
    """
    Write a secret to a temporary file readable only by the current user.

    Args:
        content: Text to write
        prefix: Filename prefix
        dir: Directory to create the file in (default: system temp dir)

    Yields:
        Path to the temporary file. The file is removed when the context
        exits, whether or not an exception was raised.
    """
    # mkstemp creates the file with mode 0600
    fd, path = tempfile.mkstemp(prefix=prefix, dir=dir)
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


@contextmanager
def temp_directory(prefix: str = 'stowaway_', base_dir: Optional[str] = None) -> Iterator[str]:
    """
    Create a private working directory and remove it afterwards.

    Args:
        prefix: Directory name prefix
        base_dir: Parent directory (default: system temp dir)

    Yields:
        Path to the directory
    """
    if base_dir:
        os.makedirs(base_dir, exist_ok=True)

    path = tempfile.mkdtemp(prefix=prefix, dir=base_dir)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed temporary directory %s", path)
