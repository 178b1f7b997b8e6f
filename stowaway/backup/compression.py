"""
Compressors for database dumps and archives.

Compressors do not touch any files themselves: they provide a command that
is placed in a Pipeline between the command producing the data and the one
writing it to disk.

Supports:
- gzip: Gzip (optional level and --rsyncable)
- bzip2: Bzip2 (optional level)
- custom: Any command reading stdin and writing stdout
"""

import logging
import subprocess
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when a compressor is misconfigured."""
    pass


class Compressor:
    """
    Base compressor.

    Subclasses set `command` and `extension` in their constructor.
    """

    name = 'compressor'

    def __init__(self, command: str, extension: str):
        self.command = command
        self.extension = extension

    def compress_with(self) -> Tuple[str, str]:
        """
        Returns:
            (command, extension) to add to a pipeline and to the output filename
        """
        logger.info("Using %s for compression", self.name)
        return self.command, self.extension


def _level_option(level: Optional[int]) -> str:
    if level is None:
        return ''
    if not isinstance(level, int) or not 1 <= level <= 9:
        raise CompressionError(f"Compression level must be between 1 and 9, got {level!r}")
    return f" -{level}"


def has_rsyncable(utility: str = 'gzip') -> bool:
    """Check whether a gzip utility accepts --rsyncable."""
    try:
        result = subprocess.run(
            [utility, '--rsyncable', '--version'],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL
        )
    except OSError:
        return False
    return result.returncode == 0


class Gzip(Compressor):
    """Compress with gzip."""

    name = 'Gzip'

    def __init__(self, level: Optional[int] = None, rsyncable: bool = False, utility: str = 'gzip',
                 rsyncable_supported: Optional[bool] = None):
        """
        Initialize gzip compressor.

        Args:
            level: Compression level 1-9 (default: gzip's own default)
            rsyncable: Pass --rsyncable so rsync can transfer changes efficiently.
                Ignored with a warning when the local gzip does not support it.
            utility: gzip executable
            rsyncable_supported: Known result of the --rsyncable check; when None
                the utility is asked once, and only if rsyncable is requested
        """
        self.level = level
        self.rsyncable = rsyncable
        self.utility = utility

        options = _level_option(level)
        if rsyncable:
            if rsyncable_supported is None:
                rsyncable_supported = has_rsyncable(utility)
            if rsyncable_supported:
                options += ' --rsyncable'
            else:
                logger.warning(
                    "'rsyncable' option ignored. "
                    "Your system's 'gzip' does not support the --rsyncable option."
                )

        super().__init__(f"{utility}{options}", '.gz')


class Bzip2(Compressor):
    """Compress with bzip2."""

    name = 'Bzip2'

    def __init__(self, level: Optional[int] = None, utility: str = 'bzip2'):
        self.level = level
        super().__init__(f"{utility}{_level_option(level)}", '.bz2')


class CustomCompressor(Compressor):
    """Compress with an arbitrary command, e.g. 'xz -T0' with extension '.xz'."""

    name = 'Custom'

    def __init__(self, command: str, extension: str):
        if not command:
            raise CompressionError("A command is required for a custom compressor")
        if extension and not extension.startswith('.'):
            extension = f".{extension}"
        super().__init__(command, extension or '')


def create_compressor(compression_format: Optional[str], options: Optional[Dict[str, Any]] = None) -> Optional[Compressor]:
    """
    Factory function to create a compressor by name.

    Args:
        compression_format: 'gzip', 'bzip2', 'custom' or 'none'/None
        options: Constructor arguments for the compressor

    Returns:
        Compressor instance, or None for no compression

    Raises:
        ValueError: If compression_format is invalid
    """
    options = options or {}
    format_map = {
        'gzip': Gzip,
        'bzip2': Bzip2,
        'custom': CustomCompressor
    }

    if compression_format in (None, 'none'):
        return None

    if compression_format not in format_map:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(format_map.keys()) + ['none']}"
        )

    return format_map[compression_format](**options)
