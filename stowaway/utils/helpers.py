"""
Small formatting helpers shared by the backup modules.
"""

import os
import re
import shlex

_SIZE_UNITS = ['B', 'KiB', 'MiB', 'GiB', 'TiB', 'PiB']

_ENV_ASSIGNMENT = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*=')


def format_size(size_bytes: int) -> str:
    """
    Format a byte count using binary units.

    Args:
        size_bytes: Number of bytes

    Returns:
        Human-readable size, e.g. '5.00 MiB'
    """
    size = float(size_bytes)
    for unit in _SIZE_UNITS:
        if size < 1024 or unit == _SIZE_UNITS[-1]:
            if unit == 'B':
                return f"{int(size)} B"
            return f"{size:.2f} {unit}"
        size /= 1024


def command_name(command: str) -> str:
    """
    Return the name of the utility a shell command runs.

    Leading environment assignments and a `sudo` prefix (with its options)
    are skipped, and the utility path is reduced to its basename. Used to
    keep secrets passed on the command line out of error messages.

    Args:
        command: Shell command string

    Returns:
        Utility name, or the stripped command if it cannot be parsed
    """
    try:
        parts = shlex.split(command)
    except ValueError:
        return command.strip()

    while parts and _ENV_ASSIGNMENT.match(parts[0]):
        parts.pop(0)

    if parts and os.path.basename(parts[0]) == 'sudo':
        parts.pop(0)
        while parts and parts[0].startswith('-'):
            option = parts.pop(0)
            # -u and -g take a value
            if option in ('-u', '-g') and parts:
                parts.pop(0)

    if not parts:
        return command.strip()

    return os.path.basename(parts[0])


def shell_quote(value) -> str:
    """Quote a value for safe use in a shell command."""
    return shlex.quote(str(value))
