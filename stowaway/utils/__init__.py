from .helpers import format_size, command_name, shell_quote
from .tempfiles import secret_file, temp_directory

__all__ = [
    'format_size',
    'command_name',
    'shell_quote',
    'secret_file',
    'temp_directory'
]
