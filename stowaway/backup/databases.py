"""
Database dumps.

Each database builds its dump command, pipes it through the job's compressor
(if any) into a file inside the job directory, and runs the whole chain as a
Pipeline so that a failing dump is reported even when the compressor and the
final write succeed.

Supports:
- PostgreSQL: pg_dump (single database) or pg_dumpall (all databases)
- MySQL: mysqldump
"""

import logging
import os
from contextlib import contextmanager
from typing import Iterator, List, Optional

from stowaway.utils.helpers import shell_quote
from stowaway.utils.tempfiles import secret_file
from .compression import Compressor
from .pipeline import Pipeline

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database dump fails."""
    pass


class Database:
    """
    Base class for database dumps.

    Subclasses implement `_dump_command()`, a context manager yielding the
    shell command that writes the dump to stdout. Credentials written to
    temporary files must only live as long as that context.
    """

    kind = 'Database'
    dump_extension = '.sql'

    def __init__(self, database_id: Optional[str] = None):
        self.database_id = database_id

    @property
    def dump_name(self) -> str:
        """Base filename of the dump, unique per database within a job."""
        if self.database_id:
            return f"{self.kind}-{self.database_id}"
        return self.kind

    @contextmanager
    def _dump_command(self) -> Iterator[str]:
        raise NotImplementedError
        yield  # pragma: no cover

    def perform(self, dump_dir: str, compressor: Optional[Compressor] = None) -> str:
        """
        Dump the database into dump_dir.

        Args:
            dump_dir: Directory to write the dump into (created if missing)
            compressor: Optional compressor to pipe the dump through

        Returns:
            Path to the dump file

        Raises:
            DatabaseError: If any stage of the dump pipeline fails
        """
        os.makedirs(dump_dir, exist_ok=True)
        logger.info("%s started dumping", self.dump_name)

        pipeline = Pipeline()
        extension = self.dump_extension

        with self._dump_command() as dump_command:
            pipeline.append(dump_command)

            if compressor:
                compress_command, compress_extension = compressor.compress_with()
                pipeline.append(compress_command)
                extension += compress_extension

            dump_path = os.path.join(dump_dir, f"{self.dump_name}{extension}")
            pipeline.append(f"cat > {shell_quote(dump_path)}")

            result = pipeline.run()

        if not result.success:
            raise DatabaseError(f"{self.dump_name} Dump Failed!\n{result.error_messages()}")

        logger.info("%s finished dumping to %s", self.dump_name, os.path.basename(dump_path))
        return dump_path


def _pgpass_escape(value: str) -> str:
    return value.replace('\\', '\\\\').replace(':', '\\:')


class PostgreSQL(Database):
    """Dump a PostgreSQL database with pg_dump, or all databases with pg_dumpall."""

    kind = 'PostgreSQL'

    def __init__(self, name: Optional[str] = None, database_id: Optional[str] = None,
                 username: Optional[str] = None, password: Optional[str] = None,
                 host: Optional[str] = None, port: Optional[int] = None,
                 socket: Optional[str] = None, sudo_user: Optional[str] = None,
                 skip_tables: Optional[List[str]] = None, only_tables: Optional[List[str]] = None,
                 additional_options: Optional[List[str]] = None,
                 pg_dump_utility: str = 'pg_dump', pg_dumpall_utility: str = 'pg_dumpall'):
        """
        Initialize PostgreSQL dump.

        Args:
            name: Database to dump; None dumps every database with pg_dumpall
            database_id: Distinguishes dump files when a job has several PostgreSQL databases
            username: Role to connect as
            password: Password, passed through a temporary PGPASSFILE
            host: Server host
            port: Server port
            socket: Unix socket directory (used as --host)
            sudo_user: Run the dump as this system user via sudo
            skip_tables: Tables to exclude (pg_dump only)
            only_tables: Only dump these tables (pg_dump only)
            additional_options: Extra command line options
        """
        super().__init__(database_id)
        self.name = name
        self.username = username
        self.password = password
        self.host = host
        self.port = port
        self.socket = socket
        self.sudo_user = sudo_user
        self.skip_tables = skip_tables or []
        self.only_tables = only_tables or []
        self.additional_options = additional_options or []
        self.pg_dump_utility = pg_dump_utility
        self.pg_dumpall_utility = pg_dumpall_utility

    def _options(self) -> List[str]:
        options = []
        if self.username:
            options.append(f"--username={shell_quote(self.username)}")
        if self.socket:
            options.append(f"--host={shell_quote(self.socket)}")
        elif self.host:
            options.append(f"--host={shell_quote(self.host)}")
        if self.port:
            options.append(f"--port={int(self.port)}")
        options.extend(self.additional_options)

        if self.name:
            options.extend(f"--table={shell_quote(table)}" for table in self.only_tables)
            options.extend(f"--exclude-table={shell_quote(table)}" for table in self.skip_tables)
            options.append(shell_quote(self.name))
        return options

    def _build_command(self, pgpass_path: Optional[str] = None) -> str:
        parts = []
        if pgpass_path:
            parts.append(f"PGPASSFILE={shell_quote(pgpass_path)}")
        if self.sudo_user:
            parts.append(f"sudo -n -H -u {shell_quote(self.sudo_user)}")
        parts.append(self.pg_dump_utility if self.name else self.pg_dumpall_utility)
        parts.extend(self._options())
        return ' '.join(parts)

    @contextmanager
    def _dump_command(self) -> Iterator[str]:
        if not self.password:
            yield self._build_command()
            return

        content = f"*:*:*:*:{_pgpass_escape(self.password)}\n"
        with secret_file(content, prefix='stowaway_pgpass_') as pgpass_path:
            yield self._build_command(pgpass_path)


class MySQL(Database):
    """Dump a MySQL database (or all databases) with mysqldump."""

    kind = 'MySQL'

    ALL_DATABASES = ':all'

    def __init__(self, name: str = ALL_DATABASES, database_id: Optional[str] = None,
                 username: Optional[str] = None, password: Optional[str] = None,
                 host: Optional[str] = None, port: Optional[int] = None,
                 socket: Optional[str] = None, skip_tables: Optional[List[str]] = None,
                 only_tables: Optional[List[str]] = None,
                 additional_options: Optional[List[str]] = None,
                 utility: str = 'mysqldump'):
        """
        Initialize MySQL dump.

        Args:
            name: Database to dump, or ':all' for --all-databases
            database_id: Distinguishes dump files when a job has several MySQL databases
            username: User to connect as
            password: Password, passed through a temporary --defaults-extra-file
            host: Server host
            port: Server port
            socket: Unix socket path
            skip_tables: Tables to exclude; bare names are qualified with the database name
            only_tables: Only dump these tables
            additional_options: Extra command line options
        """
        super().__init__(database_id)
        self.name = name
        self.username = username
        self.password = password
        self.host = host
        self.port = port
        self.socket = socket
        self.skip_tables = skip_tables or []
        self.only_tables = only_tables or []
        self.additional_options = additional_options or []
        self.utility = utility

    @property
    def dump_all(self) -> bool:
        return self.name == self.ALL_DATABASES

    def _build_command(self, defaults_path: Optional[str] = None) -> str:
        # --defaults-extra-file must be the first option
        parts = [self.utility]
        if defaults_path:
            parts.append(f"--defaults-extra-file={shell_quote(defaults_path)}")
        if self.username:
            parts.append(f"--user={shell_quote(self.username)}")
        if self.host:
            parts.append(f"--host={shell_quote(self.host)}")
        if self.port:
            parts.append(f"--port={int(self.port)}")
        if self.socket:
            parts.append(f"--socket={shell_quote(self.socket)}")
        parts.extend(self.additional_options)

        if self.dump_all:
            parts.append('--all-databases')
        else:
            parts.append(shell_quote(self.name))
            parts.extend(shell_quote(table) for table in self.only_tables)
            for table in self.skip_tables:
                qualified = table if '.' in table else f"{self.name}.{table}"
                parts.append(f"--ignore-table={shell_quote(qualified)}")
        return ' '.join(parts)

    @contextmanager
    def _dump_command(self) -> Iterator[str]:
        if not self.password:
            yield self._build_command()
            return

        content = f"[client]\npassword={self.password}\n"
        with secret_file(content, prefix='stowaway_mysql_') as defaults_path:
            yield self._build_command(defaults_path)
