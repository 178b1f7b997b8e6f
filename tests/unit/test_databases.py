"""
Unit tests for database dumps (stowaway/backup/databases.py).

Dump utilities are replaced by small shell commands so the pipeline runs for real.
"""

import os
import stat

import pytest

from stowaway.backup.compression import CustomCompressor
from stowaway.backup.databases import PostgreSQL, MySQL, DatabaseError


class TestPostgreSQL:
    """Test PostgreSQL dump commands."""

    def test_pg_dump_command(self):
        db = PostgreSQL(name='app', username='backup', host='db.local', port=5433,
                        skip_tables=['logs'], only_tables=['users'])

        with db._dump_command() as command:
            assert command == (
                "pg_dump --username=backup --host=db.local --port=5433 "
                "--table=users --exclude-table=logs app"
            )

    def test_pg_dumpall_when_no_name(self):
        with PostgreSQL(username='postgres')._dump_command() as command:
            assert command == 'pg_dumpall --username=postgres'

    def test_socket_used_as_host(self):
        db = PostgreSQL(name='app', host='ignored', socket='/var/run/postgresql')

        with db._dump_command() as command:
            assert '--host=/var/run/postgresql' in command
            assert 'ignored' not in command

    def test_password_goes_through_pgpassfile(self):
        db = PostgreSQL(name='app', password='pa:ss\\word', sudo_user='postgres')

        with db._dump_command() as command:
            assert 'pa:ss' not in command
            assert command.startswith('PGPASSFILE=')
            assert 'sudo -n -H -u postgres pg_dump' in command

            pgpass_path = command.split()[0].split('=', 1)[1]
            assert stat.S_IMODE(os.stat(pgpass_path).st_mode) == 0o600
            with open(pgpass_path) as f:
                assert f.read() == '*:*:*:*:pa\\:ss\\\\word\n'

        assert not os.path.exists(pgpass_path)

    def test_dump_name(self):
        assert PostgreSQL(name='app').dump_name == 'PostgreSQL'
        assert PostgreSQL(name='app', database_id='main').dump_name == 'PostgreSQL-main'

    def test_perform_writes_compressed_dump(self, tmp_path):
        db = PostgreSQL(name='app', pg_dump_utility="printf 'dump-data' #")

        dump_path = db.perform(str(tmp_path / 'databases'), CustomCompressor('tr a-z A-Z', '.up'))

        assert dump_path == str(tmp_path / 'databases' / 'PostgreSQL.sql.up')
        with open(dump_path) as f:
            assert f.read() == 'DUMP-DATA'

    def test_perform_failure_raises(self, tmp_path):
        db = PostgreSQL(name='app', pg_dump_utility="echo 'connection refused' >&2; exit 1 #")

        with pytest.raises(DatabaseError) as exc_info:
            db.perform(str(tmp_path))

        message = str(exc_info.value)
        assert message.startswith('PostgreSQL Dump Failed!\n')
        assert 'connection refused' in message
        assert 'returned exit code: 1' in message


class TestMySQL:
    """Test MySQL dump commands."""

    def test_all_databases(self):
        with MySQL(username='root')._dump_command() as command:
            assert command == 'mysqldump --user=root --all-databases'

    def test_single_database_with_tables(self):
        db = MySQL(name='shop', host='127.0.0.1', port=3307, socket='/tmp/mysql.sock',
                   only_tables=['orders'], skip_tables=['sessions', 'other.cache'])

        with db._dump_command() as command:
            assert command == (
                "mysqldump --host=127.0.0.1 --port=3307 --socket=/tmp/mysql.sock shop orders "
                "--ignore-table=shop.sessions --ignore-table=other.cache"
            )

    def test_password_in_defaults_extra_file(self):
        db = MySQL(name='shop', username='backup', password='hunter2')

        with db._dump_command() as command:
            assert 'hunter2' not in command
            option = command.split()[1]
            assert option.startswith('--defaults-extra-file=')
            defaults_path = option.split('=', 1)[1]
            with open(defaults_path) as f:
                assert f.read() == '[client]\npassword=hunter2\n'

        assert not os.path.exists(defaults_path)

    def test_perform(self, tmp_path):
        db = MySQL(name='shop', database_id='shop', utility="printf 'rows' #")

        dump_path = db.perform(str(tmp_path))

        assert os.path.basename(dump_path) == 'MySQL-shop.sql'
        with open(dump_path) as f:
            assert f.read() == 'rows'
