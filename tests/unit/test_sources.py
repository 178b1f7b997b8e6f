"""
Unit tests for archives (stowaway/backup/sources.py).
"""

import os
import tarfile

import pytest

from stowaway.backup.compression import Gzip
from stowaway.backup.sources import Archive, ArchiveError


class TestArchive:
    """Test Archive creation."""

    def test_name_required(self):
        with pytest.raises(ArchiveError):
            Archive('', ['/etc'])

    def test_tar_command(self, temp_files):
        archive = Archive('data', [str(temp_files)], excludes=['*.pyc', '~/cache'],
                          tar_options='--warning=no-file-changed')

        command = archive.tar_command()

        assert command.startswith('tar --warning=no-file-changed -cPf - ')
        assert "--exclude='*.pyc'" in command
        assert f"--exclude={os.path.expanduser('~/cache')}" in command
        assert command.endswith(str(temp_files.resolve()))

    def test_sudo(self, temp_files):
        assert Archive('data', [str(temp_files)], use_sudo=True).tar_command().startswith('sudo -n tar ')

    def test_no_paths(self):
        with pytest.raises(ArchiveError):
            Archive('empty', []).tar_command()

    def test_missing_path_is_warned(self, tmp_path, caplog):
        Archive('data', [str(tmp_path / 'missing')]).tar_command()

        assert 'path does not exist' in caplog.text

    def test_perform_creates_tar(self, temp_files, tmp_path):
        """The archive contains the files and honours excludes."""
        archive = Archive('data', [str(temp_files)], excludes=['*.pyc'])

        archive_path = archive.perform(str(tmp_path / 'archives'))

        assert archive_path == str(tmp_path / 'archives' / 'data.tar')
        with tarfile.open(archive_path) as tar:
            names = tar.getnames()
        assert any(name.endswith('test_file1.txt') for name in names)
        assert any(name.endswith('nested/test_file3.txt') for name in names)
        assert not any(name.endswith('.pyc') for name in names)

    def test_perform_with_gzip(self, temp_files, tmp_path):
        archive = Archive('data', [str(temp_files)])

        archive_path = archive.perform(str(tmp_path / 'archives'), Gzip())

        assert archive_path.endswith('data.tar.gz')
        with tarfile.open(archive_path, 'r:gz') as tar:
            assert any(name.endswith('test_file2.log') for name in tar.getnames())

    def test_tar_exit_code_one_is_acceptable(self, temp_files, tmp_path):
        archive = Archive('data', [str(temp_files)], utility="sh -c 'cat /dev/null; exit 1' --")

        assert os.path.exists(archive.perform(str(tmp_path)))

    def test_perform_failure(self, tmp_path):
        """A missing path makes tar exit 2, which fails the archive."""
        archive = Archive('broken', [str(tmp_path / 'does-not-exist')])

        with pytest.raises(ArchiveError) as exc_info:
            archive.perform(str(tmp_path / 'archives'))

        assert "Failed to Create Archive 'broken'" in str(exc_info.value)
        assert "'tar' returned exit code: 2" in str(exc_info.value)
