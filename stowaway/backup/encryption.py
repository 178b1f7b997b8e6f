"""
Package encryption via the openssl command line tool.

The passphrase is never placed on the command line: it is written to a
private temporary file that exists only while the pipeline runs.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from stowaway.utils.helpers import shell_quote
from stowaway.utils.tempfiles import secret_file

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when an encryptor is misconfigured."""
    pass


class OpenSSLEncryptor:
    """
    Encrypts a stream with `openssl enc`.

    Decrypt with:
        openssl aes-256-cbc -d -pbkdf2 [-base64] -in <package>.enc -out <package>
    """

    extension = '.enc'

    def __init__(self, passphrase: Optional[str] = None, password_file: Optional[str] = None,
                 cipher: str = 'aes-256-cbc', base64: bool = False, salt: bool = True,
                 pbkdf2: bool = True, utility: str = 'openssl'):
        """
        Initialize OpenSSL encryptor.

        Args:
            passphrase: Passphrase to encrypt with
            password_file: Existing file holding the passphrase (used instead of passphrase)
            cipher: OpenSSL cipher name
            base64: Base64-encode the encrypted output
            salt: Use a random salt
            pbkdf2: Derive the key with PBKDF2
            utility: openssl executable
        """
        if not passphrase and not password_file:
            raise EncryptionError("Either passphrase or password_file must be provided")

        self.passphrase = passphrase
        self.password_file = password_file
        self.cipher = cipher
        self.base64 = base64
        self.salt = salt
        self.pbkdf2 = pbkdf2
        self.utility = utility

    def _command(self, pass_path: str) -> str:
        options = ''
        if self.base64:
            options += ' -base64'
        if self.salt:
            options += ' -salt'
        if self.pbkdf2:
            options += ' -pbkdf2'
        return f"{self.utility} {self.cipher}{options} -pass file:{shell_quote(pass_path)}"

    @contextmanager
    def encrypt_with(self) -> Iterator[Tuple[str, str]]:
        """
        Provide the encryption command for the duration of a pipeline run.

        Yields:
            (command, extension)
        """
        logger.info("Using OpenSSL to encrypt the archive")

        if self.password_file:
            yield self._command(self.password_file), self.extension
            return

        with secret_file(self.passphrase, prefix='stowaway_openssl_') as pass_path:
            yield self._command(pass_path), self.extension
