"""
OpenPGP encryption of backup archives.

The recipient public key is looked up by key ID in a local keyring and
fetched from the configured key server when missing. The keyring lives in
the work directory so a fetched key is reused by later runs.
"""

import os
import logging
from typing import Optional

import gnupg


logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when key retrieval or encryption fails."""
    pass


class GPGEncryptor:
    """Encrypts files to a single public key identified by key ID."""

    def __init__(self, key_server: str, key_id: str, gnupg_home: str):
        """
        Initialize encryptor.

        Args:
            key_server: Key server host, e.g. ``hkps://keys.openpgp.org``
            key_id: Key ID or fingerprint of the recipient
            gnupg_home: Directory holding the local keyring
        """
        self.key_server = key_server
        self.key_id = key_id
        self.gnupg_home = gnupg_home
        self._gpg = None
        self._fingerprint: Optional[str] = None

    def _get_gpg(self) -> gnupg.GPG:
        if self._gpg is None:
            try:
                os.makedirs(self.gnupg_home, mode=0o700, exist_ok=True)
                self._gpg = gnupg.GPG(gnupghome=self.gnupg_home)
            except (OSError, ValueError, RuntimeError) as e:
                raise EncryptionError(f"Failed to initialize GnuPG: {e}")
        return self._gpg

    def _find_local_key(self) -> Optional[str]:
        key_id = self.key_id.upper()
        if key_id.startswith('0X'):
            key_id = key_id[2:]

        for key in self._get_gpg().list_keys():
            fingerprint = key.get('fingerprint', '').upper()
            keyid = key.get('keyid', '').upper()
            if fingerprint.endswith(key_id) or keyid == key_id:
                return fingerprint
        return None

    def resolve_key(self) -> str:
        """
        Resolve the recipient key, fetching it from the key server if needed.

        Returns:
            Fingerprint of the recipient key

        Raises:
            EncryptionError: If the key is not cached and cannot be fetched
        """
        if self._fingerprint:
            return self._fingerprint

        fingerprint = self._find_local_key()
        if fingerprint:
            logger.info(f"Using cached GPG key {self.key_id}")
            self._fingerprint = fingerprint
            return fingerprint

        logger.info(f"Fetching GPG key {self.key_id} from {self.key_server}")
        result = self._get_gpg().recv_keys(self.key_server, self.key_id)
        fingerprints = [fp for fp in (result.fingerprints or []) if fp]

        if not fingerprints:
            raise EncryptionError(
                f"Failed to fetch GPG key {self.key_id} from {self.key_server}: "
                f"{getattr(result, 'stderr', '') or 'key not found'}"
            )

        self._fingerprint = fingerprints[0]
        return self._fingerprint

    def encrypt_file(self, path: str) -> str:
        """
        Encrypt a file to ``<path>.gpg``.

        Args:
            path: File to encrypt

        Returns:
            Path of the encrypted file

        Raises:
            EncryptionError: If the key cannot be resolved or encryption fails
        """
        fingerprint = self.resolve_key()
        output_path = f"{path}.gpg"

        try:
            with open(path, 'rb') as f:
                result = self._get_gpg().encrypt_file(
                    f,
                    recipients=[fingerprint],
                    output=output_path,
                    armor=False,
                    always_trust=True
                )
        except OSError as e:
            raise EncryptionError(f"Failed to read {path} for encryption: {e}")

        if not result.ok:
            if os.path.exists(output_path):
                os.remove(output_path)
            raise EncryptionError(f"Encryption of {path} failed: {result.status}")

        logger.info(f"Encrypted archive to {output_path}")
        return output_path
