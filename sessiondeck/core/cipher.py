"""Token encryption at rest.

Tokens are sealed with AES-256-GCM under a device-resident 256-bit secret.
Ciphertext is stored as lowercase hex of ``nonce || ciphertext || tag`` so a
stored value can be classified by alphabet alone:

- not hex at all (e.g. a three-segment bearer token) -> legacy plaintext
  written before encryption existed, passed through unchanged while the
  migration window is open
- hex that does not authenticate -> corrupted, reported as no credential

Decryption never raises and never returns partial plaintext.
"""

import logging
import os
import re
import secrets
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sessiondeck.errors import DecryptionCorrupted

logger = logging.getLogger("sessiondeck.cipher")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
_AAD = b"sessiondeck.token.v1"
_HEX_RE = re.compile(r"[0-9a-fA-F]+")


def is_ciphertext_shaped(value: str) -> bool:
    """Check whether a stored value uses the ciphertext alphabet.

    >>> is_ciphertext_shaped("0a1b2c")
    True
    >>> is_ciphertext_shaped("eyJhbGciOi.eyJzdWIiOi.c2ln")
    False
    >>> is_ciphertext_shaped("")
    False
    """
    return bool(value) and _HEX_RE.fullmatch(value) is not None


def _safe_replace(src: str, dst: str, *, retries: int = 3, delay: float = 0.1):
    """os.replace() with retry for Windows PermissionError."""
    for attempt in range(retries):
        try:
            os.replace(src, dst)
            return
        except PermissionError:
            if sys.platform != "win32" or attempt == retries - 1:
                raise
            time.sleep(delay * (2 ** attempt))


class MemoryKeyStore:
    """Process-local keystore. Nothing survives the process.

    >>> ks = MemoryKeyStore()
    >>> ks.get() is None
    True
    >>> len(ks.get_or_create())
    32
    >>> ks.destroy()
    True
    """

    def __init__(self):
        self._key: Optional[bytes] = None

    def get(self) -> Optional[bytes]:
        return self._key

    def get_or_create(self) -> bytes:
        if self._key is None:
            self._key = secrets.token_bytes(KEY_SIZE)
        return self._key

    def destroy(self) -> bool:
        existed = self._key is not None
        self._key = None
        return existed


class FileKeyStore:
    """Keystore backed by a 0600 file holding the secret as hex.

    Writes are atomic (temp file + os.replace). Symlinked paths are refused
    for both reads and writes.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def get(self) -> Optional[bytes]:
        """Return the stored key, or None if no key has been created yet.

        Raises OSError for a symlinked path and ValueError for a malformed key.
        """
        if self.path.is_symlink():
            raise OSError(f"Refusing to read key through symlink: {self.path}")
        if not self.path.exists():
            return None
        key = bytes.fromhex(self.path.read_text(encoding="utf-8").strip())
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key file has {len(key)} bytes, expected {KEY_SIZE}")
        return key

    def get_or_create(self) -> bytes:
        key = self.get()
        if key is not None:
            return key
        key = secrets.token_bytes(KEY_SIZE)
        self._write(key.hex())
        logger.info("Created new token encryption key at %s", self.path)
        return key

    def destroy(self) -> bool:
        if self.path.is_symlink():
            raise OSError(f"Refusing to delete key through symlink: {self.path}")
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Destroyed token encryption key at %s", self.path)
        return True

    def _write(self, content: str) -> None:
        if self.path.is_symlink():
            raise OSError(f"Refusing to write key through symlink: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=".account_key_tmp_",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            try:
                os.chmod(tmp, 0o600)
            except OSError:
                pass
            _safe_replace(tmp, str(self.path))
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class TokenCipher:
    """Encrypt/decrypt opaque token strings.

    >>> cipher = TokenCipher(MemoryKeyStore())
    >>> sealed = cipher.encrypt("tok-abc")
    >>> is_ciphertext_shaped(sealed)
    True
    >>> cipher.decrypt(sealed)
    'tok-abc'
    >>> cipher.decrypt("not-hex.legacy.token")
    'not-hex.legacy.token'
    >>> cipher.decrypt("deadbeef") is None
    True
    >>> cipher.encrypt(None) is None
    True
    """

    def __init__(self, keystore, allow_legacy_plaintext: bool = True):
        self._keystore = keystore
        self.allow_legacy_plaintext = allow_legacy_plaintext
        self._key: Optional[bytes] = None

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Seal a token. None and empty strings stay None."""
        if not plaintext:
            return None
        if self._key is None:
            self._key = self._keystore.get_or_create()
        nonce = os.urandom(NONCE_SIZE)
        sealed = AESGCM(self._key).encrypt(nonce, plaintext.encode("utf-8"), _AAD)
        return (nonce + sealed).hex()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """Open a stored token, or return None if it is absent or unreadable."""
        if not value:
            return None

        if not is_ciphertext_shaped(value):
            if self.allow_legacy_plaintext:
                return value
            logger.warning("Rejecting non-ciphertext token value (legacy plaintext disabled)")
            return None

        try:
            raw = bytes.fromhex(value)
        except ValueError:
            return self._corrupted("odd-length hex")
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            return self._corrupted("value shorter than nonce and tag")

        key = self._key
        if key is None:
            try:
                key = self._keystore.get()
            except (OSError, ValueError) as exc:
                return self._corrupted(f"key unavailable: {exc}")
            if key is None:
                return self._corrupted("no encryption key on this device")
            self._key = key

        try:
            plaintext = AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], _AAD)
        except InvalidTag:
            return self._corrupted("authentication failed")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            return self._corrupted("plaintext is not UTF-8")

    def destroy_key(self) -> bool:
        """Drop the cached key and delete it from the keystore."""
        self._key = None
        return self._keystore.destroy()

    @staticmethod
    def _corrupted(reason: str) -> None:
        logger.warning("%s: %s", DecryptionCorrupted.code, reason)
        return None
