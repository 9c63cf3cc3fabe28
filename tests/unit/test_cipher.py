"""Unit tests for token encryption at rest.

Covers round-trip, legacy plaintext passthrough, corrupted ciphertext,
key lifecycle (lazy creation, destroy) and the file keystore's safety
checks.
"""

import os
import stat
import tempfile
from pathlib import Path

import jwt

from sessiondeck.core.cipher import (
    FileKeyStore,
    MemoryKeyStore,
    TokenCipher,
    is_ciphertext_shaped,
)

_WIN = os.name == "nt"


def test_round_trip():
    """decrypt(encrypt(t)) == t for a spread of non-empty tokens.

    >>> test_round_trip()
    """
    cipher = TokenCipher(MemoryKeyStore())
    samples = [
        "a",
        "rt_" + "x" * 64,
        jwt.encode({"sub": "1", "email": "a@b.co"}, "s" * 32, algorithm="HS256"),
        "ünïcødé-tøken",
        "0123456789abcdef",
    ]
    for token in samples:
        sealed = cipher.encrypt(token)
        assert sealed != token
        assert is_ciphertext_shaped(sealed)
        assert sealed == sealed.lower()
        assert cipher.decrypt(sealed) == token


def test_encrypt_is_randomized():
    """Same plaintext twice gives different ciphertext (fresh nonce).

    >>> test_encrypt_is_randomized()
    """
    cipher = TokenCipher(MemoryKeyStore())
    assert cipher.encrypt("same") != cipher.encrypt("same")


def test_none_and_empty():
    """None/empty map to None both ways.

    >>> test_none_and_empty()
    """
    cipher = TokenCipher(MemoryKeyStore())
    assert cipher.encrypt(None) is None
    assert cipher.encrypt("") is None
    assert cipher.decrypt(None) is None
    assert cipher.decrypt("") is None


def test_legacy_plaintext_passthrough():
    """Values outside the hex alphabet come back unchanged.

    >>> test_legacy_plaintext_passthrough()
    """
    cipher = TokenCipher(MemoryKeyStore())
    bearer = jwt.encode({"sub": "7"}, "s" * 32, algorithm="HS256")
    for value in (bearer, "plain-token", "has space", "xyz", "abc-123"):
        assert cipher.decrypt(value) == value


def test_legacy_plaintext_rejected_when_window_closed():
    """With the migration shim off, non-hex values are treated as absent.

    >>> test_legacy_plaintext_rejected_when_window_closed()
    """
    cipher = TokenCipher(MemoryKeyStore(), allow_legacy_plaintext=False)
    assert cipher.decrypt("eyJhbGciOi.eyJzdWIiOi.c2ln") is None
    sealed = cipher.encrypt("still-works")
    assert cipher.decrypt(sealed) == "still-works"


def test_corrupted_ciphertext_returns_none():
    """Hex that does not authenticate never yields partial plaintext.

    >>> test_corrupted_ciphertext_returns_none()
    """
    cipher = TokenCipher(MemoryKeyStore())
    sealed = cipher.encrypt("secret-token-value")

    # Flip one nibble in the tag
    last = "0" if sealed[-1] != "0" else "1"
    assert cipher.decrypt(sealed[:-1] + last) is None
    # Truncated
    assert cipher.decrypt(sealed[:20]) is None
    # Odd length
    assert cipher.decrypt(sealed[:-1]) is None
    # Uppercase is still the ciphertext alphabet, and still authentic
    assert cipher.decrypt(sealed.upper()) == "secret-token-value"


def test_ciphertext_under_other_key_is_corrupted():
    """A value sealed under one key is unreadable under another.

    >>> test_ciphertext_under_other_key_is_corrupted()
    """
    sealed = TokenCipher(MemoryKeyStore()).encrypt("tok")
    assert TokenCipher(MemoryKeyStore()).decrypt(sealed) is None


def test_key_created_lazily():
    """No key exists until the first encrypt; decrypt never creates one.

    >>> test_key_created_lazily()
    """
    keystore = MemoryKeyStore()
    cipher = TokenCipher(keystore)
    assert cipher.decrypt("00" * 40) is None
    assert keystore.get() is None

    cipher.encrypt("tok")
    assert keystore.get() is not None


def test_destroy_key_invalidates_ciphertext():
    """After destroy_key, old ciphertext is unrecoverable.

    >>> test_destroy_key_invalidates_ciphertext()
    """
    keystore = MemoryKeyStore()
    cipher = TokenCipher(keystore)
    sealed = cipher.encrypt("tok")

    assert cipher.destroy_key() is True
    assert cipher.decrypt(sealed) is None

    # A new key is created on next encrypt, old value stays dead
    fresh = cipher.encrypt("tok2")
    assert cipher.decrypt(fresh) == "tok2"
    assert cipher.decrypt(sealed) is None


def test_file_keystore_persists_with_0600():
    """Key survives a new keystore instance; file mode is 0600 on POSIX.

    >>> test_file_keystore_persists_with_0600()
    """
    with tempfile.TemporaryDirectory(ignore_cleanup_errors=_WIN) as tmp:
        key_path = Path(tmp) / "nested" / ".account_key"
        sealed = TokenCipher(FileKeyStore(key_path)).encrypt("persisted")

        assert key_path.exists()
        if not _WIN:
            assert stat.S_IMODE(key_path.stat().st_mode) == 0o600

        assert TokenCipher(FileKeyStore(key_path)).decrypt(sealed) == "persisted"

        assert FileKeyStore(key_path).destroy() is True
        assert not key_path.exists()
        assert FileKeyStore(key_path).destroy() is False


def test_file_keystore_refuses_symlink():
    """A symlinked key path is refused; decrypt reports no credential.

    >>> test_file_keystore_refuses_symlink()
    """
    if _WIN:
        return
    with tempfile.TemporaryDirectory() as tmp:
        real = Path(tmp) / "real_key"
        real.write_text("00" * 32, encoding="utf-8")
        link = Path(tmp) / ".account_key"
        link.symlink_to(real)

        keystore = FileKeyStore(link)
        try:
            keystore.get_or_create()
        except OSError:
            pass
        else:
            raise AssertionError("expected OSError for symlinked key path")

        assert TokenCipher(keystore).decrypt("00" * 40) is None


def test_file_keystore_malformed_key():
    """A key file with the wrong length makes decrypt return None.

    >>> test_file_keystore_malformed_key()
    """
    with tempfile.TemporaryDirectory(ignore_cleanup_errors=_WIN) as tmp:
        key_path = Path(tmp) / ".account_key"
        key_path.write_text("abcd", encoding="utf-8")
        assert TokenCipher(FileKeyStore(key_path)).decrypt("00" * 40) is None
