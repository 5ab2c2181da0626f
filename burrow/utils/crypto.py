"""
Encryption utilities for backup artifacts.

Keys are derived from a user password with Argon2id and stored in a small
key file (hex key, newline, hex salt). Artifacts are sealed with AES-256-GCM
and carry their nonce in front of the ciphertext.

The salt is derived from the password itself rather than generated at
random, so a lost key file can be rebuilt from the password alone. This
weakens resistance to precomputed dictionary attacks and is kept for
compatibility with existing key files and artifacts.
"""

import os
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id


KEY_SIZE = 32
SALT_SIZE = 16
NONCE_SIZE = 12

# Argon2id cost parameters
ARGON2_ITERATIONS = 3
ARGON2_MEMORY_KIB = 64 * 1024
ARGON2_LANES = 2


class CryptoError(Exception):
    """Raised when key handling or encryption fails."""
    pass


class KeyFileError(CryptoError):
    """Raised when the key file cannot be read or written."""
    pass


class KeyFormatError(CryptoError):
    """Raised when the key file content is malformed."""
    pass


class DecryptionError(CryptoError):
    """Raised when a payload fails authentication (wrong key or corrupted data)."""
    pass


@dataclass(frozen=True)
class EncryptionKey:
    """A 256-bit key and the salt it was derived with."""

    key: bytes
    salt: bytes

    def __repr__(self):
        # Never leak key material into logs
        return f'<EncryptionKey salt={self.salt.hex()}>'


def _password_bytes(password: Union[str, bytes]) -> bytes:
    if isinstance(password, str):
        return password.encode()
    return password


def deterministic_salt(password: Union[str, bytes]) -> bytes:
    """Return the first SALT_SIZE bytes of SHA-256(password)."""
    return hashlib.sha256(_password_bytes(password)).digest()[:SALT_SIZE]


def recreate_key(password: Union[str, bytes], salt: bytes) -> bytes:
    """
    Run the key derivation function with a known salt.

    Args:
        password: User password
        salt: Salt to derive with (e.g. loaded from a key file)

    Returns:
        32-byte key
    """
    kdf = Argon2id(
        salt=salt,
        length=KEY_SIZE,
        iterations=ARGON2_ITERATIONS,
        lanes=ARGON2_LANES,
        memory_cost=ARGON2_MEMORY_KIB,
    )
    return kdf.derive(_password_bytes(password))


def derive_key(password: Union[str, bytes]) -> EncryptionKey:
    """
    Derive an encryption key from a password.

    The same password always yields the same key and salt.

    Args:
        password: User password

    Returns:
        EncryptionKey with key and salt
    """
    salt = deterministic_salt(password)
    return EncryptionKey(key=recreate_key(password, salt), salt=salt)


def save_key(encryption_key: EncryptionKey, key_path: Union[str, Path]):
    """
    Persist key material to a file readable only by the owner.

    Args:
        encryption_key: Key and salt to store
        key_path: Destination file path

    Raises:
        KeyFileError: If the directory or file cannot be written
    """
    path = Path(key_path).expanduser()

    try:
        if not path.parent.exists():
            path.parent.mkdir(mode=0o700, parents=True)

        content = f"{encryption_key.key.hex()}\n{encryption_key.salt.hex()}"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        # O_CREAT mode does not apply to pre-existing files
        os.chmod(path, 0o600)
    except OSError as e:
        raise KeyFileError(f"Failed to save key file {path}: {e}") from e


def load_key(key_path: Union[str, Path]) -> EncryptionKey:
    """
    Load key material from a key file.

    Args:
        key_path: Path to the key file

    Returns:
        EncryptionKey

    Raises:
        KeyFileError: If the file is missing or unreadable
        KeyFormatError: If the content is not two hex lines with a 32-byte key
    """
    path = Path(key_path).expanduser()

    try:
        content = path.read_text()
    except OSError as e:
        raise KeyFileError(f"Failed to read key file {path}: {e}") from e

    lines = content.strip().split('\n')
    if len(lines) != 2:
        raise KeyFormatError(f"Failed to parse key file {path}: expected key and salt lines")

    try:
        key = bytes.fromhex(lines[0].strip())
        salt = bytes.fromhex(lines[1].strip())
    except ValueError as e:
        raise KeyFormatError(f"Failed to parse key file {path}: {e}") from e

    if len(key) != KEY_SIZE:
        raise KeyFormatError(
            f"Failed to parse key file {path}: key is {len(key)} bytes, expected {KEY_SIZE}"
        )

    return EncryptionKey(key=key, salt=salt)


def generate_and_save_key(password: Union[str, bytes], key_path: Union[str, Path]) -> EncryptionKey:
    """
    Derive a key from a password and write it to key_path.

    Used both for first-time setup and for rebuilding a lost key file.
    """
    encryption_key = derive_key(password)
    save_key(encryption_key, key_path)
    return encryption_key


def _aead(key: bytes) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise CryptoError(f"Invalid key length: {len(key)} bytes, expected {KEY_SIZE}")
    return AESGCM(key)


def encrypt(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt data with AES-256-GCM.

    Args:
        key: 32-byte key
        plaintext: Data to encrypt

    Returns:
        nonce || ciphertext (ciphertext includes the GCM tag)

    Raises:
        CryptoError: If the key is invalid
    """
    aead = _aead(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aead.encrypt(nonce, plaintext, None)


def decrypt(key: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt data produced by encrypt().

    Args:
        key: 32-byte key
        ciphertext: nonce || ciphertext

    Returns:
        Plaintext bytes

    Raises:
        CryptoError: If the key is invalid
        DecryptionError: If the payload is too short or fails authentication
    """
    aead = _aead(key)

    if len(ciphertext) < NONCE_SIZE:
        raise DecryptionError("Ciphertext too short")

    nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
    try:
        return aead.decrypt(nonce, body, None)
    except InvalidTag as e:
        raise DecryptionError(
            "Failed to decrypt: authentication failed (wrong key or corrupted data)"
        ) from e


class CryptoManager:
    """Holds the process-wide encryption key and seals/opens payloads with it."""

    def __init__(self, encryption_key: Optional[EncryptionKey] = None):
        self._key = encryption_key

    @classmethod
    def from_key_file(cls, key_path: Union[str, Path]) -> 'CryptoManager':
        return cls(load_key(key_path))

    def encrypt(self, plaintext: bytes) -> bytes:
        """
        Encrypt bytes with the managed key.

        Raises:
            RuntimeError: If no key has been loaded
        """
        if not self._key:
            raise RuntimeError("CryptoManager not initialized. Load a key first.")
        return encrypt(self._key.key, plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        """
        Decrypt bytes with the managed key.

        Raises:
            RuntimeError: If no key has been loaded
            DecryptionError: If authentication fails
        """
        if not self._key:
            raise RuntimeError("CryptoManager not initialized. Load a key first.")
        return decrypt(self._key.key, ciphertext)

    @property
    def is_initialized(self) -> bool:
        """Check if a key has been loaded."""
        return self._key is not None
