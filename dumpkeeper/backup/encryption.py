"""
Encryption stages and key resolution for backup artifacts.

Uses Fernet symmetric encryption. Key material never lives in the service
configuration: artifacts reference a key by name (key_ref) and a KeyProvider
turns that reference into a Fernet instance at run time.

Encrypted artifact layout:
    MAGIC | (uint32 big-endian length | Fernet token) ...
"""

import os
import base64
import struct
import threading
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EncryptionKeyError, TransformError
from .stages import Stage


MAGIC = b'DKENC1'
FRAME_HEADER = struct.Struct('>I')


class KeyProvider:
    """Resolves key references to Fernet instances."""

    def get_fernet(self, key_ref: str) -> Fernet:
        raise NotImplementedError


class PassphraseKeyProvider(KeyProvider):
    """
    Derives Fernet keys from passphrases held in memory.

    Each key reference gets its own salt, so two references sharing a
    passphrase still produce different keys.
    """

    iterations = 480000

    def __init__(self, passphrases: Optional[Dict[str, str]] = None):
        """
        Initialize the provider.

        Args:
            passphrases: Mapping of key reference to passphrase
        """
        self._passphrases = dict(passphrases or {})
        self._cache = {}
        self._lock = threading.Lock()

    def _lookup(self, key_ref: str) -> Optional[str]:
        return self._passphrases.get(key_ref)

    def get_fernet(self, key_ref: str) -> Fernet:
        if not key_ref:
            raise EncryptionKeyError("Encryption enabled but no key reference configured")

        with self._lock:
            if key_ref in self._cache:
                return self._cache[key_ref]

            passphrase = self._lookup(key_ref)
            if not passphrase:
                raise EncryptionKeyError(f"Unknown encryption key reference: {key_ref}")

            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=f"dumpkeeper:{key_ref}".encode(),
                iterations=self.iterations,
            )
            key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
            fernet = Fernet(key)
            self._cache[key_ref] = fernet
            return fernet


class EnvironmentKeyProvider(PassphraseKeyProvider):
    """
    Reads passphrases from environment variables.

    Key reference "nightly-db" maps to DUMPKEEPER_KEY_NIGHTLY_DB.
    """

    def __init__(self, prefix: str = 'DUMPKEEPER_KEY_'):
        super().__init__()
        self.prefix = prefix

    def _lookup(self, key_ref: str) -> Optional[str]:
        name = self.prefix + "".join(c.upper() if c.isalnum() else '_' for c in key_ref)
        return os.environ.get(name)


class FernetEncryptStage(Stage):
    """Encrypts every chunk as one length-prefixed Fernet frame."""

    name = 'encrypt'

    def __init__(self, fernet: Fernet):
        self._fernet = fernet
        self._header_written = False

    def _header(self) -> bytes:
        if self._header_written:
            return b''
        self._header_written = True
        return MAGIC

    def transform(self, chunk: bytes) -> bytes:
        if not chunk:
            return b''
        try:
            token = self._fernet.encrypt(chunk)
        except Exception as e:
            raise TransformError(f"Encryption failed: {e}")
        return self._header() + FRAME_HEADER.pack(len(token)) + token

    def flush(self) -> bytes:
        # An empty source still yields a recognizable encrypted artifact
        return self._header()


class FernetDecryptStage(Stage):
    """Parses frames produced by FernetEncryptStage and decrypts them."""

    name = 'decrypt'

    def __init__(self, fernet: Fernet):
        self._fernet = fernet
        self._buffer = bytearray()
        self._header_seen = False

    def transform(self, chunk: bytes) -> bytes:
        self._buffer.extend(chunk)

        if not self._header_seen:
            if len(self._buffer) < len(MAGIC):
                return b''
            if bytes(self._buffer[:len(MAGIC)]) != MAGIC:
                raise TransformError("Artifact is not an encrypted dumpkeeper stream")
            del self._buffer[:len(MAGIC)]
            self._header_seen = True

        output = []
        while len(self._buffer) >= FRAME_HEADER.size:
            (length,) = FRAME_HEADER.unpack_from(self._buffer)
            end = FRAME_HEADER.size + length
            if len(self._buffer) < end:
                break
            token = bytes(self._buffer[FRAME_HEADER.size:end])
            del self._buffer[:end]
            try:
                output.append(self._fernet.decrypt(token))
            except InvalidToken:
                raise EncryptionKeyError("Decryption failed: wrong key or corrupted artifact")

        return b''.join(output)

    def flush(self) -> bytes:
        if not self._header_seen or self._buffer:
            raise TransformError("Encrypted stream is truncated")
        return b''
