"""Cryptographic functions for backupagent.

This module provides:
- OpenSSL `enc` compatible file encryption ("Salted__" container,
  PBKDF2-HMAC-SHA256 key/IV derivation, AES-CBC with PKCS#7 padding)
- Optional DEFLATE/GZIP compression applied before encryption
- Plain compress/decompress copies for unencrypted backups
- File hashing with SHA-1
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import shutil
import zlib
from pathlib import Path
from typing import BinaryIO

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from backupagent.core.types import CompressAlgorithm, CompressionLevel, CompressionMode

logger = logging.getLogger(__name__)

# Container layout: MAGIC || salt || ciphertext
MAGIC = b"Salted__"
SALT_SIZE = 8
IV_SIZE = 16
AES_BLOCK_BITS = 128

DEFAULT_KEY_SIZE = 256
DEFAULT_ITERATION_COUNT = 10000
VALID_KEY_SIZES = (128, 192, 256)

BLOCK_SIZE = 65536  # 64 KiB

# zlib window bits: negative for raw deflate, 16+ for a gzip container
_WBITS = {
    CompressAlgorithm.DEFLATE: -zlib.MAX_WBITS,
    CompressAlgorithm.GZIP: 16 + zlib.MAX_WBITS,
}


class CryptoError(Exception):
    """Exception raised when data cannot be decrypted."""


def _make_compressor(level: CompressionLevel, algorithm: CompressAlgorithm):
    return zlib.compressobj(level.zlib_level, zlib.DEFLATED, _WBITS[algorithm])


def _make_decompressor(algorithm: CompressAlgorithm):
    return zlib.decompressobj(_WBITS[algorithm])


class CryptoCodec:
    """Symmetric codec for backed-up files.

    Output is byte-compatible with
    ``openssl enc -aes-256-cbc -pbkdf2 -iter 10000 -md sha256``
    when compression is disabled. With compression enabled the plaintext is
    compressed first, and decrypted data is decompressed afterwards.

    Only the password bytes are kept for the codec's lifetime; keys are
    derived per file from a fresh random salt.
    """

    def __init__(
        self,
        password: str,
        key_size: int = DEFAULT_KEY_SIZE,
        iteration_count: int = DEFAULT_ITERATION_COUNT,
        compression_level: CompressionLevel = CompressionLevel.NO_COMPRESSION,
        compress_algorithm: CompressAlgorithm = CompressAlgorithm.DEFLATE,
    ) -> None:
        if key_size not in VALID_KEY_SIZES:
            logger.warning("Unsupported key size %s, using %d", key_size, DEFAULT_KEY_SIZE)
            key_size = DEFAULT_KEY_SIZE
        self.key_size = key_size
        self.iteration_count = iteration_count
        self.compression_level = compression_level
        self.compress_algorithm = compress_algorithm
        self._password: bytes | None = password.encode("utf-8")

    @property
    def is_compressing(self) -> bool:
        return self.compression_level != CompressionLevel.NO_COMPRESSION

    def derive_key_and_iv(self, salt: bytes) -> tuple[bytes, bytes]:
        """Derive the AES key and IV for a given salt.

        Args:
            salt: The 8-byte salt stored after the magic prefix.

        Returns:
            Tuple of (key, iv); the key is key_size/8 bytes, the IV 16 bytes.
        """
        if self._password is None:
            raise CryptoError("Codec has been closed")
        key_len = self.key_size // 8
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=key_len + IV_SIZE,
            salt=salt,
            iterations=self.iteration_count,
        )
        material = kdf.derive(self._password)
        return material[:key_len], material[key_len:]

    def encrypt_stream(self, source: BinaryIO, target: BinaryIO) -> None:
        """Encrypt everything readable from source into target."""
        salt = os.urandom(SALT_SIZE)
        key, iv = self.derive_key_and_iv(salt)
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(AES_BLOCK_BITS).padder()
        compressor = (
            _make_compressor(self.compression_level, self.compress_algorithm)
            if self.is_compressing
            else None
        )

        target.write(MAGIC + salt)
        for block in iter(lambda: source.read(BLOCK_SIZE), b""):
            if compressor is not None:
                block = compressor.compress(block)
            target.write(encryptor.update(padder.update(block)))
        if compressor is not None:
            target.write(encryptor.update(padder.update(compressor.flush())))
        target.write(encryptor.update(padder.finalize()) + encryptor.finalize())

    def decrypt_stream(self, source: BinaryIO, target: BinaryIO) -> None:
        """Decrypt a "Salted__" container from source into target.

        Raises:
            CryptoError: On a missing prefix, a truncated salt, or bad padding
                (wrong password or corrupted data).
        """
        header = source.read(len(MAGIC) + SALT_SIZE)
        if header[: len(MAGIC)] != MAGIC:
            raise CryptoError("Missing 'Salted__' prefix: not an encrypted backup file")
        salt = header[len(MAGIC):]
        if len(salt) != SALT_SIZE:
            raise CryptoError("Encrypted file is truncated: salt is incomplete")

        key, iv = self.derive_key_and_iv(salt)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
        decompressor = _make_decompressor(self.compress_algorithm) if self.is_compressing else None

        def emit(data: bytes) -> None:
            if decompressor is not None:
                data = decompressor.decompress(data)
            if data:
                target.write(data)

        try:
            for block in iter(lambda: source.read(BLOCK_SIZE), b""):
                emit(unpadder.update(decryptor.update(block)))
            emit(unpadder.update(decryptor.finalize()) + unpadder.finalize())
            if decompressor is not None:
                target.write(decompressor.flush())
        except ValueError as e:
            raise CryptoError("Invalid password or corrupted data") from e
        except zlib.error as e:
            raise CryptoError(f"Decrypted data is not valid {self.compress_algorithm.value}") from e

    def encrypt_file(self, source_path: str | Path, target_path: str | Path) -> None:
        """Encrypt a file. A partially written target is removed on failure."""
        with open(source_path, "rb") as src:
            try:
                with open(target_path, "wb") as dst:
                    self.encrypt_stream(src, dst)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.remove(target_path)
                raise

    def decrypt_file(self, source_path: str | Path, target_path: str | Path) -> None:
        """Decrypt a file. A partially written target is removed on failure."""
        with open(source_path, "rb") as src:
            try:
                with open(target_path, "wb") as dst:
                    self.decrypt_stream(src, dst)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.remove(target_path)
                raise

    def close(self) -> None:
        """Forget the password."""
        self._password = None

    def __enter__(self) -> CryptoCodec:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def copy_with_compression(
    source_path: str | Path,
    target_path: str | Path,
    level: CompressionLevel,
    mode: CompressionMode,
    algorithm: CompressAlgorithm = CompressAlgorithm.DEFLATE,
) -> None:
    """Copy a file, compressing or decompressing it on the way.

    With NO_COMPRESSION this is a plain byte copy.
    """
    if level == CompressionLevel.NO_COMPRESSION:
        shutil.copyfile(source_path, target_path)
        return

    with open(source_path, "rb") as src, open(target_path, "wb") as dst:
        if mode == CompressionMode.COMPRESS:
            compressor = _make_compressor(level, algorithm)
            for block in iter(lambda: src.read(BLOCK_SIZE), b""):
                dst.write(compressor.compress(block))
            dst.write(compressor.flush())
        else:
            decompressor = _make_decompressor(algorithm)
            for block in iter(lambda: src.read(BLOCK_SIZE), b""):
                dst.write(decompressor.decompress(block))
            dst.write(decompressor.flush())


def compute_file_sha1(path: str | Path) -> str:
    """Compute SHA-1 hash of a file.

    Reads the file in chunks to handle large files efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Lowercase hexadecimal SHA-1 hash string.
    """
    hasher = hashlib.sha1()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()
