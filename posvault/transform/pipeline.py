"""
Reversible transforms applied to snapshot payloads.

Two stages, applied in this order on the way out and undone in reverse:

    compress   zlib, framed so incompressible input is stored verbatim
    encrypt    Fernet (AES-CBC + HMAC-SHA256), key derived with PBKDF2

Framing for the compression stage::

    [4B magic "PVZ" + mode]  mode 0x01 = zlib body, 0x00 = stored body
    [body]

Every stage is total over ``bytes``: ``decompress(compress(x)) == x`` and
``decrypt(encrypt(x)) == x`` for any ``x``, including ``b""``.  Inverse
stages raise :class:`TransformError` on input they did not produce, which is
what the restore-side decode chain relies on to try the next strategy.
"""

from __future__ import annotations

import base64
import logging
import zlib

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from posvault.errors import TransformError

logger = logging.getLogger(__name__)

COMPRESS_MAGIC = b"PVZ"
_MODE_STORED = b"\x00"
_MODE_ZLIB = b"\x01"
_HEADER_LEN = len(COMPRESS_MAGIC) + 1

STAGE_COMPRESS = "compress"
STAGE_ENCRYPT = "encrypt"


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------


def compress(data: bytes, level: int = 6) -> bytes:
    """Compress *data*; falls back to a stored frame when zlib cannot shrink it."""
    try:
        packed = zlib.compress(data, level)
    except (zlib.error, TypeError, ValueError) as exc:
        raise TransformError(f"compression failed: {exc}") from exc
    if len(packed) < len(data):
        return COMPRESS_MAGIC + _MODE_ZLIB + packed
    return COMPRESS_MAGIC + _MODE_STORED + data


def decompress(data: bytes) -> bytes:
    """Undo :func:`compress`.

    Raises:
        TransformError: *data* is not a compression frame or is corrupt.
    """
    if len(data) < _HEADER_LEN or not data.startswith(COMPRESS_MAGIC):
        raise TransformError("payload is not a compression frame")
    mode = data[len(COMPRESS_MAGIC):_HEADER_LEN]
    body = data[_HEADER_LEN:]
    if mode == _MODE_STORED:
        return body
    if mode == _MODE_ZLIB:
        try:
            return zlib.decompress(body)
        except zlib.error as exc:
            raise TransformError(f"corrupt compressed payload: {exc}") from exc
    raise TransformError(f"unknown compression mode {mode!r}")


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


def derive_key(passphrase: str, salt: str, iterations: int = 390_000) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def encrypt(data: bytes, key: bytes) -> bytes:
    """Encrypt *data* into an ASCII Fernet token."""
    try:
        return Fernet(key).encrypt(data)
    except (ValueError, TypeError) as exc:
        raise TransformError(f"encryption failed: {exc}") from exc


def decrypt(data: bytes, key: bytes) -> bytes:
    """Undo :func:`encrypt`.

    Raises:
        TransformError: wrong key, tampered token, or not a token at all.
    """
    try:
        return Fernet(key).decrypt(data)
    except (InvalidToken, ValueError, TypeError) as exc:
        raise TransformError("payload is not a valid encrypted token") from exc


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TransformPipeline:
    """Compress-then-encrypt pipeline bound to one key.

    The PBKDF2 derivation is deliberately slow, so it runs once here rather
    than per payload.
    """

    def __init__(
        self,
        passphrase: str,
        salt: str,
        iterations: int = 390_000,
        compression_level: int = 6,
    ) -> None:
        self._key = derive_key(passphrase, salt, iterations)
        self._level = compression_level

    @classmethod
    def from_settings(cls, settings) -> "TransformPipeline":
        return cls(
            passphrase=settings.encryption_passphrase,
            salt=settings.encryption_salt,
            iterations=settings.encryption_kdf_iterations,
            compression_level=settings.compression_level,
        )

    def compress(self, data: bytes) -> bytes:
        return compress(data, self._level)

    def decompress(self, data: bytes) -> bytes:
        return decompress(data)

    def encrypt(self, data: bytes) -> bytes:
        return encrypt(data, self._key)

    def decrypt(self, data: bytes) -> bytes:
        return decrypt(data, self._key)

    def protect(self, document: bytes) -> tuple[bytes, list[str]]:
        """Run every outbound stage, skipping any stage that fails.

        Returns the transformed payload and the list of stages actually
        applied.  A failed stage passes its input through unchanged so a
        backup is never lost to a transform problem.
        """
        payload = document
        applied: list[str] = []

        try:
            payload = self.compress(payload)
            applied.append(STAGE_COMPRESS)
        except TransformError as exc:
            logger.warning("Compression skipped, storing uncompressed payload: %s", exc)

        try:
            payload = self.encrypt(payload)
            applied.append(STAGE_ENCRYPT)
        except TransformError as exc:
            logger.warning("Encryption skipped, storing unencrypted payload: %s", exc)

        logger.debug(
            "Protected payload %d -> %d bytes (stages=%s)",
            len(document), len(payload), ",".join(applied) or "none",
        )
        return payload, applied

    @staticmethod
    def compression_ratio(original: bytes, transformed: bytes) -> float:
        """Percentage of bytes saved, rounded to two decimals, never negative."""
        if not original or not transformed:
            return 0.0
        ratio = (1 - len(transformed) / len(original)) * 100
        return max(0.0, round(ratio, 2))
