"""Reversible compress/encrypt stages for snapshot payloads."""

from posvault.transform.pipeline import (
    STAGE_COMPRESS,
    STAGE_ENCRYPT,
    TransformPipeline,
    compress,
    decompress,
    decrypt,
    derive_key,
    encrypt,
)

__all__ = [
    "STAGE_COMPRESS",
    "STAGE_ENCRYPT",
    "TransformPipeline",
    "compress",
    "decompress",
    "decrypt",
    "derive_key",
    "encrypt",
]
