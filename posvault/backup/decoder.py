"""
Decoder for stored snapshots and imported content.

Snapshots written over the life of the product come in several shapes:
plain JSON from old clients, encrypted-only, compressed-then-encrypted,
compressed-only (encryption stage degraded), and occasionally JSON that
picked up control characters in transit.  Decoding tries an ordered list
of strategies and stops at the first that yields a parsed document:

    plaintext            parse as JSON
    decrypt              decrypt, parse
    decrypt+decompress   decrypt, decompress, parse
    decompress           decompress, parse
    sanitize             clean the furthest-decoded text, parse

Nothing here touches the local store.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from posvault.errors import DecodeError, SchemaError, TransformError
from posvault.transform.pipeline import TransformPipeline

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_QUOTE_RUNS = re.compile(r'"{3,}')


def sanitize_text(text: str) -> str:
    """Strip control characters and collapse runs of three or more quotes."""
    return _QUOTE_RUNS.sub('"', _CONTROL_CHARS.sub("", text))


def validate_document(document: Any) -> dict[str, Any]:
    """Check the decoded document is an object with an object ``data`` member.

    Raises:
        SchemaError: the shape is wrong.
    """
    if not isinstance(document, dict):
        raise SchemaError(f"backup document must be an object, got {type(document).__name__}")
    if not isinstance(document.get("data"), dict):
        raise SchemaError("backup document has no 'data' object")
    return document


def _parse(data: bytes | str) -> Any:
    return json.loads(data)


class _Attempt:
    """Input plus the furthest stage any strategy managed to decode it to."""

    def __init__(self, content: bytes) -> None:
        self.content = content
        self.furthest = content
        self._depth = 0

    def reached(self, data: bytes, depth: int) -> bytes:
        if depth > self._depth:
            self._depth = depth
            self.furthest = data
        return data


class SnapshotDecoder:
    """Turns stored or imported bytes back into an export document."""

    def __init__(self, pipeline: TransformPipeline) -> None:
        self._pipeline = pipeline
        self._strategies: list[tuple[str, Callable[[_Attempt], Any]]] = [
            ("plaintext", self._plaintext),
            ("decrypt", self._decrypt),
            ("decrypt+decompress", self._decrypt_decompress),
            ("decompress", self._decompress),
            ("sanitize", self._sanitize),
        ]

    @property
    def strategy_names(self) -> list[str]:
        return [name for name, _ in self._strategies]

    def decode(self, content: bytes | str) -> tuple[dict[str, Any], str]:
        """Decode *content* and validate its shape.

        Returns:
            ``(document, strategy_name)``.

        Raises:
            DecodeError: empty input, or every strategy failed.
            SchemaError: a strategy parsed it but the shape is wrong.
        """
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        if not data.strip():
            raise DecodeError("backup content is empty")

        attempt = _Attempt(data)
        last_error: Exception | None = None
        for name, strategy in self._strategies:
            try:
                document = strategy(attempt)
            except (TransformError, ValueError) as exc:
                logger.debug("Decode strategy %s failed: %s", name, exc)
                last_error = exc
                continue
            logger.info("Backup decoded with strategy %s", name)
            return validate_document(document), name

        raise DecodeError(
            f"could not decode backup content ({len(data)} bytes): {last_error}",
            last_error=last_error,
        )

    # -- strategies ----------------------------------------------------------

    def _plaintext(self, attempt: _Attempt) -> Any:
        return _parse(attempt.content)

    def _decrypt(self, attempt: _Attempt) -> Any:
        plain = attempt.reached(self._pipeline.decrypt(attempt.content), 1)
        return _parse(plain)

    def _decrypt_decompress(self, attempt: _Attempt) -> Any:
        plain = attempt.reached(self._pipeline.decrypt(attempt.content), 1)
        inflated = attempt.reached(self._pipeline.decompress(plain), 2)
        return _parse(inflated)

    def _decompress(self, attempt: _Attempt) -> Any:
        inflated = attempt.reached(self._pipeline.decompress(attempt.content), 2)
        return _parse(inflated)

    def _sanitize(self, attempt: _Attempt) -> Any:
        text = attempt.furthest.decode("utf-8", errors="ignore")
        return _parse(sanitize_text(text))
