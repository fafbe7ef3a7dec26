"""Tests for the snapshot decode fallback chain."""

import json
from unittest.mock import patch

import pytest

from posvault.backup.decoder import SnapshotDecoder, sanitize_text, validate_document
from posvault.errors import DecodeError, SchemaError

DOCUMENT = {
    "metadata": {"exportDate": "2024-05-01T10:00:00.000000+00:00", "version": "1.0.0"},
    "data": {"users": [{"id": 1, "username": "admin", "role": "admin"}]},
}


@pytest.fixture
def decoder(pipeline):
    return SnapshotDecoder(pipeline)


@pytest.fixture
def raw():
    return json.dumps(DOCUMENT).encode()


class TestStrategies:

    def test_plaintext(self, decoder, raw):
        document, strategy = decoder.decode(raw)
        assert strategy == "plaintext"
        assert document == DOCUMENT

    def test_plaintext_str_input(self, decoder, raw):
        document, strategy = decoder.decode(raw.decode())
        assert strategy == "plaintext"
        assert document["data"]["users"][0]["username"] == "admin"

    def test_plaintext_never_touches_transforms(self, decoder, pipeline, raw):
        with patch.object(pipeline, "decrypt") as dec, patch.object(pipeline, "decompress") as inf:
            _, strategy = decoder.decode(raw)
        assert strategy == "plaintext"
        dec.assert_not_called()
        inf.assert_not_called()

    def test_encrypted_only(self, decoder, pipeline, raw):
        _, strategy = decoder.decode(pipeline.encrypt(raw))
        assert strategy == "decrypt"

    def test_compressed_then_encrypted(self, decoder, pipeline, raw):
        payload, _ = pipeline.protect(raw)
        document, strategy = decoder.decode(payload)
        assert strategy == "decrypt+decompress"
        assert document == DOCUMENT

    def test_compressed_only(self, decoder, pipeline, raw):
        document, strategy = decoder.decode(pipeline.compress(raw))
        assert strategy == "decompress"
        assert document == DOCUMENT

    def test_sanitize_control_characters(self, decoder):
        dirty = '{"data": {"users": [{"id": 1, "username": "ad\x01min\x7f"}]}}'
        document, strategy = decoder.decode(dirty)
        assert strategy == "sanitize"
        assert document["data"]["users"][0]["username"] == "admin"

    def test_sanitize_after_decrypt(self, decoder, pipeline):
        dirty = b'{"data": {"categories": [{"id": 2, "name": "Snack\x02s"}]}}'
        document, strategy = decoder.decode(pipeline.encrypt(dirty))
        assert strategy == "sanitize"
        assert document["data"]["categories"][0]["name"] == "Snacks"

    def test_strategy_order(self, decoder):
        assert decoder.strategy_names == [
            "plaintext", "decrypt", "decrypt+decompress", "decompress", "sanitize",
        ]


class TestFailures:

    @pytest.mark.parametrize("content", [b"", b"   ", ""])
    def test_empty_input(self, decoder, content):
        with pytest.raises(DecodeError):
            decoder.decode(content)

    def test_garbage_raises_decode_error_with_last_error(self, decoder):
        with pytest.raises(DecodeError) as info:
            decoder.decode(b"\x89PNG not a backup")
        assert info.value.last_error is not None

    def test_wrong_key_is_a_decode_error(self, decoder, raw):
        from posvault.transform.pipeline import TransformPipeline
        other = TransformPipeline("other", "salt", iterations=1_000)
        payload, _ = other.protect(raw)
        with pytest.raises(DecodeError):
            decoder.decode(payload)

    def test_missing_data_is_schema_error(self, decoder):
        with pytest.raises(SchemaError):
            decoder.decode(b'{"metadata": {}}')

    def test_non_object_data_is_schema_error(self, decoder):
        with pytest.raises(SchemaError):
            decoder.decode(b'{"data": [1, 2, 3]}')

    def test_top_level_array_is_schema_error(self, decoder):
        with pytest.raises(SchemaError):
            decoder.decode(b"[]")


class TestHelpers:

    def test_sanitize_strips_control_chars_but_keeps_whitespace(self):
        assert sanitize_text("a\x00b\tc\nd\re\x1f") == "ab\tc\nd\re"

    def test_sanitize_collapses_quote_runs(self):
        assert sanitize_text('{"a": """x"""}') == '{"a": "x"}'
        assert sanitize_text('""') == '""'

    def test_validate_document(self):
        assert validate_document({"data": {}}) == {"data": {}}
        with pytest.raises(SchemaError):
            validate_document({"data": None})
