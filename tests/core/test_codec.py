"""Tests for the MessagePack codec."""

from __future__ import annotations

import msgpack
import pytest

from webrepl.core.codec import decode, encode
from webrepl.core.errors import DecodeError, DecodeErrorKind


class TestEncode:
    """Tests for encode."""

    def test_encodes_single_array(self):
        """Fields become one MessagePack array."""
        assert msgpack.unpackb(encode([1, 0, "print(1)\n"])) == [1, 0, "print(1)\n"]

    def test_tuple_encodes_as_array(self):
        """Tuples are encoded like lists."""
        assert encode((23, 4, 0)) == encode([23, 4, 0])

    def test_bytes_use_bin_type(self):
        """Byte strings stay binary and text stays text."""
        assert decode(encode([23, 3, 1, b"\x00\xff"])) == [23, 3, 1, b"\x00\xff"]
        assert decode(encode([1, 0, "é"])) == [1, 0, "é"]

    def test_unencodable_value_raises(self):
        """Values without a MessagePack form raise TypeError."""
        with pytest.raises(TypeError):
            encode([1, object()])


class TestDecode:
    """Tests for decode."""

    def test_decodes_nested_values(self):
        """Maps, nil, booleans and floats come back unchanged."""
        fields = [0, 3, {"server": "webrepl", "n": [1, 2]}, None, True, 1.5]
        assert decode(encode(fields)) == fields

    def test_integer_keys_allowed(self):
        """Maps with integer keys decode."""
        assert decode(encode([0, 3, {1: "a"}])) == [0, 3, {1: "a"}]

    def test_extra_elements_kept(self):
        """Elements past the known schema are preserved."""
        assert decode(encode([1, 1, "extra", 99])) == [1, 1, "extra", 99]

    def test_trailing_values_appended(self):
        """Complete values after the array become trailing fields."""
        data = encode([23, 4, 7]) + msgpack.packb("tail") + msgpack.packb(5)
        assert decode(data) == [23, 4, 7, "tail", 5]

    def test_empty_input_is_malformed(self):
        """Zero bytes cannot be a message."""
        with pytest.raises(DecodeError) as exc_info:
            decode(b"")
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_truncated_array_is_malformed(self):
        """An array missing elements is malformed."""
        data = encode([1, 0, "print(1)\n"])[:-3]
        with pytest.raises(DecodeError) as exc_info:
            decode(data)
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_array_cut_at_element_boundary_is_malformed(self):
        """An array header promising more elements than present is malformed."""
        with pytest.raises(DecodeError) as exc_info:
            decode(b"\x92\x01")
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_unhashable_map_key_is_malformed(self):
        """A map keyed by an array cannot be decoded."""
        with pytest.raises(DecodeError) as exc_info:
            decode(b"\x92\x00\x81\x91\x01\x01")
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_truncated_trailing_value_is_malformed(self):
        """An incomplete value after the array is malformed."""
        data = encode([1, 1]) + msgpack.packb("trailing")[:-2]
        with pytest.raises(DecodeError) as exc_info:
            decode(data)
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_reserved_byte_is_malformed(self):
        """0xc1 is never valid MessagePack."""
        with pytest.raises(DecodeError) as exc_info:
            decode(b"\xc1")
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED

    def test_non_array_top_level(self):
        """A scalar top-level value is rejected."""
        with pytest.raises(DecodeError) as exc_info:
            decode(msgpack.packb(42))
        assert exc_info.value.kind is DecodeErrorKind.NOT_ARRAY

    def test_map_top_level(self):
        """A map top-level value is rejected."""
        with pytest.raises(DecodeError) as exc_info:
            decode(msgpack.packb({"channel": 1}))
        assert exc_info.value.kind is DecodeErrorKind.NOT_ARRAY

    def test_empty_array(self):
        """An empty array carries no channel."""
        with pytest.raises(DecodeError) as exc_info:
            decode(encode([]))
        assert exc_info.value.kind is DecodeErrorKind.EMPTY

    def test_oversized_message(self):
        """Messages above max_size are refused before parsing."""
        data = encode([1, 0, "x" * 100])
        with pytest.raises(DecodeError) as exc_info:
            decode(data, max_size=50)
        assert exc_info.value.kind is DecodeErrorKind.MALFORMED
