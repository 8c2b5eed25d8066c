import pytest

from bitmite.bencode import BencodeError, decode, encode


def test_encode_byte_string_wire_format():
    assert encode(b"spam") == b"4:spam"


def test_encode_integer_wire_format():
    assert encode(-3) == b"i-3e"


def test_dictionary_keys_are_sorted_on_encode():
    assert encode({b"b": 1, b"a": b"x"}) == b"d1:a1:x1:bi1ee"


@pytest.mark.parametrize(
    "value",
    [
        b"",
        b"spam",
        0,
        42,
        -17,
        2**63 - 1,
        -(2**63),
        [],
        [b"a", 1, [b"nested", {}]],
        {},
        {b"m": {b"ut_metadata": 1}, b"metadata_size": 31235},
        {b"list": [1, 2, 3], b"bytes": bytes(range(256))},
    ],
)
def test_round_trip(value):
    decoded, rest = decode(encode(value))
    assert decoded == value
    assert rest == b""


def test_decode_returns_remaining_bytes():
    encoded = encode([b"x", 5])
    value, rest = decode(encoded + b"tail")
    assert value == [b"x", 5]
    assert rest == b"tail"


def test_decode_dictionary_keys_sorted():
    value, _ = decode(encode({b"z": 1}) [:-1] + b"1:ai2ee")
    assert list(value) == sorted(value)
    assert value[b"a"] == 2


def test_later_duplicate_key_wins():
    value, _ = decode(b"d1:ai1e1:ai2ee")
    assert value == {b"a": 2}


def test_decode_accepts_bytearray():
    value, rest = decode(bytearray(encode(b"abc")))
    assert value == b"abc"
    assert rest == b""


def test_encode_tuple_as_list():
    assert encode((1, b"a")) == encode([1, b"a"])


def test_empty_input():
    with pytest.raises(BencodeError, match="end of input"):
        decode(b"")


def test_unexpected_token():
    with pytest.raises(BencodeError, match="unexpected token"):
        decode(b"x123")


def test_truncated_byte_string():
    with pytest.raises(BencodeError, match="end of input"):
        decode(b"10:short")


def test_byte_string_missing_colon():
    with pytest.raises(BencodeError, match="':'"):
        decode(b"5abc")


def test_bad_string_length():
    with pytest.raises(BencodeError, match="string length"):
        decode(b"3x:abc")


@pytest.mark.parametrize("data", [b"ie", b"i12ae", b"i 1e", b"i1_0e", b"i9223372036854775808e"])
def test_invalid_integer(data):
    with pytest.raises(BencodeError, match="invalid integer"):
        decode(data)


def test_integer_without_terminator():
    with pytest.raises(BencodeError, match="'e'"):
        decode(b"i42")


def test_unterminated_list():
    with pytest.raises(BencodeError):
        decode(b"li1e")


def test_unterminated_dictionary():
    with pytest.raises(BencodeError):
        decode(b"d1:ai1e")


def test_encode_rejects_non_bytes_key():
    with pytest.raises(TypeError):
        encode({"a": 1})


def test_encode_rejects_unknown_type():
    with pytest.raises(TypeError):
        encode(1.5)


def test_encode_rejects_bool():
    with pytest.raises(TypeError):
        encode(True)