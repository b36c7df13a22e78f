"""
Encoding helpers for node records and storage keys.
"""


class DecodeError(ValueError):
    """Raised when a value cannot be decoded into its declared type."""


def bytes_to_hex(b: bytes) -> str:
    """Render raw bytes as a 0x-prefixed lower-case hex string."""
    if not b:
        return ""
    return "0x" + bytes(b).hex()


def address_to_string(address: bytes) -> str:
    """Render an account address the way the explorer stores it."""
    return bytes_to_hex(address)


def encode_uint(value: int, bits: int = 64) -> bytes:
    """
    Encode an unsigned integer as a fixed-width big-endian key component.

    Fixed width keeps LevelDB's lexicographic key order equal to numeric order.
    """
    value = decode_uint(value, bits)
    return value.to_bytes(bits // 8, "big")


def decode_uint(value, bits: int = 64) -> int:
    """
    Decode a stored or wire value into an unsigned integer of the given width.

    Any integer that fits the width is accepted regardless of how it was
    stored (narrower ints widen, wider ints narrow if they fit). Decimal
    strings are accepted as well, since the JSON gateway sends 64-bit
    numbers as strings. Big-endian bytes of at most bits/8 length decode too.

    Raises:
        DecodeError: for negative values, values wider than the declared
            width, and any other type.
    """
    if bits <= 0 or bits % 8:
        raise ValueError(f"Unsupported integer width: {bits}")

    if isinstance(value, bool):
        raise DecodeError(f"Expected uint{bits}, got bool")
    if isinstance(value, str):
        try:
            value = int(value, 10)
        except ValueError:
            raise DecodeError(f"Expected uint{bits}, got non-numeric string {value!r}")
    elif isinstance(value, (bytes, bytearray)):
        if len(value) > bits // 8:
            raise DecodeError(f"Expected at most {bits // 8} bytes for uint{bits}, got {len(value)}")
        value = int.from_bytes(value, "big")
    elif not isinstance(value, int):
        raise DecodeError(f"Expected uint{bits}, got {type(value).__name__}")

    if value < 0:
        raise DecodeError(f"Negative value {value} for uint{bits}")
    if value >> bits:
        raise DecodeError(f"Value {value} overflows uint{bits}")
    return value
