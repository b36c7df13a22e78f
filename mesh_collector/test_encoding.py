"""
Tests for the encoding helpers.
"""
import unittest

from mesh_collector.utils.encoding import (
    DecodeError,
    address_to_string,
    bytes_to_hex,
    decode_uint,
    encode_uint,
)


class TestDecodeUint(unittest.TestCase):
    def test_widens_and_narrows_when_value_fits(self):
        self.assertEqual(decode_uint(7, 32), 7)
        self.assertEqual(decode_uint(2**40, 64), 2**40)
        self.assertEqual(decode_uint(2**32 - 1, 32), 2**32 - 1)

    def test_decimal_strings(self):
        self.assertEqual(decode_uint("18446744073709551615"), 2**64 - 1)
        with self.assertRaises(DecodeError):
            decode_uint("12abc")

    def test_bytes(self):
        self.assertEqual(decode_uint(b"\x01\x00", 16), 256)
        with self.assertRaises(DecodeError):
            decode_uint(b"\x01\x00\x00", 16)

    def test_out_of_range(self):
        with self.assertRaises(DecodeError):
            decode_uint(2**32, 32)
        with self.assertRaises(DecodeError):
            decode_uint(-1)

    def test_unexpected_types_are_errors_not_zero(self):
        for value in (None, 1.5, True, [1], {"number": 1}):
            with self.assertRaises(DecodeError):
                decode_uint(value)

    def test_invalid_width(self):
        with self.assertRaises(ValueError):
            decode_uint(1, 12)


class TestKeysAndStrings(unittest.TestCase):
    def test_encoded_keys_sort_numerically(self):
        numbers = [0, 1, 255, 256, 65535, 2**40]
        keys = [encode_uint(n) for n in numbers]
        self.assertEqual(sorted(keys), keys)
        self.assertTrue(all(len(k) == 8 for k in keys))

    def test_hex_rendering(self):
        self.assertEqual(bytes_to_hex(b"\xab\xcd"), "0xabcd")
        self.assertEqual(bytes_to_hex(b""), "")
        self.assertEqual(address_to_string(bytes.fromhex("AA")), "0xaa")


if __name__ == '__main__':
    unittest.main()
