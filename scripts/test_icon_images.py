from __future__ import annotations

import io
import struct
import sys
import unittest
from pathlib import Path

SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from PIL import Image

from icon_images import (
    IconDecodeError,
    decode_icon,
    encode_png,
    is_ico_payload,
    normalize_icon,
    read_ico_directory,
    select_ico_frame,
)


def ico_header(sizes: list[tuple[int, int]]) -> bytes:
    data = struct.pack("<HHH", 0, 1, len(sizes))
    for width, height in sizes:
        data += struct.pack("<BBBBHHII", width % 256, height % 256, 0, 0, 1, 32, 0, 0)
    return data


def png_bytes(size: tuple[int, int], color=(200, 30, 30, 255)) -> bytes:
    return encode_png(Image.new("RGBA", size, color))


class IcoDirectoryTests(unittest.TestCase):
    def test_widest_frame_wins_and_ties_keep_first(self) -> None:
        sizes = read_ico_directory(ico_header([(16, 16), (48, 48), (48, 32), (32, 32)]))
        self.assertEqual(sizes, [(16, 16), (48, 48), (48, 32), (32, 32)])
        self.assertEqual(select_ico_frame(sizes), 1)

    def test_zero_byte_means_256(self) -> None:
        sizes = read_ico_directory(ico_header([(32, 32), (256, 256)]))
        self.assertEqual(sizes[1], (256, 256))
        self.assertEqual(select_ico_frame(sizes), 1)

    def test_malformed_container_is_rejected(self) -> None:
        with self.assertRaises(IconDecodeError):
            read_ico_directory(b"\x00\x00\x01\x00\x05\x00")
        with self.assertRaises(IconDecodeError):
            read_ico_directory(b"\x89PNG\r\n\x1a\n")


class DecodeTests(unittest.TestCase):
    def test_ico_detection(self) -> None:
        self.assertTrue(is_ico_payload(b"\x00\x00\x01\x00rest"))
        self.assertTrue(is_ico_payload(b"", content_type="image/x-icon"))
        self.assertTrue(is_ico_payload(b"", url="https://a.com/favicon.ICO?v=2"))
        self.assertFalse(is_ico_payload(b"\x89PNG", content_type="image/png", url="https://a.com/i.png"))

    def test_ico_decodes_largest_embedded_image(self) -> None:
        buffer = io.BytesIO()
        Image.new("RGBA", (48, 48), (0, 128, 255, 255)).save(buffer, format="ICO", sizes=[(16, 16), (32, 32), (48, 48)])
        image = decode_icon(buffer.getvalue(), content_type="image/x-icon")
        self.assertEqual(image.size, (48, 48))
        self.assertEqual(image.mode, "RGBA")

    def test_png_served_as_ico_falls_back(self) -> None:
        notes: list[str] = []
        image = decode_icon(
            png_bytes((20, 20)),
            url="https://a.com/favicon.ico",
            on_fallback=notes.append,
        )
        self.assertEqual(image.size, (20, 20))
        self.assertEqual(len(notes), 1)

    def test_garbage_raises_decode_error(self) -> None:
        with self.assertRaises(IconDecodeError):
            decode_icon(b"<html>not an icon</html>", content_type="text/html")
        with self.assertRaises(IconDecodeError):
            decode_icon(b"")

    def test_normalize_resizes_to_square(self) -> None:
        image = normalize_icon(Image.new("RGB", (64, 40)), 32)
        self.assertEqual(image.size, (32, 32))
        self.assertEqual(image.mode, "RGBA")


if __name__ == "__main__":
    unittest.main()
