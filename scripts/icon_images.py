from __future__ import annotations

import io
import struct
import urllib.parse
from pathlib import Path
from typing import Callable

try:
    from PIL import Image
except Exception as exc:  # pragma: no cover - environment dependent
    Image = None
    PIL_IMPORT_ERROR = exc
else:
    PIL_IMPORT_ERROR = None


ICO_MAGIC = b"\x00\x00\x01\x00"
ICO_HEADER = struct.Struct("<HHH")
ICO_DIR_ENTRY_SIZE = 16


class IconDecodeError(RuntimeError):
    """Icon bytes could not be turned into a raster."""


def ensure_pillow() -> None:
    if Image is None:
        raise RuntimeError(
            "Pillow is required for icon normalization and tile generation. Install with: pip install Pillow"
        ) from PIL_IMPORT_ERROR


def _resize_filter():
    return getattr(Image, "Resampling", Image).LANCZOS


def is_ico_payload(data: bytes, *, content_type: str | None = None, url: str | None = None) -> bool:
    """True when the bytes, the Content-Type or the URL suffix point at an ICO."""
    if data[:4] == ICO_MAGIC:
        return True
    if content_type and "ico" in content_type.lower():
        return True
    if url:
        try:
            suffix = Path(urllib.parse.urlparse(url).path).suffix.lower()
        except ValueError:
            suffix = ""
        if suffix == ".ico":
            return True
    return False


def read_ico_directory(data: bytes) -> list[tuple[int, int]]:
    """Declared (width, height) of each embedded raster, in file order."""
    if len(data) < ICO_HEADER.size:
        raise IconDecodeError("ICO container too short")
    reserved, kind, count = ICO_HEADER.unpack_from(data, 0)
    if reserved != 0 or kind != 1 or count == 0:
        raise IconDecodeError("not an ICO container")
    if len(data) < ICO_HEADER.size + count * ICO_DIR_ENTRY_SIZE:
        raise IconDecodeError(f"ICO directory truncated ({count} entries declared)")

    sizes: list[tuple[int, int]] = []
    for index in range(count):
        offset = ICO_HEADER.size + index * ICO_DIR_ENTRY_SIZE
        width, height = data[offset], data[offset + 1]
        # A zero byte encodes 256 pixels.
        sizes.append((width or 256, height or 256))
    return sizes


def select_ico_frame(sizes: list[tuple[int, int]]) -> int:
    """Index of the widest raster; the first one wins a tie."""
    if not sizes:
        raise IconDecodeError("ICO container has no images")
    best = 0
    for index, (width, _) in enumerate(sizes):
        if width > sizes[best][0]:
            best = index
    return best


def decode_ico(data: bytes) -> Image.Image:
    sizes = read_ico_directory(data)
    chosen = sizes[select_ico_frame(sizes)]
    try:
        with Image.open(io.BytesIO(data), formats=["ICO"]) as src:
            frame = src.ico.getimage(chosen)
            frame.load()
            return frame.convert("RGBA")
    except Exception as exc:
        raise IconDecodeError(f"ICO frame {chosen[0]}x{chosen[1]} unreadable: {exc}") from exc


def decode_generic(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as src:
            # Animated inputs always normalize from frame 0.
            if bool(getattr(src, "is_animated", False)):
                src.seek(0)
            return src.convert("RGBA")
    except Exception as exc:
        raise IconDecodeError(f"decode failed: {exc}") from exc


def decode_icon(
    data: bytes,
    *,
    content_type: str | None = None,
    url: str | None = None,
    on_fallback: Callable[[str], None] | None = None,
) -> Image.Image:
    """Decode downloaded icon bytes into an RGBA image.

    ICO containers yield their widest embedded raster. When the container
    cannot be parsed the bytes go through Pillow's generic detection instead.
    """
    assert Image is not None
    if not data:
        raise IconDecodeError("empty body")
    if is_ico_payload(data, content_type=content_type, url=url):
        try:
            return decode_ico(data)
        except IconDecodeError as exc:
            if on_fallback is not None:
                on_fallback(f"failed to parse ICO, falling back to generic decode: {exc}")
    return decode_generic(data)


def normalize_icon(image: Image.Image, size: int) -> Image.Image:
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    if image.size == (size, size):
        return image
    return image.resize((size, size), _resize_filter())


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def load_icon_for_tile(path: Path, size: int) -> Image.Image:
    """Read a stored icon and fit it to a tile cell."""
    assert Image is not None
    try:
        with Image.open(path) as src:
            rgba = src.convert("RGBA")
    except Exception as exc:
        raise IconDecodeError(f"cannot read {path}: {exc}") from exc
    return normalize_icon(rgba, size)
