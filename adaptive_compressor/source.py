"""
Pixel source: an encoded image plus the means to decode it into a PixelBuffer.
"""

import os
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from .buffer import PixelBuffer
from .codecs import Codec
from .errors import InvalidInput, UnsupportedFormat

# Leading magic bytes of the containers we can tell apart
_SIGNATURES = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
)


def sniff_format(data: bytes) -> Optional[str]:
    """Guess the container format from its first bytes."""
    for magic, fmt in _SIGNATURES:
        if data.startswith(magic):
            return fmt
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


def decode_image(data: bytes) -> PixelBuffer:
    """
    Decode container bytes into an RGBA PixelBuffer.

    Gray, BGR and BGRA inputs are all normalised to RGBA; images without an
    alpha channel come back fully opaque.

    Raises:
        UnsupportedFormat: If OpenCV cannot decode the bytes.
    """
    raw = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(raw, cv2.IMREAD_UNCHANGED)
    if img is None:
        raise UnsupportedFormat("Could not decode image data (corrupt or unsupported container)")
    if img.dtype != np.uint8:
        # 16-bit PNG and friends
        img = (img / 257).astype(np.uint8)
    if img.ndim == 2:
        rgba = cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    elif img.shape[2] == 3:
        rgba = cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    else:
        rgba = cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    height, width = rgba.shape[:2]
    return PixelBuffer(width, height, rgba)


@dataclass
class ImageSource:
    """
    An encoded input image.

    Attributes:
        data (bytes): The encoded container bytes as received.
        format (str): Container format name ("jpeg", "png", "webp").
        buffer (PixelBuffer, optional): Already-decoded pixels, used instead
            of decoding ``data`` when present.
    """

    data: bytes
    format: str
    buffer: Optional[PixelBuffer] = None

    @classmethod
    def from_bytes(cls, data: bytes, fmt: Optional[str] = None) -> "ImageSource":
        fmt = fmt or sniff_format(data)
        if fmt is None:
            raise UnsupportedFormat("Unrecognised image container")
        return cls(data=bytes(data), format=fmt.lower())

    @classmethod
    def from_path(cls, path: str) -> "ImageSource":
        if not os.path.isfile(path):
            raise InvalidInput(f"File not found: {path}")
        with open(path, "rb") as f:
            data = f.read()
        ext = os.path.splitext(path)[1].lower().lstrip(".")
        return cls.from_bytes(data, sniff_format(data) or ext or None)

    @classmethod
    def from_buffer(cls, buffer: PixelBuffer, codec: Codec, quality: float = 1.0) -> "ImageSource":
        """Wrap raw pixels; the encoded form is produced with ``codec`` at ``quality``."""
        return cls(data=codec.encode(buffer, quality), format=codec.name, buffer=buffer.copy())

    @property
    def size(self) -> int:
        return len(self.data)

    def decode(self) -> PixelBuffer:
        """Return a freshly owned PixelBuffer for this source."""
        if self.buffer is not None:
            return self.buffer.copy()
        return decode_image(self.data)
