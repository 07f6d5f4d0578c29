"""
Owned RGBA pixel buffers and the tile views cut from them.

Ownership rules:
    - A PixelBuffer is owned by exactly one pipeline stage at a time.
    - ``take()`` moves the pixels into a new handle and empties the old one,
      so a stale handle raises instead of silently sharing memory.
    - ``copy()`` gives an independent buffer for a second logical "copy".
    - Tile views alias their source only while one partition is being
      processed; tiles never write into the source, results are written
      into a separate output buffer on reassembly.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .errors import InvalidInput

CHANNELS = 4


class PixelBuffer:
    """
    RGBA image of ``height`` x ``width`` pixels, 4 bytes per pixel.

    Args:
        width (int): Width in pixels.
        height (int): Height in pixels.
        pixels (np.ndarray): uint8 array shaped (height, width, 4), or any
            array/bytes holding exactly ``width * height * 4`` values.

    Raises:
        InvalidInput: If the data length does not match the dimensions.
    """

    __slots__ = ("width", "height", "_pixels")

    def __init__(self, width: int, height: int, pixels):
        if width <= 0 or height <= 0:
            raise InvalidInput(f"Invalid dimensions {width}x{height}")
        if isinstance(pixels, (bytes, bytearray, memoryview)):
            arr = np.frombuffer(pixels, dtype=np.uint8).copy()
        else:
            arr = np.asarray(pixels)
        if arr.dtype != np.uint8:
            raise InvalidInput(f"Pixel data must be uint8, got {arr.dtype}")
        expected = width * height * CHANNELS
        if arr.size != expected:
            raise InvalidInput(
                f"Buffer holds {arr.size} bytes, expected {expected} for {width}x{height} RGBA"
            )
        self.width = width
        self.height = height
        self._pixels: Optional[np.ndarray] = arr.reshape(height, width, CHANNELS)

    @classmethod
    def from_bytes(cls, data: bytes, width: int, height: int) -> "PixelBuffer":
        """Build a buffer from flat RGBA bytes (copied, so the result is writable)."""
        return cls(width, height, bytes(data))

    @classmethod
    def blank(cls, width: int, height: int, rgba: Tuple[int, int, int, int] = (0, 0, 0, 255)) -> "PixelBuffer":
        arr = np.empty((height, width, CHANNELS), dtype=np.uint8)
        arr[...] = np.asarray(rgba, dtype=np.uint8)
        return cls(width, height, arr)

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise InvalidInput("PixelBuffer was moved to another owner with take()")
        return self._pixels

    @property
    def nbytes(self) -> int:
        return self.width * self.height * CHANNELS

    @property
    def area(self) -> int:
        return self.width * self.height

    def take(self) -> "PixelBuffer":
        """Transfer ownership to a new handle; this handle becomes unusable."""
        moved = PixelBuffer(self.width, self.height, self.pixels)
        self._pixels = None
        return moved

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.width, self.height, self.pixels.copy())

    def to_bytes(self) -> bytes:
        return self.pixels.tobytes()

    def has_transparency(self) -> bool:
        return bool((self.pixels[..., 3] < 255).any())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return (self.width, self.height) == (other.width, other.height) and np.array_equal(
            self.pixels, other.pixels
        )

    def __repr__(self) -> str:
        state = "moved" if self._pixels is None else "owned"
        return f"PixelBuffer({self.width}x{self.height}, {state})"


@dataclass
class Tile:
    """
    Rectangular piece of a partitioned buffer.

    ``x``, ``y``, ``width`` and ``height`` describe the core region that the
    tile owns in the output. ``pixels`` covers the core plus the overlap
    padding on each side (all zero outside overlap mode).
    """

    x: int
    y: int
    width: int
    height: int
    pixels: np.ndarray
    pad_left: int = 0
    pad_top: int = 0
    pad_right: int = 0
    pad_bottom: int = 0

    @property
    def key(self) -> Tuple[int, int]:
        return (self.x, self.y)

    def core(self, processed: np.ndarray) -> np.ndarray:
        """Slice the core region out of a processed (padded) tile array."""
        bottom = processed.shape[0] - self.pad_bottom
        right = processed.shape[1] - self.pad_right
        return processed[self.pad_top:bottom, self.pad_left:right]

    def to_buffer(self) -> PixelBuffer:
        """Independent PixelBuffer holding the padded tile pixels."""
        h, w = self.pixels.shape[:2]
        return PixelBuffer(w, h, self.pixels.copy())
