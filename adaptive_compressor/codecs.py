"""
Codec encode capability backed by OpenCV.

Each codec turns a PixelBuffer into container bytes at a quality in [0, 1]:

    JpegCodec  - lossy transform codec; alpha is flattened onto a background
                 colour; optional progressive variant.
    WebpCodec  - lossy transform codec that keeps alpha.
    PngCodec   - palette/lossless codec; quality selects how many levels per
                 channel survive (1.0 is lossless) at maximum deflate effort.

All encoding goes through ``cv2.imencode`` in memory, never through files.
"""

from typing import Dict, List, Tuple, Type

import cv2
import numpy as np

from .buffer import PixelBuffer
from .errors import EncodeFailure, UnsupportedFormat
from .logger_setup import setup_logger

log = setup_logger("codecs")


def rgba_to_bgra(pixels: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)


def flatten_alpha(pixels: np.ndarray, background: Tuple[int, int, int]) -> np.ndarray:
    """
    Composite RGBA pixels over an opaque background colour.

    Args:
        pixels (np.ndarray): uint8 (H, W, 4) RGBA array.
        background (tuple): RGB background colour.

    Returns:
        np.ndarray: uint8 (H, W, 3) BGR array ready for a JPEG encoder.
    """
    rgb = pixels[..., :3].astype(np.float32)
    alpha = pixels[..., 3:4].astype(np.float32) / 255.0
    bg = np.asarray(background, dtype=np.float32).reshape(1, 1, 3)
    out = np.rint(rgb * alpha + bg * (1.0 - alpha)).astype(np.uint8)
    return cv2.cvtColor(out, cv2.COLOR_RGB2BGR)


def _to_percent(quality: float) -> int:
    return int(max(1, min(100, round(quality * 100))))


class Codec:
    """Base class for the encode boundary of one container format."""

    name = ""
    extension = ""
    supports_progressive = False

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        raise NotImplementedError

    def encode_progressive(self, pixels: PixelBuffer, quality: float) -> bytes:
        raise EncodeFailure(f"{self.name} has no progressive variant")

    def _imencode(self, image: np.ndarray, params: List[int]) -> bytes:
        try:
            success, encoded = cv2.imencode(self.extension, image, params)
        except cv2.error as e:
            raise EncodeFailure(f"{self.name} encoder rejected parameters {params}: {e}", cause=e) from e
        if not success:
            raise EncodeFailure(f"{self.name} encoder returned no data for parameters {params}")
        return encoded.tobytes()

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class JpegCodec(Codec):
    """JPEG via OpenCV; transparent pixels are composited onto ``background``."""

    name = "jpeg"
    extension = ".jpg"
    supports_progressive = True

    def __init__(self, background: Tuple[int, int, int] = (255, 255, 255)):
        self.background = background

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        image = flatten_alpha(pixels.pixels, self.background)
        return self._imencode(image, [cv2.IMWRITE_JPEG_QUALITY, _to_percent(quality)])

    def encode_progressive(self, pixels: PixelBuffer, quality: float) -> bytes:
        image = flatten_alpha(pixels.pixels, self.background)
        return self._imencode(image, [
            cv2.IMWRITE_JPEG_QUALITY, _to_percent(quality),
            cv2.IMWRITE_JPEG_PROGRESSIVE, 1,
            cv2.IMWRITE_JPEG_OPTIMIZE, 1,
        ])


class WebpCodec(Codec):
    name = "webp"
    extension = ".webp"

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        return self._imencode(rgba_to_bgra(pixels.pixels), [cv2.IMWRITE_WEBP_QUALITY, _to_percent(quality)])


class PngCodec(Codec):
    """
    Palette/lossless PNG codec.

    PNG has no quality knob of its own, so quality is mapped onto a
    posterisation step per channel: 1.0 keeps every level (lossless),
    lower qualities keep 128, 64, 32 or 16 levels. Deflate always runs at
    maximum effort.
    """

    name = "png"
    extension = ".png"
    MAX_SHIFT = 4

    def __init__(self, compression_level: int = 9):
        self.compression_level = compression_level

    def step_for(self, quality: float) -> int:
        shift = int(round((1.0 - max(0.0, min(1.0, quality))) * self.MAX_SHIFT))
        return 1 << shift

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        step = self.step_for(quality)
        image = rgba_to_bgra(pixels.pixels)
        if step > 1:
            image[..., :3] = (image[..., :3] // step) * step
        return self._imencode(image, [cv2.IMWRITE_PNG_COMPRESSION, self.compression_level])


CODECS: Dict[str, Type[Codec]] = {
    "jpeg": JpegCodec,
    "jpg": JpegCodec,
    "png": PngCodec,
    "webp": WebpCodec,
}


def codec_for(fmt: str) -> Codec:
    """
    Instantiate the codec registered for a format name.

    Raises:
        UnsupportedFormat: If no codec handles ``fmt``.
    """
    try:
        codec_cls = CODECS[fmt.lower().lstrip(".")]
    except KeyError:
        raise UnsupportedFormat(f"No codec registered for format '{fmt}'") from None
    return codec_cls()
