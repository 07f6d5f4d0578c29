"""
Quantization engine.

In-place pixel transforms that lower colour and alpha entropy before
encoding. Every pass works on a uint8 (H, W, 4) RGBA array and keeps its
shape; the ``quantize*`` wrappers accept a PixelBuffer, the ``*_pixels``
functions accept the raw array so tile workers can run them on tile data.

Fully transparent pixels keep their colour values unless a pass says
otherwise. Passes are not idempotent across different targets, so each is
applied at most once per compression attempt.
"""

from typing import Callable, Dict

import numpy as np

from .buffer import PixelBuffer
from .classifier import ContentKind
from .config import QuantizationParams

DEFAULT_PARAMS = QuantizationParams()

PixelPass = Callable[[np.ndarray, QuantizationParams], None]


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def binarize_alpha(pixels: np.ndarray, threshold: int) -> None:
    alpha = pixels[..., 3]
    alpha[...] = np.where(alpha < threshold, 0, 255)


def posterize(pixels: np.ndarray, step, visible: np.ndarray) -> None:
    """Floor RGB channels of visible pixels to multiples of ``step`` (scalar or per-pixel array)."""
    rgb = pixels[..., :3].astype(np.int16)
    step = np.asarray(step, dtype=np.int16)
    if step.ndim == 2:
        step = step[..., None]
    quantized = (rgb // step) * step
    pixels[..., :3] = np.where(visible[..., None], quantized, rgb).astype(np.uint8)


def quantize_lineart_pixels(pixels: np.ndarray, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    """
    Base line-art pass.

    Near-black goes to black, near-white to white, near-gray pixels are
    snapped to ``lineart_gray_levels`` evenly spaced grays and the remaining
    colours are rounded to ``lineart_color_step`` per channel. Alpha is kept.
    """
    p = params
    visible = pixels[..., 3] != 0
    rgb = pixels[..., :3].astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]

    black = visible & (r < p.lineart_black) & (g < p.lineart_black) & (b < p.lineart_black)
    white = visible & ~black & (r > p.lineart_white) & (g > p.lineart_white) & (b > p.lineart_white)
    near_gray = (
        (np.abs(r - g) < p.lineart_gray_delta)
        & (np.abs(r - b) < p.lineart_gray_delta)
        & (np.abs(g - b) < p.lineart_gray_delta)
    )
    gray = visible & ~black & ~white & near_gray
    colored = visible & ~black & ~white & ~gray

    out = rgb.copy()
    out[black] = 0
    out[white] = 255

    level = 255.0 / (p.lineart_gray_levels - 1)
    mean = _round_half_up(rgb.sum(axis=-1) / 3.0)
    gray_value = _round_half_up(mean / level) * level
    out[gray] = gray_value[gray].astype(np.int16)[:, None]

    step = p.lineart_color_step
    rounded = np.minimum(_round_half_up(rgb / step) * step, 255).astype(np.int16)
    out[colored] = rounded[colored]

    pixels[..., :3] = out.astype(np.uint8)


def quantize_lineart_aggressive_pixels(pixels: np.ndarray, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    """Second line-art pass: binary alpha and three tones (black, mid gray, white)."""
    p = params
    binarize_alpha(pixels, p.alpha_threshold)
    visible = pixels[..., 3] != 0
    brightness = pixels[..., :3].astype(np.int16).sum(axis=-1) / 3.0
    tone = np.where(
        brightness < p.aggressive_lineart_black,
        0,
        np.where(brightness < p.aggressive_lineart_gray, p.aggressive_lineart_mid, 255),
    ).astype(np.uint8)
    pixels[visible, :3] = tone[visible][:, None]


def _uniform_pass(step_of: Callable[[QuantizationParams], int]) -> PixelPass:
    def run(pixels: np.ndarray, params: QuantizationParams = DEFAULT_PARAMS) -> None:
        visible = pixels[..., 3] != 0
        posterize(pixels, step_of(params), visible)
        binarize_alpha(pixels, params.alpha_threshold)

    return run


quantize_photographic_pixels = _uniform_pass(lambda p: p.photographic_step)
quantize_graphical_pixels = _uniform_pass(lambda p: p.graphical_step)
quantize_aggressive_pixels = _uniform_pass(lambda p: p.aggressive_step)


def edge_map(pixels: np.ndarray, delta: int, alpha_threshold: int) -> np.ndarray:
    """
    Boolean map of interior, mostly opaque pixels whose largest summed
    channel difference to a 4-neighbour exceeds ``delta``.
    Border pixels are never edges.
    """
    height, width = pixels.shape[:2]
    edges = np.zeros((height, width), dtype=bool)
    if height < 3 or width < 3:
        return edges
    rgb = pixels[..., :3].astype(np.int16)
    center = rgb[1:-1, 1:-1]
    neighbours = (rgb[1:-1, :-2], rgb[1:-1, 2:], rgb[:-2, 1:-1], rgb[2:, 1:-1])
    max_diff = np.max([np.abs(center - n).sum(axis=-1) for n in neighbours], axis=0)
    opaque = pixels[1:-1, 1:-1, 3] >= alpha_threshold
    edges[1:-1, 1:-1] = opaque & (max_diff > delta)
    return edges


def quantize_adaptive_pixels(pixels: np.ndarray, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    """Fine steps on edges, coarse steps on flat areas, then binary alpha."""
    p = params
    edges = edge_map(pixels, p.adaptive_edge_delta, p.alpha_threshold)
    visible = pixels[..., 3] != 0
    steps = np.where(edges, p.adaptive_edge_step, p.adaptive_flat_step)
    posterize(pixels, steps, visible)
    binarize_alpha(pixels, p.alpha_threshold)


def optimize_for_palette_pixels(pixels: np.ndarray, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    """
    Single pass used by the simpler fallback strategy.

    Mostly transparent pixels become fully transparent black, everything
    else opaque; RGB is floored to a step that grows with image area.
    """
    p = params
    height, width = pixels.shape[:2]
    step = p.palette_large_step if height * width > p.palette_large_pixels else p.palette_small_step
    clear = pixels[..., 3] < p.alpha_threshold
    pixels[clear] = 0
    pixels[~clear, 3] = 255
    posterize(pixels, step, ~clear)


KIND_PASSES: Dict[ContentKind, PixelPass] = {
    ContentKind.LINEART: quantize_lineart_pixels,
    ContentKind.PHOTOGRAPHIC: quantize_photographic_pixels,
    ContentKind.GRAPHICAL: quantize_graphical_pixels,
    ContentKind.MIXED: quantize_adaptive_pixels,
}


def quantize_pixels(pixels: np.ndarray, kind: ContentKind, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    try:
        kind_pass = KIND_PASSES[kind]
    except KeyError:
        raise ValueError(f"No quantization pass registered for {kind!r}") from None
    kind_pass(pixels, params)


def quantize(buffer: PixelBuffer, kind: ContentKind, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    """
    Apply the pass chosen for ``kind`` to ``buffer`` in place.

    Args:
        buffer (PixelBuffer): Buffer owned by the caller; mutated.
        kind (ContentKind): Classification of the buffer.
        params (QuantizationParams): Thresholds and steps.
    """
    quantize_pixels(buffer.pixels, kind, params)


def quantize_lineart_aggressive(buffer: PixelBuffer, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    quantize_lineart_aggressive_pixels(buffer.pixels, params)


def quantize_aggressive(buffer: PixelBuffer, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    quantize_aggressive_pixels(buffer.pixels, params)


def optimize_for_palette(buffer: PixelBuffer, params: QuantizationParams = DEFAULT_PARAMS) -> None:
    optimize_for_palette_pixels(buffer.pixels, params)
