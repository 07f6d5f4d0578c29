"""
Content classifier.

Samples a PixelBuffer on a coarse grid and sorts it into one of four kinds
that drive the quantization strategy:

    LINEART       mostly black/white/gray with sharp edges
    PHOTOGRAPHIC  many colours, few hard edges
    GRAPHICAL     few colours, many edges, or transparency
    MIXED         anything else

The classifier is pure: the same buffer and stride always give the same
ClassificationResult.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from .buffer import PixelBuffer
from .config import ClassifierThresholds
from .errors import InvalidInput
from .logger_setup import setup_logger

log = setup_logger("classifier")

DEFAULT_THRESHOLDS = ClassifierThresholds()


class ContentKind(Enum):
    LINEART = "lineart"
    PHOTOGRAPHIC = "photographic"
    GRAPHICAL = "graphical"
    MIXED = "mixed"


@dataclass(frozen=True)
class ClassificationResult:
    kind: ContentKind
    color_ratio: float
    edge_ratio: float
    black_white_ratio: float
    gray_ratio: float
    has_transparency: bool
    sampled_pixels: int


def sample_grid(pixels: np.ndarray, limit: int) -> np.ndarray:
    """Nearest-neighbour resample to at most ``limit`` pixels per axis."""
    height, width = pixels.shape[:2]
    sample_h, sample_w = min(height, limit), min(width, limit)
    rows = (np.arange(sample_h) * height) // sample_h
    cols = (np.arange(sample_w) * width) // sample_w
    return pixels[rows[:, None], cols[None, :]]


def decide_kind(
        color_ratio: float,
        edge_ratio: float,
        black_white_ratio: float,
        gray_ratio: float,
        has_transparency: bool,
        thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS
) -> ContentKind:
    """Decision table, evaluated in order."""
    t = thresholds
    mostly_monochrome = (
        black_white_ratio > t.lineart_bw_ratio
        or black_white_ratio + gray_ratio > t.lineart_bw_gray_ratio
    )
    if mostly_monochrome and edge_ratio > t.lineart_min_edges:
        return ContentKind.LINEART
    if color_ratio > t.photo_min_colors and edge_ratio < t.photo_max_edges:
        return ContentKind.PHOTOGRAPHIC
    if color_ratio < t.graphical_max_colors or edge_ratio > t.graphical_min_edges or has_transparency:
        return ContentKind.GRAPHICAL
    return ContentKind.MIXED


def classify(
        buffer: PixelBuffer,
        sample_stride: Optional[int] = None,
        thresholds: ClassifierThresholds = DEFAULT_THRESHOLDS
) -> ClassificationResult:
    """
    Classify the content of a buffer.

    Args:
        buffer (PixelBuffer): Image to analyse. Not modified.
        sample_stride (int, optional): Distance between sampled grid points
            on the resampled image. Defaults to 1/50 of its shorter side.
        thresholds (ClassifierThresholds): Tunable levels and ratios.

    Returns:
        ClassificationResult: Ratios over the sampled points and the decided kind.

    Raises:
        InvalidInput: If ``buffer`` is not a usable PixelBuffer or the stride is not positive.
    """
    if not isinstance(buffer, PixelBuffer):
        raise InvalidInput(f"Expected a PixelBuffer, got {type(buffer).__name__}")
    t = thresholds
    sample = sample_grid(buffer.pixels, t.sample_limit).astype(np.int16)
    sample_h, sample_w = sample.shape[:2]

    stride = sample_stride if sample_stride is not None else max(1, min(sample_h, sample_w) // t.grid_divisor)
    if stride < 1:
        raise InvalidInput(f"Sample stride must be positive, got {stride}")

    grid = sample[::stride, ::stride]
    total = grid.shape[0] * grid.shape[1]
    r, g, b, a = grid[..., 0], grid[..., 1], grid[..., 2], grid[..., 3]

    has_transparency = bool((a < 255).any())
    visible = a > 0

    black = visible & (r < t.black_level) & (g < t.black_level) & (b < t.black_level)
    white = visible & ~black & (r > t.white_level) & (g > t.white_level) & (b > t.white_level)
    near_gray = (np.abs(r - g) < t.gray_delta) & (np.abs(r - b) < t.gray_delta) & (np.abs(g - b) < t.gray_delta)
    gray = visible & ~black & ~white & near_gray

    buckets = 256 // t.color_bucket + 1
    q = grid[..., :3].astype(np.int32) // t.color_bucket
    keys = (q[..., 0] * buckets + q[..., 1]) * buckets + q[..., 2]
    unique_colors = int(np.unique(keys[visible]).size)

    edges = 0
    if grid.shape[0] > 1 and grid.shape[1] > 1:
        here = grid[:-1, :-1, :3]
        right_diff = np.abs(here - grid[:-1, 1:, :3]).sum(axis=-1)
        bottom_diff = np.abs(here - grid[1:, :-1, :3]).sum(axis=-1)
        is_edge = visible[:-1, :-1] & ((right_diff > t.edge_delta) | (bottom_diff > t.edge_delta))
        edges = int(is_edge.sum())

    color_ratio = unique_colors / total
    edge_ratio = edges / total
    black_white_ratio = int(black.sum() + white.sum()) / total
    gray_ratio = int(gray.sum()) / total

    kind = decide_kind(color_ratio, edge_ratio, black_white_ratio, gray_ratio, has_transparency, t)
    log.debug(
        f"Classified {buffer.width}x{buffer.height} as {kind.value}: colors={color_ratio:.3f} "
        f"edges={edge_ratio:.3f} bw={black_white_ratio:.3f} gray={gray_ratio:.3f} "
        f"alpha={has_transparency} ({total} samples, stride {stride})"
    )
    return ClassificationResult(
        kind=kind,
        color_ratio=color_ratio,
        edge_ratio=edge_ratio,
        black_white_ratio=black_white_ratio,
        gray_ratio=gray_ratio,
        has_transparency=has_transparency,
        sampled_pixels=total,
    )
