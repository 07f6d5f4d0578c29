"""
Tunable constants and configuration objects.

The numeric thresholds below were tuned empirically. They are kept as named
module-level defaults and grouped into frozen dataclasses so callers can
override any of them without touching the algorithms:

    config = CompressorConfig().with_overrides(
        tiling=TilingConfig(tiling_threshold_pixels=1_000_000),
    )
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

KB = 1024
MB = 1024 * 1024

# =====================
# Input limits / targets
# =====================
MAX_INPUT_BYTES = 50 * MB
MAX_BUFFER_BYTES = 120_000_000 * 4  # 120 MP of RGBA
DEFAULT_TARGET_SIZE = 100 * KB
ACCEPTABLE_SIZE = 500 * KB

# (source size above, target size) brackets, largest first
JPEG_TARGET_BRACKETS = ((15 * MB, 300 * KB), (8 * MB, 250 * KB), (3 * MB, 200 * KB))
PNG_TARGET_BRACKETS = ((15 * MB, 400 * KB), (8 * MB, 300 * KB), (3 * MB, 250 * KB))
PNG_TARGET_BASE = 200 * KB

# ==========
# Classifier
# ==========
SAMPLE_LIMIT = 300
SAMPLE_GRID_DIVISOR = 50
BLACK_LEVEL = 30
WHITE_LEVEL = 225
GRAY_DELTA = 20
COLOR_BUCKET = 5
EDGE_DELTA = 100

# ============
# Quantization
# ============
LINEART_BLACK = 30
LINEART_WHITE = 200
LINEART_GRAY_LEVELS = 4
LINEART_COLOR_STEP = 32
AGGRESSIVE_LINEART_BLACK = 40
AGGRESSIVE_LINEART_GRAY = 150
AGGRESSIVE_LINEART_MID = 128
ALPHA_THRESHOLD = 128

# ======
# Search
# ======
MIN_QUALITY = 0.1
MAX_QUALITY = 0.95
QUALITY_PRECISION = 0.01
COARSE_TOLERANCE = 0.03

# ======
# Tiling
# ======
TILING_THRESHOLD_PIXELS = 4_000_000
TILE_BATCH_SIZE = 4
TILE_TIMEOUT = 3.0
MAX_TILES_SINGLE_PASS = 36
EXTREME_AREA_PIXELS = 30_000_000


def default_max_workers() -> int:
    """Pool bound: between 2 and 4 depending on available cores."""
    return min(4, max(2, os.cpu_count() or 2))


@dataclass(frozen=True)
class ClassifierThresholds:
    sample_limit: int = SAMPLE_LIMIT
    grid_divisor: int = SAMPLE_GRID_DIVISOR
    black_level: int = BLACK_LEVEL
    white_level: int = WHITE_LEVEL
    gray_delta: int = GRAY_DELTA
    color_bucket: int = COLOR_BUCKET
    edge_delta: int = EDGE_DELTA
    lineart_bw_ratio: float = 0.8
    lineart_bw_gray_ratio: float = 0.9
    lineart_min_edges: float = 0.05
    photo_min_colors: float = 0.5
    photo_max_edges: float = 0.1
    graphical_max_colors: float = 0.2
    graphical_min_edges: float = 0.2


@dataclass(frozen=True)
class QuantizationParams:
    lineart_black: int = LINEART_BLACK
    lineart_white: int = LINEART_WHITE
    lineart_gray_delta: int = GRAY_DELTA
    lineart_gray_levels: int = LINEART_GRAY_LEVELS
    lineart_color_step: int = LINEART_COLOR_STEP
    aggressive_lineart_black: int = AGGRESSIVE_LINEART_BLACK
    aggressive_lineart_gray: int = AGGRESSIVE_LINEART_GRAY
    aggressive_lineart_mid: int = AGGRESSIVE_LINEART_MID
    alpha_threshold: int = ALPHA_THRESHOLD
    photographic_step: int = 4
    graphical_step: int = 8
    adaptive_edge_step: int = 2
    adaptive_flat_step: int = 6
    adaptive_edge_delta: int = EDGE_DELTA
    aggressive_step: int = 16
    palette_small_step: int = 8
    palette_large_step: int = 16
    palette_large_pixels: int = 1_000_000


@dataclass(frozen=True)
class SearchParams:
    min_quality: float = MIN_QUALITY
    max_quality: float = MAX_QUALITY
    precision: float = QUALITY_PRECISION
    coarse_tolerance: float = COARSE_TOLERANCE
    noise_floor_bytes: int = 64
    noise_fraction: float = 0.01


@dataclass(frozen=True)
class TilingConfig:
    tiling_threshold_pixels: int = TILING_THRESHOLD_PIXELS
    # (width above, height above, edge) brackets, finest first
    edge_brackets: Tuple[Tuple[int, int, int], ...] = ((6000, 4000, 512), (4000, 3000, 768))
    default_tile_edge: int = 1024
    min_tile_edge: int = 64
    batch_size: int = TILE_BATCH_SIZE
    tile_timeout: float = TILE_TIMEOUT
    max_tiles_single_pass: int = MAX_TILES_SINGLE_PASS
    extreme_area_pixels: int = EXTREME_AREA_PIXELS
    adaptive_overlap: int = 1


@dataclass(frozen=True)
class PoolConfig:
    max_workers: int = field(default_factory=default_max_workers)
    executor_kind: str = "process"  # "process" | "thread"
    init_timeout: float = 10.0
    poll_interval: float = 0.05
    acquire_timeout: float = 10.0


@dataclass(frozen=True)
class DeadlineConfig:
    # (source size above, seconds) brackets, largest first
    brackets: Tuple[Tuple[int, float], ...] = ((15 * MB, 120.0), (5 * MB, 60.0))
    base_seconds: float = 30.0
    primary_share: float = 0.6
    secondary_share: float = 0.75
    # (source size above, factor) brackets for the secondary downscale
    downscale_brackets: Tuple[Tuple[int, float], ...] = ((15 * MB, 0.6), (8 * MB, 0.7), (5 * MB, 0.8))
    default_downscale: float = 0.9

    def deadline_for(self, source_size: int) -> float:
        for threshold, seconds in self.brackets:
            if source_size > threshold:
                return seconds
        return self.base_seconds

    def downscale_for(self, source_size: int) -> float:
        for threshold, factor in self.downscale_brackets:
            if source_size > threshold:
                return factor
        return self.default_downscale


@dataclass(frozen=True)
class CompressorConfig:
    max_input_bytes: int = MAX_INPUT_BYTES
    max_buffer_bytes: int = MAX_BUFFER_BYTES
    acceptable_size: int = ACCEPTABLE_SIZE
    classifier: ClassifierThresholds = field(default_factory=ClassifierThresholds)
    quantization: QuantizationParams = field(default_factory=QuantizationParams)
    search: SearchParams = field(default_factory=SearchParams)
    tiling: TilingConfig = field(default_factory=TilingConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    deadline: DeadlineConfig = field(default_factory=DeadlineConfig)

    def with_overrides(self, **changes) -> "CompressorConfig":
        """Return a copy with the given top-level fields replaced."""
        return replace(self, **changes)


def adaptive_target_size(source_size: int, fmt: Optional[str] = None) -> int:
    """
    Default byte target for a source of the given size.

    Larger inputs are allowed a larger output so detail survives. PNG
    targets are higher than JPEG/WebP ones because the palette codec has
    less room to trade quality for size.

    Args:
        source_size (int): Encoded size of the input in bytes.
        fmt (str, optional): Container format of the output ("jpeg", "png", "webp").

    Returns:
        int: Target size in bytes.
    """
    if (fmt or "").lower() == "png":
        brackets, base = PNG_TARGET_BRACKETS, PNG_TARGET_BASE
    else:
        brackets, base = JPEG_TARGET_BRACKETS, DEFAULT_TARGET_SIZE
    for threshold, target in brackets:
        if source_size > threshold:
            return target
    return base
