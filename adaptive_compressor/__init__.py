"""
Adaptive Image Compressor Package

Compresses images to a byte budget: content-aware quantization, tiled
parallel processing for large images, binary search over encoder quality
and a chain of simpler fallback strategies. Includes colored console
logging and file logging.
"""

from .async_compressor import compress_folder_async
from .buffer import PixelBuffer, Tile
from .classifier import ClassificationResult, ContentKind, classify
from .codecs import Codec, JpegCodec, PngCodec, WebpCodec, codec_for
from .config import (
    KB,
    MB,
    ClassifierThresholds,
    CompressorConfig,
    DeadlineConfig,
    PoolConfig,
    QuantizationParams,
    SearchParams,
    TilingConfig,
    adaptive_target_size,
)
from .errors import (
    CompressionError,
    EncodeFailure,
    InvalidInput,
    SearchCancelled,
    UnsupportedFormat,
    WorkerError,
    WorkerTaskError,
    WorkerTimeout,
    WorkerUnavailable,
)
from .logger_setup import setup_logger
from .orchestrator import CompressionResult, CompressOptions, FallbackOrchestrator, State, Strategy, compress
from .quantization import optimize_for_palette, quantize, quantize_aggressive, quantize_lineart_aggressive
from .search import CompressionAttempt, CompressionTarget, SearchOutcome, search, search_quality
from .source import ImageSource
from .tiling import TileScheduler, reassemble
from .worker_pool import MessageKind, WorkerMessage, WorkerPool, WorkerReply

__all__ = [
    "compress",
    "compress_folder_async",
    "FallbackOrchestrator",
    "CompressOptions",
    "CompressionResult",
    "State",
    "Strategy",
    "ImageSource",
    "PixelBuffer",
    "Tile",
    "classify",
    "ClassificationResult",
    "ContentKind",
    "quantize",
    "quantize_lineart_aggressive",
    "quantize_aggressive",
    "optimize_for_palette",
    "search",
    "search_quality",
    "CompressionTarget",
    "CompressionAttempt",
    "SearchOutcome",
    "TileScheduler",
    "reassemble",
    "WorkerPool",
    "WorkerMessage",
    "WorkerReply",
    "MessageKind",
    "Codec",
    "JpegCodec",
    "PngCodec",
    "WebpCodec",
    "codec_for",
    "KB",
    "MB",
    "CompressorConfig",
    "ClassifierThresholds",
    "QuantizationParams",
    "SearchParams",
    "TilingConfig",
    "PoolConfig",
    "DeadlineConfig",
    "adaptive_target_size",
    "CompressionError",
    "InvalidInput",
    "UnsupportedFormat",
    "EncodeFailure",
    "SearchCancelled",
    "WorkerError",
    "WorkerUnavailable",
    "WorkerTimeout",
    "WorkerTaskError",
    "setup_logger",
]
