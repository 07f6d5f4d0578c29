"""
Tile scheduler.

Large buffers are cut into square tiles that are quantized independently,
in batches, through the worker pool. A tile that times out or fails in a
worker is redone synchronously in-process, so one bad tile never loses the
image. Results are copied into a fresh output buffer keyed by tile
position, so completion order does not matter.
"""

import asyncio
import math
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from .buffer import CHANNELS, PixelBuffer, Tile
from .classifier import ContentKind
from .config import QuantizationParams, TilingConfig
from .errors import CompressionError, WorkerError
from .logger_setup import setup_logger
from .quantization import quantize_pixels
from .worker_pool import MessageKind, TileJob, TileTask, WorkerMessage, WorkerPool

log = setup_logger("tiling")

Region = Tuple[int, int, int, int]
ProgressFn = Callable[[int], None]


def reassemble(width: int, height: int, pieces: Iterable[Tuple[Tile, np.ndarray]]) -> PixelBuffer:
    """
    Write the core of every processed tile into a new buffer.

    Args:
        width (int): Output width.
        height (int): Output height.
        pieces: ``(tile, processed_pixels)`` pairs, in any order.

    Raises:
        CompressionError: If the tiles do not cover the output exactly once.
    """
    out = np.zeros((height, width, CHANNELS), dtype=np.uint8)
    covered = np.zeros((height, width), dtype=np.uint8)
    for tile, processed in pieces:
        out[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width] = tile.core(processed)
        covered[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width] += 1
    if not (covered == 1).all():
        raise CompressionError(f"Tiles do not cover the {width}x{height} buffer exactly once")
    return PixelBuffer(width, height, out)


class TileScheduler:
    """
    Partitions buffers and drives tile quantization.

    Args:
        config (TilingConfig, optional): Thresholds, tile sizes, batching.
        params (QuantizationParams, optional): Passed to every tile pass.
    """

    def __init__(self, config: Optional[TilingConfig] = None, params: Optional[QuantizationParams] = None):
        self.config = config or TilingConfig()
        self.params = params or QuantizationParams()

    def needs_tiling(self, buffer: PixelBuffer) -> bool:
        return buffer.area >= self.config.tiling_threshold_pixels

    def tile_edge(self, width: int, height: int) -> int:
        """Smaller tiles for bigger images."""
        edge = self.config.default_tile_edge
        for width_above, height_above, bracket_edge in self.config.edge_brackets:
            if width > width_above or height > height_above:
                edge = bracket_edge
                break
        return max(edge, self.config.min_tile_edge)

    def regions(self, buffer: PixelBuffer) -> List[Region]:
        """Whole buffer, or four quadrants for very large or very finely tiled images."""
        width, height = buffer.width, buffer.height
        edge = self.tile_edge(width, height)
        tiles = math.ceil(width / edge) * math.ceil(height / edge)
        if tiles <= self.config.max_tiles_single_pass and buffer.area <= self.config.extreme_area_pixels:
            return [(0, 0, width, height)]
        half_w, half_h = math.ceil(width / 2), math.ceil(height / 2)
        quadrants = [
            (0, 0, half_w, half_h),
            (half_w, 0, width - half_w, half_h),
            (0, half_h, half_w, height - half_h),
            (half_w, half_h, width - half_w, height - half_h),
        ]
        return [q for q in quadrants if q[2] > 0 and q[3] > 0]

    def partition(
            self,
            buffer: PixelBuffer,
            tile_edge: int,
            overlap: int = 0,
            region: Optional[Region] = None
    ) -> List[Tile]:
        """
        Cut ``region`` (default: the whole buffer) into tiles.

        Tile cores are disjoint. With ``overlap`` each tile also carries up to
        that many neighbouring pixels on every side, taken from the whole
        buffer; the padding is only read, never written back.
        """
        if tile_edge < 1:
            raise ValueError(f"Tile edge must be positive, got {tile_edge}")
        pixels = buffer.pixels
        full_h, full_w = pixels.shape[:2]
        rx, ry, rw, rh = region or (0, 0, full_w, full_h)

        tiles = []
        for y in range(ry, ry + rh, tile_edge):
            h = min(tile_edge, ry + rh - y)
            for x in range(rx, rx + rw, tile_edge):
                w = min(tile_edge, rx + rw - x)
                pad_left, pad_top = min(overlap, x), min(overlap, y)
                pad_right = min(overlap, full_w - (x + w))
                pad_bottom = min(overlap, full_h - (y + h))
                view = pixels[y - pad_top:y + h + pad_bottom, x - pad_left:x + w + pad_right]
                tiles.append(Tile(x, y, w, h, view, pad_left, pad_top, pad_right, pad_bottom))
        return tiles

    async def process(
            self,
            buffer: PixelBuffer,
            kind: ContentKind,
            pool: Optional[WorkerPool] = None,
            task: Optional[TileTask] = None,
            local: Optional[TileTask] = None,
            on_progress: Optional[ProgressFn] = None
    ) -> PixelBuffer:
        """
        Quantize ``buffer`` tile by tile and return the reassembled result.

        Args:
            buffer (PixelBuffer): Source; only read.
            kind (ContentKind): Selects the quantization pass.
            pool (WorkerPool, optional): Where tiles are dispatched. Without a
                pool every tile runs locally.
            task (callable, optional): Pass executed in the worker instead of
                the default one for ``kind``.
            local (callable, optional): Synchronous fallback pass. Defaults to
                the pass for ``kind``.
            on_progress (callable, optional): Receives 0..100 after each tile.

        Returns:
            PixelBuffer: A new buffer with the same dimensions.
        """
        local = local or quantize_pixels
        overlap = self.config.adaptive_overlap if kind is ContentKind.MIXED else 0
        edge = self.tile_edge(buffer.width, buffer.height)

        tiles = []
        for region in self.regions(buffer):
            tiles.extend(self.partition(buffer, edge, overlap, region))
        log.info(
            f"Tiling {buffer.width}x{buffer.height} into {len(tiles)} tiles of {edge}px "
            f"(batch {self.config.batch_size}, overlap {overlap})"
        )

        results = {}
        done = 0
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(tiles), batch_size):
            batch = tiles[start:start + batch_size]
            processed = await asyncio.gather(*(self._run_tile(tile, kind, pool, task, local) for tile in batch))
            for tile, pixels in zip(batch, processed):
                results[tile.key] = (tile, pixels)
                done += 1
                if on_progress is not None:
                    on_progress(done * 100 // len(tiles))

        return reassemble(buffer.width, buffer.height, results.values())

    async def _run_tile(
            self,
            tile: Tile,
            kind: ContentKind,
            pool: Optional[WorkerPool],
            task: Optional[TileTask],
            local: TileTask
    ) -> np.ndarray:
        if pool is not None and not pool.closed:
            message = WorkerMessage(
                MessageKind.COMPRESS,
                task_id=f"tile-{tile.x}-{tile.y}",
                payload=TileJob(tile.pixels, kind, self.params, task),
            )
            try:
                reply = await pool.submit(message, timeout=self.config.tile_timeout)
                return reply.payload
            except WorkerError as e:
                log.warning(f"Tile ({tile.x}, {tile.y}) processed locally after worker failure: {e}")

        pixels = tile.pixels.copy()
        await asyncio.to_thread(local, pixels, kind, self.params)
        return pixels
