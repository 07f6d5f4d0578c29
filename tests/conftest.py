import threading

import numpy as np
import pytest

from adaptive_compressor.buffer import PixelBuffer
from adaptive_compressor.codecs import Codec
from adaptive_compressor.config import PoolConfig
from adaptive_compressor.worker_pool import WorkerPool


class LinearCodec(Codec):
    """Deterministic codec: output size depends on quality only."""

    name = "fake"
    extension = ".fake"

    def __init__(self, base: int = 1000, span: int = 9000):
        self.base = base
        self.span = span
        self.calls = []
        self._lock = threading.Lock()

    def size_at(self, quality: float) -> int:
        return int(self.base + self.span * quality)

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        with self._lock:
            self.calls.append(quality)
        return b"x" * self.size_at(quality)


class FailingCodec(Codec):
    name = "fake"
    extension = ".fake"

    def __init__(self, fail_after: int = 0):
        self.fail_after = fail_after
        self.calls = 0

    def encode(self, pixels: PixelBuffer, quality: float) -> bytes:
        self.calls += 1
        if self.calls > self.fail_after:
            raise RuntimeError("codec exploded")
        return b"x" * 20000


def checkerboard(width: int, height: int, cell: int, a, b) -> PixelBuffer:
    ys, xs = np.mgrid[0:height, 0:width]
    mask = ((ys // cell) + (xs // cell)) % 2 == 0
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[mask] = a
    pixels[~mask] = b
    return PixelBuffer(width, height, pixels)


def noise(width: int, height: int, seed: int = 7, alpha: bool = False) -> PixelBuffer:
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
    if not alpha:
        pixels[..., 3] = 255
    return PixelBuffer(width, height, pixels)


@pytest.fixture
def linear_codec():
    return LinearCodec()


@pytest.fixture
def black_buffer():
    return PixelBuffer.blank(50, 50, (0, 0, 0, 255))


@pytest.fixture
def checker_buffer():
    return checkerboard(512, 512, 32, (200, 30, 30, 255), (30, 30, 200, 255))


@pytest.fixture
def noise_buffer():
    return noise(64, 64)


@pytest.fixture
async def thread_pool():
    pool = WorkerPool(PoolConfig(max_workers=4, executor_kind="thread", poll_interval=0.01, acquire_timeout=2.0))
    await pool.start()
    yield pool
    pool.shutdown(wait=False)
