import logging
import threading
import time

import numpy as np
import pytest

import adaptive_compressor.orchestrator as orchestrator_module
import adaptive_compressor.worker_pool as worker_pool_module
from adaptive_compressor.buffer import PixelBuffer
from adaptive_compressor.classifier import ContentKind, classify
from adaptive_compressor.codecs import JpegCodec, PngCodec
from adaptive_compressor.config import KB, CompressorConfig, PoolConfig, TilingConfig
from adaptive_compressor.errors import CompressionError, EncodeFailure, InvalidInput
from adaptive_compressor.orchestrator import (
    CompressOptions,
    FallbackOrchestrator,
    Strategy,
    compress,
    downscale,
)
from adaptive_compressor.quantization import quantize
from adaptive_compressor.source import ImageSource, decode_image

from conftest import FailingCodec, noise


def fake_source(buffer, codec):
    return ImageSource.from_buffer(buffer, codec)


async def test_small_black_image_end_to_end(black_buffer):
    source = ImageSource.from_bytes(PngCodec().encode(black_buffer, 1.0))
    result = await compress(source)
    assert result.met_target
    assert result.size < 400
    assert decode_image(result.data) == black_buffer


async def test_source_meeting_target_is_emitted_unchanged(linear_codec, noise_buffer):
    source = fake_source(noise_buffer, linear_codec)
    result = await compress(source, CompressOptions(target_size_bytes=source.size, codec=linear_codec))
    assert result.strategy is Strategy.PASSTHROUGH
    assert result.data == source.data
    assert result.quality == 1.0


async def test_primary_meets_target(linear_codec, noise_buffer):
    source = fake_source(noise_buffer, linear_codec)
    result = await compress(source, CompressOptions(target_size_bytes=6000, codec=linear_codec))
    assert result.met_target
    assert result.strategy is Strategy.PRIMARY
    assert result.size <= 6000
    assert (result.width, result.height) == (64, 64)
    assert result.final_bytes is result.data
    assert result.final_quality == result.quality
    assert result.within_acceptable


async def test_unreachable_target_emits_minimum_quality_encoding(linear_codec, noise_buffer):
    source = fake_source(noise_buffer, linear_codec)
    options = CompressOptions(target_size_bytes=500, codec=linear_codec, preserve_dimensions=True)
    result = await compress(source, options)
    assert not result.met_target
    assert result.final_bytes == b"x" * linear_codec.size_at(0.1)
    assert result.final_quality == pytest.approx(0.1)
    # a completed primary is emitted at minimum quality without fallbacks
    assert result.strategy is Strategy.PRIMARY
    assert (result.width, result.height) == (64, 64)


async def test_unreachable_jpeg_target_keeps_dimensions_and_minimum_quality():
    buffer = noise(64, 64, seed=5)
    source = ImageSource.from_bytes(JpegCodec().encode(buffer, 0.95))
    result = await compress(source, CompressOptions(target_size_bytes=100))

    quantized = source.decode()
    kind = classify(quantized).kind
    assert kind is not ContentKind.LINEART
    quantize(quantized, kind)
    expected = JpegCodec().encode(quantized, CompressorConfig().search.min_quality)

    assert not result.met_target
    assert result.strategy is Strategy.PRIMARY
    assert (result.width, result.height) == (64, 64)
    assert result.final_quality == pytest.approx(0.1)
    assert result.final_bytes == expected


async def test_missed_primary_skips_downscaling_fallbacks(monkeypatch, linear_codec, noise_buffer):
    def must_not_run(*args, **kwargs):
        raise AssertionError("fallback must not run after a completed primary")

    monkeypatch.setattr(orchestrator_module, "optimize_for_palette", must_not_run)
    monkeypatch.setattr(orchestrator_module, "quantize_aggressive", must_not_run)
    result = await compress(fake_source(noise_buffer, linear_codec), CompressOptions(target_size_bytes=500, codec=linear_codec))
    assert result.strategy is Strategy.PRIMARY
    assert (result.width, result.height) == (64, 64)


async def test_oversize_buffer_rejected_before_classification(monkeypatch, linear_codec):
    def must_not_run(*args, **kwargs):
        raise AssertionError("classification must not start")

    monkeypatch.setattr(orchestrator_module, "classify", must_not_run)
    monkeypatch.setattr(orchestrator_module, "quantize", must_not_run)
    config = CompressorConfig(max_buffer_bytes=100 * 100 * 4 - 1)
    source = fake_source(PixelBuffer.blank(100, 100), linear_codec)
    with pytest.raises(InvalidInput):
        await compress(source, CompressOptions(codec=linear_codec), config=config)


async def test_oversize_input_rejected(linear_codec, noise_buffer):
    config = CompressorConfig(max_input_bytes=100)
    with pytest.raises(InvalidInput):
        await compress(fake_source(noise_buffer, linear_codec), CompressOptions(codec=linear_codec), config=config)


async def test_invalid_target_rejected(linear_codec, noise_buffer):
    with pytest.raises(InvalidInput):
        await compress(fake_source(noise_buffer, linear_codec), CompressOptions(target_size_bytes=0, codec=linear_codec))


async def test_secondary_runs_when_primary_raises(monkeypatch, linear_codec):
    def broken_classify(*args, **kwargs):
        raise RuntimeError("classifier crashed")

    monkeypatch.setattr(orchestrator_module, "classify", broken_classify)
    source = fake_source(noise(100, 100), linear_codec)
    result = await compress(source, CompressOptions(target_size_bytes=6000, codec=linear_codec))
    assert result.strategy is Strategy.SECONDARY
    assert result.met_target
    # small sources are downscaled by 0.9 in the fallback
    assert (result.width, result.height) == (90, 90)


async def test_preserve_dimensions_in_fallback(monkeypatch, linear_codec):
    monkeypatch.setattr(orchestrator_module, "classify", lambda *a, **k: 1 / 0)
    source = fake_source(noise(100, 100), linear_codec)
    options = CompressOptions(target_size_bytes=6000, codec=linear_codec, preserve_dimensions=True)
    result = await compress(source, options)
    assert (result.width, result.height) == (100, 100)


async def test_encoder_failing_everywhere_raises_compression_error(noise_buffer):
    # every search raises, then the tertiary single encode raises too
    codec = FailingCodec(fail_after=0)
    source = ImageSource(data=b"x" * 20000, format="fake", buffer=noise_buffer)
    with pytest.raises(CompressionError) as info:
        await compress(source, CompressOptions(target_size_bytes=1000, codec=codec))
    assert isinstance(info.value.cause, EncodeFailure)
    assert isinstance(info.value.cause.cause, RuntimeError)


async def test_all_strategies_failing_raises_with_cause(monkeypatch, linear_codec, noise_buffer):
    def boom(*args, **kwargs):
        raise RuntimeError("no memory for you")

    monkeypatch.setattr(orchestrator_module, "classify", boom)
    monkeypatch.setattr(orchestrator_module, "optimize_for_palette", boom)
    monkeypatch.setattr(orchestrator_module, "quantize_aggressive", boom)
    with pytest.raises(CompressionError) as info:
        await compress(fake_source(noise_buffer, linear_codec), CompressOptions(target_size_bytes=500, codec=linear_codec))
    assert isinstance(info.value.cause, RuntimeError)


async def test_exhausted_strategies_are_logged(monkeypatch, caplog, linear_codec, noise_buffer):
    def boom(*args, **kwargs):
        raise RuntimeError("no memory for you")

    for name in ("classify", "optimize_for_palette", "quantize_aggressive"):
        monkeypatch.setattr(orchestrator_module, name, boom)
    with caplog.at_level(logging.ERROR):
        with pytest.raises(CompressionError):
            await compress(fake_source(noise_buffer, linear_codec), CompressOptions(target_size_bytes=500, codec=linear_codec))
    assert "All strategies exhausted, entering failed" in caplog.text


async def test_tertiary_uses_progressive_jpeg(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("strategy unavailable")

    monkeypatch.setattr(orchestrator_module, "classify", boom)
    monkeypatch.setattr(orchestrator_module, "optimize_for_palette", boom)
    buffer = noise(64, 64, seed=12)
    source = ImageSource.from_bytes(JpegCodec().encode(buffer, 0.95))
    result = await compress(source, CompressOptions(target_size_bytes=2 * KB, preserve_dimensions=True))
    assert result.strategy is Strategy.TERTIARY
    assert decode_image(result.data).width == 64


async def test_slow_primary_is_abandoned_at_deadline(monkeypatch, linear_codec, noise_buffer):
    def slow_quantize(*args, **kwargs):
        time.sleep(3.0)

    monkeypatch.setattr(orchestrator_module, "quantize", slow_quantize)
    options = CompressOptions(target_size_bytes=6000, codec=linear_codec, deadline_seconds=1.5)
    started = time.monotonic()
    result = await compress(fake_source(noise_buffer, linear_codec), options)
    assert time.monotonic() - started < 2.5
    assert result.strategy is Strategy.SECONDARY
    assert result.met_target


async def test_slow_strategies_never_overrun_the_deadline(monkeypatch, linear_codec, noise_buffer):
    def slow(*args, **kwargs):
        time.sleep(3.0)

    monkeypatch.setattr(orchestrator_module, "quantize", slow)
    monkeypatch.setattr(orchestrator_module, "optimize_for_palette", slow)
    monkeypatch.setattr(orchestrator_module, "quantize_aggressive", slow)
    options = CompressOptions(target_size_bytes=6000, codec=linear_codec, deadline_seconds=1.0)
    started = time.monotonic()
    with pytest.raises(CompressionError):
        await compress(fake_source(noise_buffer, linear_codec), options)
    assert time.monotonic() - started < 1.3


async def test_decode_runs_off_the_event_loop(monkeypatch, linear_codec, noise_buffer):
    loop_thread = threading.current_thread()
    decoded_on = []
    real_decode = ImageSource.decode

    def tracking_decode(self):
        decoded_on.append(threading.current_thread())
        return real_decode(self)

    monkeypatch.setattr(ImageSource, "decode", tracking_decode)
    await compress(fake_source(noise_buffer, linear_codec), CompressOptions(target_size_bytes=6000, codec=linear_codec))
    assert decoded_on
    assert loop_thread not in decoded_on


async def test_progress_is_monotonic_and_completes(linear_codec, noise_buffer):
    progress = []
    options = CompressOptions(target_size_bytes=500, codec=linear_codec, on_progress=progress.append)
    await compress(fake_source(noise_buffer, linear_codec), options)
    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(progress)
    assert len(set(progress)) == len(progress)


async def test_adaptive_default_target(noise_buffer):
    source = ImageSource.from_bytes(PngCodec().encode(noise_buffer, 1.0))
    result = await compress(source)
    # a 64x64 PNG is far below the default PNG budget
    assert result.strategy is Strategy.PASSTHROUGH


async def test_png_transcoded_to_jpeg():
    buffer = noise(64, 64, seed=21, alpha=True)
    source = ImageSource.from_bytes(PngCodec().encode(buffer, 1.0))
    result = await compress(source, CompressOptions(target_size_bytes=20 * KB, output_format="jpeg"))
    assert result.data[:3] == b"\xff\xd8\xff"
    assert result.met_target


async def test_large_image_is_tiled_and_survives_a_stuck_tile(monkeypatch, linear_codec):
    calls = []
    lock = threading.Lock()
    real_pass = worker_pool_module.quantize_pixels

    def first_tile_hangs(pixels, kind, params):
        with lock:
            calls.append(1)
            first = len(calls) == 1
        if first:
            time.sleep(1.0)
        real_pass(pixels, kind, params)

    monkeypatch.setattr(worker_pool_module, "quantize_pixels", first_tile_hangs)
    config = CompressorConfig(
        tiling=TilingConfig(tiling_threshold_pixels=256 * 256, default_tile_edge=64, tile_timeout=0.3),
        pool=PoolConfig(max_workers=4, executor_kind="thread", poll_interval=0.01),
    )
    buffer = noise(256, 256, seed=30)
    source = fake_source(buffer, linear_codec)

    async with worker_pool_module.WorkerPool(config.pool) as pool:
        result = await FallbackOrchestrator(config, pool).compress(
            source, CompressOptions(target_size_bytes=6000, codec=linear_codec)
        )
    assert result.met_target
    assert result.strategy is Strategy.PRIMARY
    assert len(calls) == 16


async def test_orchestrator_creates_and_closes_its_own_pool(monkeypatch, linear_codec):
    created = []
    real_pool = orchestrator_module.WorkerPool

    def tracking_pool(config):
        pool = real_pool(config)
        created.append(pool)
        return pool

    monkeypatch.setattr(orchestrator_module, "WorkerPool", tracking_pool)
    config = CompressorConfig(
        tiling=TilingConfig(tiling_threshold_pixels=128 * 128, default_tile_edge=64),
        pool=PoolConfig(max_workers=2, executor_kind="thread"),
    )
    source = fake_source(noise(128, 128), linear_codec)
    result = await compress(source, CompressOptions(target_size_bytes=6000, codec=linear_codec), config=config)
    assert result.met_target
    assert len(created) == 1
    assert created[0].closed


def test_downscale_uses_area_interpolation():
    buffer = PixelBuffer(4, 4, np.full((4, 4, 4), 200, dtype=np.uint8))
    small = downscale(buffer, 0.5)
    assert (small.width, small.height) == (2, 2)
    assert (small.pixels == 200).all()
    assert downscale(buffer, 1.0) == buffer
