import asyncio
import os

from adaptive_compressor.async_compressor import collect_images, compress_folder_async
from adaptive_compressor.codecs import PngCodec
from adaptive_compressor.config import CompressorConfig, PoolConfig
from adaptive_compressor.orchestrator import FallbackOrchestrator
from adaptive_compressor.source import sniff_format

import main
from conftest import noise


def write_png(path, seed):
    path.write_bytes(PngCodec().encode(noise(48, 32, seed=seed), 1.0))


def thread_config():
    return CompressorConfig(pool=PoolConfig(max_workers=2, executor_kind="thread"))


def test_collect_images_mirrors_tree(tmp_path):
    (tmp_path / "in" / "nested").mkdir(parents=True)
    write_png(tmp_path / "in" / "a.png", 1)
    write_png(tmp_path / "in" / "nested" / "b.PNG", 2)
    (tmp_path / "in" / "notes.txt").write_text("skip me")

    pairs = collect_images(str(tmp_path / "in"), str(tmp_path / "out"), "webp")
    outputs = sorted(os.path.relpath(out, tmp_path / "out") for _, out in pairs)
    assert outputs == ["a.webp", os.path.join("nested", "b.webp")]


async def test_compress_folder_writes_outputs(tmp_path):
    src = tmp_path / "in"
    (src / "nested").mkdir(parents=True)
    write_png(src / "a.png", 1)
    write_png(src / "nested" / "b.png", 2)
    out = tmp_path / "out"

    done, found = await compress_folder_async(
        str(src), str(out), target_size=4000, output_format="jpeg", config=thread_config()
    )
    assert (done, found) == (2, 2)
    for rel in ("a.jpeg", os.path.join("nested", "b.jpeg")):
        data = (out / rel).read_bytes()
        assert sniff_format(data) == "jpeg"


async def test_broken_image_is_skipped(tmp_path):
    src = tmp_path / "in"
    src.mkdir()
    write_png(src / "good.png", 3)
    (src / "broken.png").write_bytes(b"\x89PNG\r\n\x1a\n not really")

    done, found = await compress_folder_async(str(src), str(tmp_path / "out"), config=thread_config())
    assert (done, found) == (1, 2)
    assert (tmp_path / "out" / "good.png").exists()
    assert not (tmp_path / "out" / "broken.png").exists()


async def test_cli_missing_folder_returns_error(tmp_path):
    assert await main.main([str(tmp_path / "nope")]) == 1


async def test_cli_compresses_folder(tmp_path):
    src = tmp_path / "in"
    src.mkdir()
    write_png(src / "a.png", 4)
    out = tmp_path / "out"
    code = await main.main([str(src), str(out), "--target-kb", "4", "--format", "webp", "--threads", "--workers", "2"])
    assert code == 0
    assert sniff_format((out / "a.webp").read_bytes()) == "webp"


async def test_folder_compression_bounds_images_in_flight(monkeypatch, tmp_path):
    src = tmp_path / "in"
    src.mkdir()
    for seed in range(5):
        write_png(src / f"{seed}.png", seed)
    in_flight = []
    peak = []
    real_compress = FallbackOrchestrator.compress

    async def tracking_compress(self, source, options=None):
        in_flight.append(source)
        peak.append(len(in_flight))
        try:
            await asyncio.sleep(0.05)
            return await real_compress(self, source, options)
        finally:
            in_flight.remove(source)

    monkeypatch.setattr(FallbackOrchestrator, "compress", tracking_compress)
    done, found = await compress_folder_async(
        str(src), str(tmp_path / "out"), target_size=4000, output_format="jpeg",
        config=thread_config(), max_concurrent=2,
    )
    assert (done, found) == (5, 5)
    assert max(peak) == 2
