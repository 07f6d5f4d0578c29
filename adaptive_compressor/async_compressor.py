"""
Asynchronous folder compressor.

Walks a folder, compresses every supported image with the fallback
orchestrator and writes the results into a mirrored output tree. All images
share one WorkerPool for their tile work; per-image results are reported
through a queue read by a single logger task so lines never interleave.

Functions:
    - compress_folder_async: Compress all images in a folder asynchronously.
    - process_image: Compress a single image and queue its log line.
    - logger_worker: Reads log messages from a queue and prints them immediately.
"""

import asyncio
import os
import time
from typing import List, Optional, Tuple

from .config import CompressorConfig
from .errors import CompressionError
from .logger_setup import setup_logger
from .orchestrator import CompressOptions, FallbackOrchestrator
from .source import ImageSource
from .worker_pool import WorkerPool

log = setup_logger()

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")


def collect_images(input_folder: str, output_folder: str, output_format: Optional[str] = None) -> List[Tuple[str, str]]:
    """Pair every supported image under ``input_folder`` with its output path."""
    pairs = []
    for root, _, files in os.walk(input_folder):
        for file in sorted(files):
            stem, ext = os.path.splitext(file)
            if ext.lower() not in SUPPORTED_EXTENSIONS:
                continue
            rel_path = os.path.relpath(root, input_folder)
            output_dir = os.path.join(output_folder, rel_path)
            out_ext = f".{output_format}" if output_format else ext.lower()
            pairs.append((os.path.join(root, file), os.path.join(output_dir, stem + out_ext)))
    return pairs


async def process_image(
        orchestrator: FallbackOrchestrator,
        input_path: str,
        output_path: str,
        options: CompressOptions,
        start_total: float,
        log_queue: asyncio.Queue,
        limit: asyncio.Semaphore
) -> bool:
    """
    Compress a single image and send its log line to a queue.

    Args:
        orchestrator (FallbackOrchestrator): Shared orchestrator (and pool).
        input_path (str): Path to the source image.
        output_path (str): Path to save the compressed image.
        options (CompressOptions): Per-image options.
        start_total (float): Timestamp when the batch started.
        log_queue (asyncio.Queue): Queue read by the logger worker.
        limit (asyncio.Semaphore): Bounds how many images are
            decoded and compressed at the same time.

    Returns:
        bool: True when the image was written.

    Notes:
        - A failing image is logged and skipped; the batch continues.
    """
    async with limit:
        start = time.time()
        try:
            source = await asyncio.to_thread(ImageSource.from_path, input_path)
            result = await orchestrator.compress(source, options)
        except CompressionError as e:
            log.error(f"Error processing {input_path}: {e}")
            return False

    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "wb") as f:
        f.write(result.data)

    await log_queue.put((
        input_path, result.original_size, result.size, result.strategy.value,
        result.met_target, time.time() - start, time.time() - start_total,
    ))
    return True


async def logger_worker(log_queue: asyncio.Queue) -> None:
    """
    Print per-image results from the queue until ``None`` arrives.

    Logs include original size, new size, compression ratio, strategy,
    processing time and total elapsed time.
    """
    while True:
        msg = await log_queue.get()
        if msg is None:
            break
        input_path, orig_size, new_size, strategy, met, processing_time, total_time = msg
        name = os.path.basename(input_path)
        ratio = 100 - (new_size / orig_size * 100) if orig_size else 0
        flag = "" if met else " (target missed)"
        log.info(
            f"{name:<45} | {orig_size/1024:7.1f}KB → {new_size/1024:7.1f}KB (-{ratio:5.1f}%) "
            f"| {strategy:<11} | processing: {processing_time:5.2f}s | total: {total_time:5.2f}s{flag}"
        )
        log_queue.task_done()


async def compress_folder_async(
        input_folder: str = "images",
        output_folder: str = "compressed",
        target_size: Optional[int] = None,
        output_format: Optional[str] = None,
        preserve_dimensions: bool = False,
        config: Optional[CompressorConfig] = None,
        max_concurrent: Optional[int] = None
) -> Tuple[int, int]:
    """
    Compress all images in a folder.

    Args:
        input_folder (str, optional): Source folder. Defaults to "images".
        output_folder (str, optional): Destination folder. Defaults to "compressed".
        target_size (int, optional): Byte budget per image; adaptive when omitted.
        output_format (str, optional): Transcode everything to this format.
        preserve_dimensions (bool): Never downscale.
        config (CompressorConfig, optional): Tunables shared by every image.
        max_concurrent (int, optional): Images in flight at once. Defaults
            to the number of CPU cores.

    Returns:
        Tuple[int, int]: (images written, images found)

    Notes:
        - Supports JPG, JPEG, PNG and WEBP inputs.
        - Mirrors the input directory structure in the output folder.
    """
    config = config or CompressorConfig()
    start_total = time.time()
    log_queue = asyncio.Queue()

    # Start logger worker
    log_task = asyncio.create_task(logger_worker(log_queue))

    image_tasks = collect_images(input_folder, output_folder, output_format)
    max_concurrent = max_concurrent or os.cpu_count() or 8
    limit = asyncio.Semaphore(max_concurrent)
    log.info(
        f"🧠 Found {len(image_tasks)} images, compressing {max_concurrent} at a time "
        f"with up to {config.pool.max_workers} tile workers"
    )

    options = CompressOptions(
        target_size_bytes=target_size,
        output_format=output_format,
        preserve_dimensions=preserve_dimensions,
    )
    try:
        async with WorkerPool(config.pool) as pool:
            orchestrator = FallbackOrchestrator(config, pool)
            tasks = [
                process_image(orchestrator, inp, out, options, start_total, log_queue, limit)
                for inp, out in image_tasks
            ]
            written = await asyncio.gather(*tasks)
    finally:
        # Stop logger worker
        await log_queue.put(None)
        await log_task

    done = sum(1 for ok in written if ok)
    log.info(f"✅ Compressed {done}/{len(image_tasks)} images in {time.time() - start_total:.2f}s")
    return done, len(image_tasks)
