"""
Main entry point for the adaptive image compressor.

Compresses every image in a folder to a byte budget and writes the results
into a mirrored output folder. When no input folder is given on the command
line it asks for one interactively, defaulting to ./images.

Example:
    $ python main.py images compressed --target-kb 150 --format webp
"""

import argparse
import asyncio
import logging
import os
from typing import List, Optional

from adaptive_compressor import KB, CompressorConfig, PoolConfig, compress_folder_async, setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Compress a folder of images to a target size.")
    parser.add_argument("input_folder", nargs="?", help="Folder with images (asked for when omitted)")
    parser.add_argument("output_folder", nargs="?", default="compressed", help="Destination folder")
    parser.add_argument("--target-kb", type=float, help="Target size per image in KB (adaptive by default)")
    parser.add_argument("--format", choices=("jpeg", "png", "webp"), help="Transcode every image to this format")
    parser.add_argument("--preserve-dimensions", action="store_true", help="Never downscale in fallbacks")
    parser.add_argument("--workers", type=int, help="Maximum tile workers")
    parser.add_argument("--threads", action="store_true", help="Run tile workers as threads instead of processes")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logger(log_file=args.log_file, level=logging.DEBUG if args.verbose else logging.INFO)

    input_folder = args.input_folder
    if input_folder is None:
        input_folder = input("📁 Enter the path to the folder with images (default: ./images): ").strip() or "images"

    if not os.path.exists(input_folder):
        print(f"❌ The folder '{input_folder}' does not exist.")
        return 1

    pool_overrides = {}
    if args.workers:
        pool_overrides["max_workers"] = args.workers
    if args.threads:
        pool_overrides["executor_kind"] = "thread"
    config = CompressorConfig().with_overrides(pool=PoolConfig(**pool_overrides))

    print(f"🚀 Starting compression from: {input_folder}")
    done, found = await compress_folder_async(
        input_folder,
        args.output_folder,
        target_size=int(args.target_kb * KB) if args.target_kb else None,
        output_format=args.format,
        preserve_dimensions=args.preserve_dimensions,
        config=config,
    )
    return 0 if done == found else 2


def cli() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
