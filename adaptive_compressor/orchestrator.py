"""
Fallback orchestrator.

Drives one image through a small state machine:

    SIZE_CHECK -> PRIMARY -> SECONDARY -> TERTIARY -> EMIT
                       \\___________\\__________\\____-> FAILED

PRIMARY is the full pipeline (classify, quantize, possibly tiled, quality
search). When PRIMARY completes but misses the byte target, its
minimum-quality encoding is emitted as a best effort (after one progressive
attempt where the codec has one). SECONDARY and TERTIARY are progressively
simpler strategies that only run after PRIMARY raised or ran out of time;
TERTIARY also runs when SECONDARY missed. Every strategy that produces bytes
adds a candidate; EMIT returns the best one. Only when no strategy produced
anything does the run fail.

Phase budgets are carved out of one global deadline, so no phase can run
past it.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

import cv2

from .buffer import PixelBuffer
from .classifier import ContentKind, classify
from .codecs import Codec, codec_for
from .config import CompressorConfig, adaptive_target_size
from .errors import CompressionError, EncodeFailure, InvalidInput, SearchCancelled, WorkerUnavailable
from .logger_setup import setup_logger
from .quantization import optimize_for_palette, quantize, quantize_aggressive, quantize_lineart_aggressive
from .search import CompressionAttempt, CompressionTarget, MonotonicityViolation, SearchOutcome, search_quality
from .source import ImageSource
from .tiling import TileScheduler
from .worker_pool import WorkerPool

log = setup_logger("orchestrator")


class State(Enum):
    SIZE_CHECK = "size_check"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"
    EMIT = "emit"
    FAILED = "failed"


class Strategy(Enum):
    PASSTHROUGH = "passthrough"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"


@dataclass
class CompressOptions:
    """
    Per-call options.

    Attributes:
        target_size_bytes (int, optional): Byte budget. Defaults to a size
            derived from the source size and output format.
        on_progress (callable, optional): Receives integers 0..100.
        preserve_dimensions (bool): Never downscale in the fallbacks.
        output_format (str, optional): "jpeg", "png" or "webp". Defaults to
            the source format.
        codec (Codec, optional): Explicit codec; overrides ``output_format``.
        deadline_seconds (float, optional): Overall time budget. Defaults to
            one derived from the source size.
    """

    target_size_bytes: Optional[int] = None
    on_progress: Optional[Callable[[int], None]] = None
    preserve_dimensions: bool = False
    output_format: Optional[str] = None
    codec: Optional[Codec] = None
    deadline_seconds: Optional[float] = None


@dataclass
class CompressionResult:
    data: bytes
    quality: float
    met_target: bool
    strategy: Strategy
    width: int
    height: int
    original_size: int
    within_acceptable: bool
    monotonicity_violations: List[MonotonicityViolation] = field(default_factory=list)

    @property
    def final_bytes(self) -> bytes:
        return self.data

    @property
    def final_quality(self) -> float:
        return self.quality

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def compression_ratio(self) -> float:
        return 1.0 - self.size / self.original_size if self.original_size else 0.0


@dataclass
class _Candidate:
    strategy: Strategy
    attempt: CompressionAttempt
    met_target: bool
    width: int
    height: int


@dataclass
class _Run:
    """Mutable state of one ``compress`` call."""

    source: ImageSource
    original: PixelBuffer
    codec: Codec
    target: CompressionTarget
    options: CompressOptions
    deadline: float
    candidates: List[_Candidate] = field(default_factory=list)
    violations: List[MonotonicityViolation] = field(default_factory=list)
    last_error: Optional[BaseException] = None
    progress: int = -1

    def report(self, percent: int) -> None:
        percent = min(100, int(percent))
        if percent <= self.progress:
            return
        self.progress = percent
        if self.options.on_progress is not None:
            self.options.on_progress(percent)

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)

    def best_met(self) -> bool:
        return any(c.met_target for c in self.candidates)


def downscale(buffer: PixelBuffer, factor: float) -> PixelBuffer:
    """Area-interpolated resize by ``factor``; returns a new buffer."""
    if factor >= 1.0:
        return buffer.copy()
    width = max(1, int(buffer.width * factor))
    height = max(1, int(buffer.height * factor))
    resized = cv2.resize(buffer.pixels, (width, height), interpolation=cv2.INTER_AREA)
    return PixelBuffer(width, height, resized)


def select_candidate(candidates: List[_Candidate]) -> _Candidate:
    """First candidate meeting the target, else the smallest (earliest wins ties)."""
    for candidate in candidates:
        if candidate.met_target:
            return candidate
    return min(candidates, key=lambda c: c.attempt.size)


class FallbackOrchestrator:
    """
    Runs the compression state machine.

    Args:
        config (CompressorConfig, optional): All tunables.
        pool (WorkerPool, optional): Pool for tile work. When omitted, a pool
            is created for each call that needs tiling and shut down again
            before the call returns.
    """

    def __init__(self, config: Optional[CompressorConfig] = None, pool: Optional[WorkerPool] = None):
        self.config = config or CompressorConfig()
        self.pool = pool
        self.scheduler = TileScheduler(self.config.tiling, self.config.quantization)

    async def compress(self, source: ImageSource, options: Optional[CompressOptions] = None) -> CompressionResult:
        """
        Compress one image.

        Raises:
            InvalidInput: Oversize input or bad options, before any work is done.
            CompressionError: When every strategy failed; ``cause`` holds the
                last underlying error.
        """
        options = options or CompressOptions()
        run = await self._size_check(source, options)
        if run.candidates:
            return self._emit(run)

        run.report(10)
        budget = run.remaining() * self.config.deadline.primary_share
        if not await self._run_phase(run, State.PRIMARY, self._primary, budget):
            # Fallbacks only run when PRIMARY raised or timed out; a plain miss is emitted as is
            fallbacks = (
                (State.SECONDARY, self._secondary, self.config.deadline.secondary_share, 60),
                (State.TERTIARY, self._tertiary, 1.0, 80),
            )
            for state, phase, share, progress in fallbacks:
                if run.best_met():
                    break
                budget = run.remaining() * share
                if budget <= 0:
                    log.warning(f"Deadline reached before {state.value}")
                    break
                run.report(progress)
                await self._run_phase(run, state, phase, budget)

        if not run.candidates:
            log.error(f"All strategies exhausted, entering {State.FAILED.value} (last error: {run.last_error!r})")
            raise CompressionError("All compression strategies failed", cause=run.last_error)
        return self._emit(run)

    async def _size_check(self, source: ImageSource, options: CompressOptions) -> _Run:
        cfg = self.config
        if source.size > cfg.max_input_bytes:
            raise InvalidInput(f"Input of {source.size} bytes exceeds the {cfg.max_input_bytes} byte limit")
        codec = options.codec or codec_for(options.output_format or source.format)

        original = await asyncio.to_thread(source.decode)
        if original.nbytes > cfg.max_buffer_bytes:
            raise InvalidInput(
                f"Decoded {original.width}x{original.height} buffer needs {original.nbytes} bytes, "
                f"limit is {cfg.max_buffer_bytes}"
            )

        target_size = options.target_size_bytes
        if target_size is None:
            target_size = adaptive_target_size(source.size, codec.name)
        target = CompressionTarget.from_params(target_size, cfg.search, cfg.acceptable_size)

        total = options.deadline_seconds or cfg.deadline.deadline_for(source.size)
        run = _Run(source, original, codec, target, options, deadline=time.monotonic() + total)
        run.report(0)
        log.info(
            f"Compressing {original.width}x{original.height} {source.format} ({source.size / 1024:.1f}KB) "
            f"to {codec.name}, target {target.target_size / 1024:.1f}KB, deadline {total:.0f}s"
        )

        if source.size <= target.target_size and source.format in (codec.name, codec.extension.lstrip(".")):
            log.info("Source already meets the target; emitting it unchanged")
            run.candidates.append(
                _Candidate(Strategy.PASSTHROUGH, CompressionAttempt(1.0, source.data), True,
                           original.width, original.height)
            )
        return run

    async def _run_phase(self, run: _Run, state: State, phase, budget: float) -> bool:
        """Run one strategy within ``budget`` seconds; False when it raised or timed out."""
        cancel = threading.Event()
        log.info(f"Entering {state.value} (budget {budget:.1f}s)")
        try:
            await asyncio.wait_for(phase(run, cancel), budget)
        except asyncio.TimeoutError as e:
            cancel.set()
            log.warning(f"{state.value} ran out of time after {budget:.1f}s")
            run.last_error = SearchCancelled(f"{state.value} exceeded its {budget:.1f}s budget", cause=e)
            return False
        except InvalidInput:
            raise
        except Exception as e:
            cancel.set()
            log.warning(f"{state.value} failed: {e!r}")
            run.last_error = e
            return False
        return True

    async def _search(self, run: _Run, strategy: Strategy, buffer: PixelBuffer, cancel: threading.Event,
                      progressive: bool = False, keep_miss: bool = True) -> SearchOutcome:
        encode = run.codec.encode_progressive if progressive else run.codec.encode
        outcome = await asyncio.to_thread(search_quality, lambda q: encode(buffer, q), run.target, cancel)
        run.violations.extend(outcome.violations)
        if outcome.met_target or keep_miss:
            run.candidates.append(
                _Candidate(strategy, outcome.attempt, outcome.met_target, buffer.width, buffer.height)
            )
        log.info(
            f"{strategy.value}{' (progressive)' if progressive else ''}: q={outcome.attempt.quality:.2f} -> "
            f"{outcome.attempt.size / 1024:.1f}KB ({'met' if outcome.met_target else 'missed'} target)"
        )
        return outcome

    async def _primary(self, run: _Run, cancel: threading.Event) -> None:
        cfg = self.config
        buffer = run.original.copy()
        classification = await asyncio.to_thread(classify, buffer, None, cfg.classifier)
        kind = classification.kind
        log.info(f"Content classified as {kind.value}")
        run.report(20)

        if self.scheduler.needs_tiling(buffer):
            buffer = await self._tiled_quantize(run, buffer, kind)
        else:
            await asyncio.to_thread(quantize, buffer, kind, cfg.quantization)
        run.report(50)

        outcome = await self._search(run, Strategy.PRIMARY, buffer, cancel)
        if kind is ContentKind.LINEART and not outcome.met_target:
            log.info("Line art missed the target; applying the aggressive line-art pass")
            await asyncio.to_thread(quantize_lineart_aggressive, buffer, cfg.quantization)
            outcome = await self._search(run, Strategy.PRIMARY, buffer, cancel)
        if not outcome.met_target and run.codec.supports_progressive:
            # Same pixels and dimensions; only a hit replaces the minimum-quality attempt
            await self._search(run, Strategy.PRIMARY, buffer, cancel, progressive=True, keep_miss=False)

    async def _tiled_quantize(self, run: _Run, buffer: PixelBuffer, kind: ContentKind) -> PixelBuffer:
        def tile_progress(percent: int) -> None:
            run.report(20 + percent * 30 // 100)

        pool, owned = self.pool, False
        if pool is None:
            pool, owned = WorkerPool(self.config.pool), True
            try:
                await pool.start()
            except WorkerUnavailable as e:
                log.warning(f"Worker pool unavailable, tiles will be processed locally: {e}")
        try:
            return await self.scheduler.process(buffer, kind, pool, on_progress=tile_progress)
        finally:
            if owned:
                await asyncio.to_thread(pool.shutdown, False)

    def _working_copy(self, run: _Run) -> PixelBuffer:
        if run.options.preserve_dimensions:
            return run.original.copy()
        factor = self.config.deadline.downscale_for(run.source.size)
        return downscale(run.original, factor)

    async def _secondary(self, run: _Run, cancel: threading.Event) -> None:
        buffer = await asyncio.to_thread(self._working_copy, run)
        await asyncio.to_thread(optimize_for_palette, buffer, self.config.quantization)
        run.report(70)
        await self._search(run, Strategy.SECONDARY, buffer, cancel)

    async def _tertiary(self, run: _Run, cancel: threading.Event) -> None:
        buffer = await asyncio.to_thread(self._working_copy, run)
        await asyncio.to_thread(quantize_aggressive, buffer, self.config.quantization)
        run.report(90)
        if run.codec.supports_progressive:
            await self._search(run, Strategy.TERTIARY, buffer, cancel, progressive=True)
            return
        quality = run.target.min_quality
        try:
            data = await asyncio.to_thread(run.codec.encode, buffer, quality)
        except CompressionError:
            raise
        except Exception as e:
            raise EncodeFailure(f"{run.codec.name} failed at minimum quality: {e}", cause=e) from e
        attempt = CompressionAttempt(quality, data)
        run.candidates.append(
            _Candidate(Strategy.TERTIARY, attempt, run.target.fits(attempt.size), buffer.width, buffer.height)
        )
        log.info(f"{Strategy.TERTIARY.value}: single encode at q={quality:.2f} -> {attempt.size / 1024:.1f}KB")

    def _emit(self, run: _Run) -> CompressionResult:
        best = select_candidate(run.candidates)
        result = CompressionResult(
            data=best.attempt.data,
            quality=best.attempt.quality,
            met_target=best.met_target,
            strategy=best.strategy,
            width=best.width,
            height=best.height,
            original_size=run.source.size,
            within_acceptable=best.attempt.size <= run.target.acceptable_size,
            monotonicity_violations=list(run.violations),
        )
        run.report(100)
        log.info(
            f"{State.EMIT.value}: {result.strategy.value}, {run.source.size / 1024:.1f}KB -> "
            f"{result.size / 1024:.1f}KB (-{result.compression_ratio * 100:.1f}%), q={result.quality:.2f}"
        )
        return result


async def compress(
        source: Union[ImageSource, bytes],
        options: Optional[CompressOptions] = None,
        *,
        config: Optional[CompressorConfig] = None,
        pool: Optional[WorkerPool] = None
) -> CompressionResult:
    """Compress one image with a throwaway FallbackOrchestrator."""
    if not isinstance(source, ImageSource):
        source = ImageSource.from_bytes(source)
    return await FallbackOrchestrator(config, pool).compress(source, options)
