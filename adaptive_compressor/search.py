"""
Quality search engine.

Binary search over the encoder quality for the highest quality whose encoded
size fits a byte budget. The encoder is treated as a black box that is only
roughly monotone: higher quality usually means more bytes. Probes that break
that assumption are recorded and logged but never abort the search.
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import ACCEPTABLE_SIZE, SearchParams
from .errors import CompressionError, EncodeFailure, InvalidInput, SearchCancelled
from .logger_setup import setup_logger

log = setup_logger("search")

EncodeFn = Callable[[float], bytes]


@dataclass(frozen=True)
class CompressionTarget:
    """
    Byte budget and quality bounds for one search.

    Raises:
        InvalidInput: If the bounds are not ``0 <= min < max <= 1`` or the
            precision is not positive.
    """

    target_size: int
    acceptable_size: int = ACCEPTABLE_SIZE
    min_quality: float = SearchParams.min_quality
    max_quality: float = SearchParams.max_quality
    precision: float = SearchParams.precision
    coarse_tolerance: float = SearchParams.coarse_tolerance
    noise_floor_bytes: int = SearchParams.noise_floor_bytes
    noise_fraction: float = SearchParams.noise_fraction

    def __post_init__(self):
        if self.target_size <= 0:
            raise InvalidInput(f"Target size must be positive, got {self.target_size}")
        if not 0.0 <= self.min_quality < self.max_quality <= 1.0:
            raise InvalidInput(
                f"Quality bounds must satisfy 0 <= min < max <= 1, got [{self.min_quality}, {self.max_quality}]"
            )
        if self.precision <= 0:
            raise InvalidInput(f"Precision must be positive, got {self.precision}")

    @classmethod
    def from_params(cls, target_size: int, params: SearchParams, acceptable_size: int = ACCEPTABLE_SIZE):
        return cls(
            target_size=target_size,
            acceptable_size=max(target_size, acceptable_size),
            min_quality=params.min_quality,
            max_quality=params.max_quality,
            precision=params.precision,
            coarse_tolerance=params.coarse_tolerance,
            noise_floor_bytes=params.noise_floor_bytes,
            noise_fraction=params.noise_fraction,
        )

    @property
    def max_iterations(self) -> int:
        span = (self.max_quality - self.min_quality) / self.precision
        return math.ceil(math.log2(max(span, 1.0))) + 2

    def fits(self, size: int) -> bool:
        return size <= self.target_size


@dataclass(frozen=True)
class CompressionAttempt:
    quality: float
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class MonotonicityViolation:
    """A higher quality produced noticeably fewer bytes than a lower one."""

    lower_quality: float
    lower_size: int
    higher_quality: float
    higher_size: int


@dataclass
class SearchOutcome:
    attempt: CompressionAttempt
    iterations: int
    met_target: bool
    violations: List[MonotonicityViolation] = field(default_factory=list)


class _Prober:
    """Runs encodes, remembers every probe and watches for monotonicity breaks."""

    def __init__(self, encode_fn: EncodeFn, target: CompressionTarget, cancel_event: Optional[threading.Event]):
        self.encode_fn = encode_fn
        self.target = target
        self.cancel_event = cancel_event
        self.history: List[CompressionAttempt] = []
        self.violations: List[MonotonicityViolation] = []

    def probe(self, quality: float) -> CompressionAttempt:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SearchCancelled(f"Quality search cancelled before probing q={quality:.3f}")
        try:
            data = self.encode_fn(quality)
        except CompressionError:
            raise
        except Exception as e:
            raise EncodeFailure(f"Encoder failed at quality {quality:.3f}: {e}", cause=e) from e
        attempt = CompressionAttempt(quality=quality, data=bytes(data))
        self._check_monotonic(attempt)
        self.history.append(attempt)
        return attempt

    def _check_monotonic(self, attempt: CompressionAttempt) -> None:
        t = self.target
        for previous in self.history:
            if previous.quality == attempt.quality:
                continue
            low, high = (previous, attempt) if previous.quality < attempt.quality else (attempt, previous)
            tolerance = max(t.noise_floor_bytes, t.noise_fraction * low.size)
            if low.size - high.size > tolerance:
                violation = MonotonicityViolation(low.quality, low.size, high.quality, high.size)
                self.violations.append(violation)
                log.warning(
                    f"Encoder not monotone: q={high.quality:.3f} gave {high.size} bytes, "
                    f"q={low.quality:.3f} gave {low.size} bytes"
                )


def search_quality(
        encode_fn: EncodeFn,
        target: CompressionTarget,
        cancel_event: Optional[threading.Event] = None
) -> SearchOutcome:
    """
    Find the highest quality whose encoding fits ``target.target_size``.

    Args:
        encode_fn (callable): ``quality -> bytes``; any exception it raises
            is wrapped in EncodeFailure.
        target (CompressionTarget): Budget, bounds and precision.
        cancel_event (threading.Event, optional): Checked before each probe.

    Returns:
        SearchOutcome: The chosen attempt, the number of bisection steps and
        whether the budget was met. When nothing fits, the attempt is the
        minimum-quality encoding.

    Raises:
        EncodeFailure: If the encoder fails.
        SearchCancelled: If ``cancel_event`` gets set mid-search.
    """
    prober = _Prober(encode_fn, target, cancel_event)

    top = prober.probe(target.max_quality)
    if target.fits(top.size):
        log.debug(f"Max quality {target.max_quality:.2f} already fits ({top.size} bytes)")
        return SearchOutcome(top, 0, True, prober.violations)

    lo, hi = target.min_quality, target.max_quality
    best: Optional[CompressionAttempt] = None
    iterations = 0
    bound = target.max_iterations

    while hi - lo > target.precision and iterations < bound:
        iterations += 1
        mid = (lo + hi) / 2
        attempt = prober.probe(mid)
        if target.fits(attempt.size):
            best = attempt
            lo = mid
        else:
            hi = mid
        if best is not None and hi - lo < target.coarse_tolerance:
            break

    if best is None:
        best = prober.probe(target.min_quality)

    met = target.fits(best.size)
    log.debug(
        f"Search settled on q={best.quality:.3f} ({best.size} bytes, target {target.target_size}) "
        f"after {iterations} steps"
    )
    return SearchOutcome(best, iterations, met, prober.violations)


def search(encode_fn: EncodeFn, target: CompressionTarget) -> CompressionAttempt:
    """Shorthand for ``search_quality(...).attempt``."""
    return search_quality(encode_fn, target).attempt
