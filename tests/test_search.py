import logging
import math
import threading

import pytest

from adaptive_compressor.errors import EncodeFailure, InvalidInput, SearchCancelled
from adaptive_compressor.search import CompressionTarget, search, search_quality


def sized(fn):
    """Encoder whose output length is ``fn(quality)``; records probed qualities."""
    probes = []

    def encode(quality):
        probes.append(quality)
        return b"x" * fn(quality)

    encode.probes = probes
    return encode


def linear(quality):
    return int(100 + 10000 * quality)


def test_returns_highest_fitting_quality_within_tolerance():
    encode = sized(linear)
    target = CompressionTarget(target_size=5000)
    outcome = search_quality(encode, target)
    assert outcome.met_target
    assert outcome.attempt.size <= 5000
    # true optimum is q = 0.49
    assert 0.49 - target.coarse_tolerance - target.precision <= outcome.attempt.quality <= 0.49
    assert outcome.violations == []


def test_max_quality_short_circuits():
    encode = sized(linear)
    outcome = search_quality(encode, CompressionTarget(target_size=50000))
    assert outcome.attempt.quality == pytest.approx(0.95)
    assert outcome.iterations == 0
    assert encode.probes == [0.95]


def test_unreachable_target_returns_minimum_quality_encoding():
    encode = sized(linear)
    target = CompressionTarget(target_size=500)
    outcome = search_quality(encode, target)
    assert not outcome.met_target
    assert outcome.attempt.quality == pytest.approx(target.min_quality)
    assert outcome.attempt.size == linear(target.min_quality)


def test_iteration_bound():
    target = CompressionTarget(target_size=5000, precision=0.001, coarse_tolerance=0.0)
    expected_bound = math.ceil(math.log2((0.95 - 0.1) / 0.001)) + 2
    assert target.max_iterations == expected_bound
    encode = sized(linear)
    outcome = search_quality(encode, target)
    assert outcome.iterations <= expected_bound
    # max probe, bisection probes, possibly one min probe
    assert len(encode.probes) <= expected_bound + 2
    assert outcome.attempt.quality == pytest.approx(0.49, abs=0.002)


@pytest.mark.parametrize("target_size", [1100, 2600, 4100, 7777, 9000])
def test_result_fits_whenever_some_quality_fits(target_size):
    target = CompressionTarget(target_size=target_size)
    outcome = search_quality(sized(linear), target)
    assert outcome.met_target
    assert outcome.attempt.size <= target_size


def test_search_shorthand_returns_attempt():
    attempt = search(sized(linear), CompressionTarget(target_size=5000))
    assert attempt.size <= 5000


def test_encoder_errors_are_wrapped():
    def broken(quality):
        raise ValueError("bad parameters")

    with pytest.raises(EncodeFailure) as info:
        search_quality(broken, CompressionTarget(target_size=1000))
    assert isinstance(info.value.cause, ValueError)


def test_cancel_event_stops_between_probes():
    cancel = threading.Event()

    def encode(quality):
        cancel.set()
        return b"x" * linear(quality)

    with pytest.raises(SearchCancelled):
        search_quality(encode, CompressionTarget(target_size=5000), cancel)


def test_monotonicity_violation_is_reported(caplog):
    def bumpy(quality):
        return 5000 if quality > 0.9 else 8000

    with caplog.at_level(logging.WARNING):
        outcome = search_quality(sized(bumpy), CompressionTarget(target_size=100))
    assert outcome.violations
    violation = outcome.violations[0]
    assert violation.higher_quality > violation.lower_quality
    assert violation.higher_size < violation.lower_size
    assert "not monotone" in caplog.text


def test_small_size_jitter_is_not_a_violation():
    def jittery(quality):
        return linear(quality) + (30 if quality < 0.5 else 0)

    outcome = search_quality(sized(jittery), CompressionTarget(target_size=5000))
    assert outcome.violations == []


@pytest.mark.parametrize("kwargs", [
    dict(min_quality=0.5, max_quality=0.5),
    dict(min_quality=-0.1),
    dict(max_quality=1.5),
    dict(precision=0.0),
    dict(target_size=0),
])
def test_invalid_targets_are_rejected(kwargs):
    params = dict(target_size=1000)
    params.update(kwargs)
    with pytest.raises(InvalidInput):
        CompressionTarget(**params)
