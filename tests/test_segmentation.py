from fractions import Fraction
import json

import pytest

from loadop.core import segmentation
from loadop.core.errors import SegmentRangeError


def _bounds(seg: str) -> tuple[Fraction, Fraction]:
    lower, upper = seg.split(":")
    return Fraction(lower), Fraction(upper)


def test_known_segments():
    assert segmentation.segment(2, 4) == "1/4:1/2"
    assert segmentation.segment(1, 1) == "0:1"
    assert segmentation.segment(1, 3) == "0:1/3"
    assert segmentation.segment(3, 3) == "2/3:1"


def test_index_beyond_parallelism_is_rejected():
    with pytest.raises(SegmentRangeError):
        segmentation.segment(6, 5)
    # Also a ValueError for callers that only know the builtin.
    with pytest.raises(ValueError):
        segmentation.segment(2, 1)


@pytest.mark.parametrize("total", [1, 2, 3, 7, 10, 64])
def test_segments_partition_unit_range(total):
    previous_upper = Fraction(0)
    for index in range(1, total + 1):
        lower, upper = _bounds(segmentation.segment(index, total))
        assert lower == previous_upper
        assert upper > lower
        previous_upper = upper
    assert previous_upper == 1


def test_segment_is_deterministic():
    first = [segmentation.segment(i, 9) for i in range(1, 10)]
    second = [segmentation.segment(i, 9) for i in reversed(range(1, 10))]
    assert first == list(reversed(second))


def test_boundaries_are_reduced():
    assert segmentation.boundary(2, 4) == "1/2"
    assert segmentation.boundary(3, 9) == "1/3"
    assert segmentation.boundary(0, 4) == "0"
    assert segmentation.boundary(4, 4) == "1"


def test_command_segment_flag():
    assert segmentation.command_segment(2, 4) == "--execution-segment=1/4:1/2"


def test_segment_sequence():
    assert segmentation.segment_sequence(3) == "0,1/3,2/3,1"
    assert segmentation.segment_sequence(2) == "0,1/2,1"
    assert segmentation.segment_sequence(1) is None


def test_segment_sequence_json_payload():
    payload = json.loads(segmentation.segment_sequence_json(4))
    assert payload == {"executionSegmentSequence": "0,1/4,2/4,3/4,1"}
    assert segmentation.segment_sequence_json(1) is None
