"""
Execution segment partitioning.

Splits the [0,1] load range into N contiguous segments, one per runner. Every
function here is pure: runners created independently must agree on their
boundaries without talking to each other.
"""

from __future__ import annotations

import json
from fractions import Fraction
from typing import Any

from loadop.core.errors import SegmentRangeError

BEGINNING = "0"
END = "1"


def boundary(index: int, total: int) -> str:
    """Boundary string for position ``index`` of ``total``, in lowest terms."""
    if index == 0:
        return BEGINNING
    if index == total:
        return END
    value = Fraction(index, total)
    return f"{value.numerator}/{value.denominator}"


def segment(index: int, total: int) -> str:
    """
    Return the ``"<lower>:<upper>"`` segment owned by runner ``index`` (1-based).

    Raises:
        SegmentRangeError: If ``index`` exceeds ``total``.
    """
    if index > total:
        raise SegmentRangeError(
            "node index exceeds configured parallelism",
            context={"index": index, "total": total},
        )
    return f"{boundary(index - 1, total)}:{boundary(index, total)}"


def command_segment(index: int, total: int) -> str:
    """Command-line flag carrying the segment for runner ``index``."""
    return f"--execution-segment={segment(index, total)}"


def segment_sequence(total: int) -> str | None:
    """
    Full ordered boundary sequence, e.g. ``"0,1/3,2/3,1"`` for 3 runners.

    A single runner owns the whole range implicitly, so there is no sequence
    for ``total <= 1``.
    """
    if total <= 1:
        return None
    inner = [f"{i}/{total}" for i in range(1, total)]
    return ",".join([BEGINNING, *inner, END])


def segment_sequence_config(total: int) -> dict[str, Any] | None:
    sequence = segment_sequence(total)
    if sequence is None:
        return None
    return {"executionSegmentSequence": sequence}


def segment_sequence_json(total: int) -> str | None:
    config = segment_sequence_config(total)
    if config is None:
        return None
    return json.dumps(config)
