#!/usr/bin/env python
from enum import Enum
from typing import Sequence, Tuple
import numpy

from cnseg import common


class Default:
    undo_breaks_scale = 1.0
    min_distinct_values = 5
    float_type = numpy.float64
    int_type = numpy.int64


class SmoothSignal:
    """
    Piecewise-constant summary of a signal matrix.
        jumps: last row of every segment, so the final jump is always num_rows - 1
        smooth: num_segments x num_columns robust value of each segment in each column
    """
    __slots__ = ("jumps", "smooth")

    def __init__(self, jumps: numpy.ndarray, smooth: numpy.ndarray):
        self.jumps = jumps
        self.smooth = smooth

    @property
    def num_segments(self) -> int:
        return len(self.jumps)

    @property
    def segment_starts(self) -> numpy.ndarray:
        """ first row of every segment """
        return numpy.concatenate(([0], self.jumps[:-1] + 1)).astype(Default.int_type)

    def __repr__(self):
        return f"SmoothSignal({self.num_segments} segments x {self.smooth.shape[1]} columns)"


class UndoBreaksMode(Enum):
    """ How breakpoints that do not separate significantly different segments are removed """
    Off = "off"
    Once = "once"
    FixedPoint = "fixed-point"

    @classmethod
    def choices(cls) -> Tuple[str, ...]:
        return tuple(mode.value for mode in cls)

    def __str__(self):
        return self.value

    def apply(self, matrix: numpy.ndarray, jumps: Sequence[int],
              scale: float = Default.undo_breaks_scale) -> numpy.ndarray:
        if self == UndoBreaksMode.Once:
            return undo_breaks(matrix, jumps, scale=scale)
        elif self == UndoBreaksMode.FixedPoint:
            return undo_breaks_to_fixed_point(matrix, jumps, scale=scale)
        else:
            return numpy.asarray(jumps, dtype=Default.int_type)


def segment_boundaries(num_rows: int, jumps: Sequence[int]) -> numpy.ndarray:
    """
    Sorted boundaries -1, jumps..., num_rows - 1. Segment i spans rows boundaries[i] + 1 .. boundaries[i + 1].
    """
    jumps = numpy.unique(numpy.asarray(jumps, dtype=Default.int_type))
    if jumps.size and (jumps[0] < 0 or jumps[-1] >= num_rows - 1):
        raise ValueError(f"breakpoints must lie in [0, {num_rows - 2}], got {jumps[0]} .. {jumps[-1]}")
    return numpy.concatenate(([-1], jumps, [num_rows - 1])).astype(Default.int_type)


def distinct_mean_sd(values: numpy.ndarray) -> Tuple[float, float, int]:
    """
    Mean and (population) standard deviation of values after collapsing runs of consecutive identical values, so
    that long stretches of carried-forward values count only once.
    Returns:
        mean: float
        sd: float
        num_distinct: int
            number of values that went into the statistics
    """
    distinct = common.drop_consecutive_duplicates(values)
    if distinct.size == 0:
        return numpy.nan, numpy.nan, 0
    return float(distinct.mean()), float(distinct.std()), distinct.size


def distinct_upper_median(values: numpy.ndarray) -> float:
    """ median of values after collapsing consecutive duplicates; the upper one of the two middle values if even """
    distinct = numpy.sort(common.drop_consecutive_duplicates(values))
    if distinct.size == 0:
        raise ValueError("no values to take the median of")
    return float(distinct[distinct.size // 2])


def segment_distinct_stats(
        matrix: numpy.ndarray,
        jumps: Sequence[int]
) -> Tuple[numpy.ndarray, numpy.ndarray, numpy.ndarray, numpy.ndarray]:
    """
    Per-segment, per-column deduplicated statistics.
    Returns:
        boundaries: numpy.ndarray
            see segment_boundaries
        means, sds: numpy.ndarray
            num_segments x num_columns
        counts: numpy.ndarray
            num_segments x num_columns number of distinct values incorporated
    """
    num_rows, num_columns = matrix.shape
    boundaries = segment_boundaries(num_rows, jumps)
    num_segments = len(boundaries) - 1
    means = numpy.empty((num_segments, num_columns), dtype=Default.float_type)
    sds = numpy.empty((num_segments, num_columns), dtype=Default.float_type)
    counts = numpy.empty((num_segments, num_columns), dtype=Default.int_type)
    for segment, (last_row_before, last_row) in enumerate(zip(boundaries[:-1], boundaries[1:])):
        for column in range(num_columns):
            means[segment, column], sds[segment, column], counts[segment, column] = distinct_mean_sd(
                matrix[last_row_before + 1:last_row + 1, column]
            )
    return boundaries, means, sds, counts


def undo_breaks(
        matrix: numpy.ndarray,
        jumps: Sequence[int],
        scale: float = Default.undo_breaks_scale,
        min_distinct_values: int = Default.min_distinct_values
) -> numpy.ndarray:
    f"""
    Single pass of the segment-merge test. A breakpoint is kept if, in at least one column, both adjacent segments
    have at least {Default.min_distinct_values} distinct values and their mean difference exceeds scale times the
    standard deviation of either segment. All other breakpoints are dropped, merging their segments.
    Args:
        matrix: numpy.ndarray
            num_rows x num_columns signal
        jumps: Sequence[int]
            breakpoints to test
        scale: float (Default={Default.undo_breaks_scale})
            multiplier of the standard deviation
        min_distinct_values: int (Default={Default.min_distinct_values})
            segments with fewer distinct values in a column are not tested in that column
    Returns:
        kept_jumps: numpy.ndarray
            sorted surviving breakpoints
    """
    boundaries, means, sds, counts = segment_distinct_stats(matrix, jumps)
    mean_differences = numpy.abs(means[:-1] - means[1:])
    enough_values = (counts[:-1] >= min_distinct_values) & (counts[1:] >= min_distinct_values)
    with numpy.errstate(invalid="ignore"):
        different = (mean_differences > scale * sds[:-1]) | (mean_differences > scale * sds[1:])
    keep = (enough_values & different).any(axis=1)
    return boundaries[1:-1][keep]


def undo_breaks_to_fixed_point(
        matrix: numpy.ndarray,
        jumps: Sequence[int],
        scale: float = Default.undo_breaks_scale,
        min_distinct_values: int = Default.min_distinct_values
) -> numpy.ndarray:
    """ repeat undo_breaks until the number of breakpoints stops shrinking """
    jumps = numpy.unique(numpy.asarray(jumps, dtype=Default.int_type))
    while True:
        kept_jumps = undo_breaks(matrix, jumps, scale=scale, min_distinct_values=min_distinct_values)
        if len(kept_jumps) == len(jumps):
            return kept_jumps
        jumps = kept_jumps


def smooth_signal(matrix: numpy.ndarray, jumps: Sequence[int]) -> SmoothSignal:
    """
    Robust value of each segment in each column: the upper median of the values left after collapsing consecutive
    duplicates.
    Args:
        matrix: numpy.ndarray
            num_rows x num_columns signal
        jumps: Sequence[int]
            final breakpoints
    Returns:
        smooth_signal: SmoothSignal
    """
    num_rows, num_columns = matrix.shape
    boundaries = segment_boundaries(num_rows, jumps)
    smooth = numpy.empty((len(boundaries) - 1, num_columns), dtype=Default.float_type)
    for segment, (last_row_before, last_row) in enumerate(zip(boundaries[:-1], boundaries[1:])):
        for column in range(num_columns):
            smooth[segment, column] = distinct_upper_median(matrix[last_row_before + 1:last_row + 1, column])
    return SmoothSignal(jumps=boundaries[1:], smooth=smooth)


def expand_piecewise_constant(smoothed: SmoothSignal) -> numpy.ndarray:
    """ num_rows x num_columns matrix holding each segment's smoothed value on every one of its rows """
    segment_lengths = numpy.diff(numpy.concatenate(([-1], smoothed.jumps)))
    return numpy.repeat(smoothed.smooth, segment_lengths, axis=0)
