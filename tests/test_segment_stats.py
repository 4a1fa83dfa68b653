import numpy
import pytest

from cnseg import segment_stats
from cnseg.segment_stats import UndoBreaksMode


def _column(*segments) -> numpy.ndarray:
    return numpy.concatenate([numpy.array(segment, dtype=float) for segment in segments])[:, None]


def _four_segment_signal():
    # a and c are separated by a short segment, d is noisy
    segment_a = [0, 1, 2, 3, 4]
    segment_b = [50, 51]
    segment_c = [20, 21, 22, 23, 24]
    segment_d = [0, 30, 5, 25, 10]
    return _column(segment_a, segment_b, segment_c, segment_d), [4, 6, 11]


def test_segment_boundaries():
    assert segment_stats.segment_boundaries(5, [3, 1, 3]).tolist() == [-1, 1, 3, 4]
    assert segment_stats.segment_boundaries(5, []).tolist() == [-1, 4]
    with pytest.raises(ValueError, match="breakpoints must lie in"):
        segment_stats.segment_boundaries(5, [4])
    with pytest.raises(ValueError, match="breakpoints must lie in"):
        segment_stats.segment_boundaries(5, [-1, 2])


def test_distinct_mean_sd():
    mean, sd, num_distinct = segment_stats.distinct_mean_sd(numpy.array([1.0, 1.0, 2.0, 3.0, 3.0, 3.0]))
    assert (mean, num_distinct) == (2.0, 3)
    assert sd == pytest.approx(numpy.sqrt(2.0 / 3.0))
    # only consecutive repeats are collapsed
    mean, sd, num_distinct = segment_stats.distinct_mean_sd(numpy.array([1.0, 2.0, 1.0]))
    assert num_distinct == 3
    assert mean == pytest.approx(4.0 / 3.0)
    mean, sd, num_distinct = segment_stats.distinct_mean_sd(numpy.array([]))
    assert numpy.isnan(mean) and numpy.isnan(sd) and num_distinct == 0


@pytest.mark.parametrize(
    "values,expected",
    [
        ([1, 1, 2, 3, 3, 3], 2.0),
        ([1, 2, 3, 4], 3.0),
        ([3, 1, 3], 3.0),
        ([5, 5, 5], 5.0),
        ([-0.5], -0.5),
        ([4, 4, 1, 1, 2, 2, 3, 3], 3.0)
    ]
)
def test_distinct_upper_median(values, expected):
    assert segment_stats.distinct_upper_median(numpy.array(values, dtype=float)) == expected


def test_distinct_upper_median_empty():
    with pytest.raises(ValueError):
        segment_stats.distinct_upper_median(numpy.array([]))


def test_undo_breaks_merges_identical_segments():
    signal = _column([1, 2, 3, 4, 5], [1, 2, 3, 4, 5])
    assert segment_stats.undo_breaks(signal, [4]).tolist() == []


def test_undo_breaks_keeps_different_segments():
    signal = _column([1, 2, 3, 4, 5], [11, 12, 13, 14, 15])
    assert segment_stats.undo_breaks(signal, [4]).tolist() == [4]
    # carried-forward repeats do not count as extra values
    signal = _column([1, 1, 1, 2, 2, 3, 4, 5], [11, 12, 13, 14, 15])
    assert segment_stats.undo_breaks(signal, [7]).tolist() == [7]


def test_undo_breaks_scale():
    # means differ by 3, both standard deviations are sqrt(2)
    signal = _column([1, 2, 3, 4, 5], [4, 5, 6, 7, 8])
    assert segment_stats.undo_breaks(signal, [4], scale=1.0).tolist() == [4]
    assert segment_stats.undo_breaks(signal, [4], scale=2.5).tolist() == []


def test_undo_breaks_small_segments():
    signal = _column([1, 2, 3, 4], [11, 12, 13, 14])
    assert segment_stats.undo_breaks(signal, [3]).tolist() == []
    assert segment_stats.undo_breaks(signal, [3], min_distinct_values=4).tolist() == [3]
    signal = _column([1, 1, 1, 1, 1, 2, 2, 2], [11, 12, 13, 14, 15])
    assert segment_stats.undo_breaks(signal, [7]).tolist() == []


def test_undo_breaks_any_column():
    same = _column([1, 2, 3, 4, 5], [1, 2, 3, 4, 5])
    different = _column([1, 2, 3, 4, 5], [11, 12, 13, 14, 15])
    assert segment_stats.undo_breaks(numpy.hstack((same, same)), [4]).tolist() == []
    assert segment_stats.undo_breaks(numpy.hstack((same, different)), [4]).tolist() == [4]


def test_undo_breaks_small_column_with_qualifying_column():
    # far apart, but only 2 distinct values on each side, so this column alone cannot keep the breakpoint
    too_few = _column([1, 1, 1, 1, 2], [50, 50, 50, 50, 51])
    same = _column([1, 2, 3, 4, 5], [1, 2, 3, 4, 5])
    different = _column([1, 2, 3, 4, 5], [11, 12, 13, 14, 15])
    assert segment_stats.undo_breaks(too_few, [4]).tolist() == []
    assert segment_stats.undo_breaks(numpy.hstack((too_few, same)), [4]).tolist() == []
    assert segment_stats.undo_breaks(numpy.hstack((too_few, different)), [4]).tolist() == [4]
    assert segment_stats.undo_breaks(numpy.hstack((different, too_few)), [4]).tolist() == [4]


def test_undo_breaks_no_breakpoints():
    signal = _column([1, 2, 3, 4, 5])
    assert segment_stats.undo_breaks(signal, []).tolist() == []


def test_undo_breaks_to_fixed_point():
    signal, jumps = _four_segment_signal()
    assert segment_stats.undo_breaks(signal, jumps).tolist() == [11]
    assert segment_stats.undo_breaks(signal, [11]).tolist() == []
    assert segment_stats.undo_breaks_to_fixed_point(signal, jumps).tolist() == []


def test_undo_breaks_mode():
    signal, jumps = _four_segment_signal()
    assert UndoBreaksMode.Off.apply(signal, jumps).tolist() == jumps
    assert UndoBreaksMode.Once.apply(signal, jumps).tolist() == [11]
    assert UndoBreaksMode.FixedPoint.apply(signal, jumps).tolist() == []
    assert UndoBreaksMode.choices() == ("off", "once", "fixed-point")
    assert UndoBreaksMode("fixed-point") is UndoBreaksMode.FixedPoint
    assert str(UndoBreaksMode.Once) == "once"


def test_smooth_signal():
    signal = numpy.array(
        [[1.0, 0.0],
         [1.0, 2.0],
         [3.0, 1.0],
         [5.0, 7.0],
         [6.0, 7.0],
         [5.0, 7.0]]
    )
    smoothed = segment_stats.smooth_signal(signal, [2])
    assert smoothed.num_segments == 2
    assert smoothed.jumps.tolist() == [2, 5]
    assert smoothed.segment_starts.tolist() == [0, 3]
    assert numpy.array_equal(smoothed.smooth, [[3.0, 1.0], [5.0, 7.0]])

    unsegmented = segment_stats.smooth_signal(signal, [])
    assert unsegmented.jumps.tolist() == [5]
    assert unsegmented.segment_starts.tolist() == [0]


def test_expand_piecewise_constant():
    smoothed = segment_stats.SmoothSignal(jumps=numpy.array([1, 4, 5]), smooth=numpy.array([[1.0], [2.0], [3.0]]))
    expanded = segment_stats.expand_piecewise_constant(smoothed)
    assert expanded.shape == (6, 1)
    assert expanded[:, 0].tolist() == [1.0, 1.0, 2.0, 2.0, 2.0, 3.0]
