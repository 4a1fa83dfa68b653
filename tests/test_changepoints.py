import numpy
import pytest

from cnseg import changepoints


class Default:
    random_seed = 0


def _explicit_design(num_rows: int, weights: numpy.ndarray) -> numpy.ndarray:
    design = numpy.empty((num_rows, num_rows - 1))
    rows = numpy.arange(num_rows)
    for position in range(1, num_rows):
        design[:, position - 1] = weights[position - 1] * ((rows >= position) - (num_rows - position) / num_rows)
    return design


def _noisy_steps(levels, segment_length: int, num_columns: int, noise_sd: float, random_seed: int = Default.random_seed):
    random_state = numpy.random.RandomState(random_seed)
    means = numpy.repeat(numpy.array(levels, dtype=float), segment_length)[:, None]
    return means + noise_sd * random_state.standard_normal((len(levels) * segment_length, num_columns))


def test_default_weights():
    weights = changepoints.default_weights(4)
    assert numpy.allclose(weights, [numpy.sqrt(4 / 3), numpy.sqrt(4 / 4), numpy.sqrt(4 / 3)])
    assert changepoints.default_weights(1).size == 0


def test_design_products_match_explicit_matrix():
    num_rows = 12
    weights = changepoints.default_weights(num_rows)
    design = _explicit_design(num_rows, weights)
    signal = numpy.random.RandomState(Default.random_seed).standard_normal((num_rows, 3))

    assert numpy.allclose(changepoints._left_multiply_by_xt(signal, weights), design.T @ signal)

    active = numpy.array([2, 5, 9])
    coefficients = numpy.array([[1.0, -2.0, 0.5], [0.0, 3.0, 1.0], [-1.5, 0.25, 2.0]])
    assert numpy.allclose(
        changepoints._multiply_x_by_sparse(num_rows, active, coefficients, weights),
        design[:, active] @ coefficients
    )

    gram = design[:, active].T @ design[:, active]
    assert numpy.allclose(
        changepoints._solve_active_gram(num_rows, active, coefficients, weights),
        numpy.linalg.solve(gram, coefficients)
    )


def test_group_fused_lars_finds_step_first():
    signal = numpy.concatenate((numpy.zeros(5), numpy.full(5, 3.0)))[:, None]
    path = changepoints.group_fused_lars(signal)
    assert len(path) >= 1
    assert path.jumps[0] == 4
    assert len(path.lambdas) == len(path.jumps)


def test_group_fused_lars_path_bounds():
    signal = _noisy_steps([0.0, 2.0, -1.0, 1.0], segment_length=10, num_columns=2, noise_sd=0.5)
    path = changepoints.group_fused_lars(signal, max_change_points=5)
    assert len(path) <= 5
    assert len(set(path.jumps.tolist())) == len(path)
    assert numpy.all(numpy.diff(path.lambdas) <= 1e-9)

    short_signal = _noisy_steps([0.0, 1.0], segment_length=3, num_columns=1, noise_sd=1.0)
    path = changepoints.group_fused_lars(short_signal, max_change_points=300)
    assert len(path) <= short_signal.shape[0] - 1
    assert numpy.all((path.jumps >= 0) & (path.jumps <= short_signal.shape[0] - 2))

    assert len(changepoints.group_fused_lars(signal, max_change_points=0)) == 0
    assert len(changepoints.group_fused_lars(signal[:1])) == 0


def test_group_fused_lars_constant_signal():
    assert len(changepoints.group_fused_lars(numpy.full((20, 3), 1.5))) == 0
    assert len(changepoints.group_fused_lars(numpy.zeros((20, 1)))) == 0


def test_group_fused_lars_bad_weights():
    with pytest.raises(ValueError, match="weights must have 9 elements"):
        changepoints.group_fused_lars(numpy.zeros((10, 1)), weights=numpy.ones(10))


def test_segmentation_costs():
    signal = numpy.array([1.0, 1.0, 5.0, 5.0, 9.0])[:, None]
    boundaries, costs = changepoints.segmentation_costs(signal, [3, 1])
    assert boundaries.tolist() == [-1, 1, 3, 4]
    assert costs[0, 3] == pytest.approx(44.8)
    assert costs[0, 1] == pytest.approx(0.0)
    assert costs[1, 3] == pytest.approx(32.0 / 3.0)
    assert costs[2, 3] == pytest.approx(0.0)
    assert numpy.isinf(costs[1, 1])
    assert numpy.isinf(costs[3, 0])

    with pytest.raises(ValueError, match="candidate jumps must lie in"):
        changepoints.segmentation_costs(signal, [4])
    with pytest.raises(ValueError, match="candidate jumps must lie in"):
        changepoints.segmentation_costs(signal, [-1, 2])


def test_best_segmentations():
    signal = numpy.array([1.0, 1.0, 5.0, 5.0, 9.0])[:, None]
    boundaries, costs = changepoints.segmentation_costs(signal, [1, 3])
    rss, back_pointers = changepoints.best_segmentations(costs)
    assert numpy.allclose(rss, [44.8, 32.0 / 3.0, 0.0])
    assert changepoints._trace_back(boundaries, back_pointers, 0).tolist() == []
    assert changepoints._trace_back(boundaries, back_pointers, 1).tolist() == [1]
    assert changepoints._trace_back(boundaries, back_pointers, 2).tolist() == [1, 3]


@pytest.mark.parametrize(
    "rss,dp_threshold,expected",
    [
        ([22.5, 0.0], 0.5, 2),
        ([100.0, 10.0, 9.9], 0.5, 2),
        ([100.0, 10.0, 9.9], 2.5, 1),
        ([100.0, 50.0, 0.0], 0.5, 3),
        ([5.0, 5.0, 5.0], 0.5, 1),
        ([7.0], 0.5, 1)
    ]
)
def test_select_num_segments(rss, dp_threshold, expected):
    assert changepoints.select_num_segments(numpy.array(rss), dp_threshold=dp_threshold) == expected


def test_select_best_k():
    signal = numpy.array([1.0, 1.0, 5.0, 5.0, 9.0])[:, None]
    # rss is 44.8, 32/3, 0: the last drop is too small to pass the default threshold
    assert changepoints.select_best_k(signal, [3, 1]).tolist() == [1]
    assert changepoints.select_best_k(signal, [3, 1], dp_threshold=0.4).tolist() == [1, 3]
    assert changepoints.select_best_k(signal, []).tolist() == []


def test_detect_and_select_two_steps():
    signal = _noisy_steps([0.0, 4.0, 0.0], segment_length=30, num_columns=2, noise_sd=0.1)
    assert changepoints.detect_and_select(signal).tolist() == [29, 59]
    assert changepoints.detect_and_select(signal, max_change_points=0).tolist() == []


def test_detect_and_select_step():
    signal = numpy.concatenate((numpy.zeros(5), numpy.full(5, 3.0)))[:, None]
    assert changepoints.detect_and_select(signal).tolist() == [4]
