#!/usr/bin/env python
"""
Multi-track changepoint detection: group fused LARS proposes an ordered path of candidate breakpoints, then exact
dynamic programming over those candidates picks the best segmentation and the number of segments.

Breakpoints are row indices j < num_rows - 1 marking the last row of a segment.
"""
from typing import Optional, Sequence, Tuple
import numpy


class Default:
    max_change_points = 300
    epsilon = 1e-9
    dp_threshold = 0.5
    float_type = numpy.float64
    int_type = numpy.int64


class LarsPath:
    """ Breakpoints in the order they entered the active set, with the regularization strength at entry """
    __slots__ = ("jumps", "lambdas")

    def __init__(self, jumps: Sequence[int] = (), lambdas: Sequence[float] = ()):
        self.jumps = numpy.array(jumps, dtype=Default.int_type)
        self.lambdas = numpy.array(lambdas, dtype=Default.float_type)

    def __len__(self):
        return len(self.jumps)

    def __repr__(self):
        return f"LarsPath({len(self)} jumps)"


def default_weights(num_rows: int) -> numpy.ndarray:
    """ position weights sqrt(n / (i * (n - i))) for jump positions i = 1 .. n - 1 """
    positions = numpy.arange(1, num_rows, dtype=Default.float_type)
    return numpy.sqrt(num_rows / (positions * (num_rows - positions)))


def _left_multiply_by_xt(signal: numpy.ndarray, weights: numpy.ndarray) -> numpy.ndarray:
    # X'Y for the weighted, centered step design X[t, i] = w_i * (1[t > i] - (n - i) / n)
    num_rows = signal.shape[0]
    positions = numpy.arange(1, num_rows, dtype=Default.float_type)[:, None]
    cumulative = numpy.cumsum(signal, axis=0)
    return weights[:, None] * (positions / num_rows * cumulative[-1] - cumulative[:-1])


def _multiply_x_by_sparse(num_rows: int, active: numpy.ndarray, coefficients: numpy.ndarray,
                          weights: numpy.ndarray) -> numpy.ndarray:
    # X_A * beta_A: centered piecewise-constant signal with steps after each active jump
    increments = numpy.zeros((num_rows, coefficients.shape[1]), dtype=Default.float_type)
    increments[active + 1] = weights[active, None] * coefficients
    signal = numpy.cumsum(increments, axis=0)
    return signal - signal.mean(axis=0)


def _solve_active_gram(num_rows: int, active: numpy.ndarray, values: numpy.ndarray,
                       weights: numpy.ndarray) -> numpy.ndarray:
    # (X_A' X_A)^-1 * values in O(|A|): the unweighted Gram matrix of the centered steps is the covariance of a
    # discrete Brownian bridge, whose inverse is tridiagonal in the gaps between sorted active positions
    active_weights = weights[active, None]
    scaled = values / active_weights
    gaps = numpy.diff(numpy.concatenate(([0], active + 1, [num_rows])))[:, None]
    padding = numpy.zeros((1, values.shape[1]), dtype=Default.float_type)
    delta = numpy.diff(numpy.vstack((padding, scaled, padding)), axis=0) / gaps
    return -numpy.diff(delta, axis=0) / active_weights


def _step_lengths(correlation: numpy.ndarray, gram_direction: numpy.ndarray, lambda2: float,
                  epsilon: float) -> numpy.ndarray:
    # for every inactive jump, the smallest gamma in (0, 1] with |c_i - gamma * a_i|^2 = (1 - gamma)^2 * lambda^2
    quad_a = (gram_direction ** 2).sum(axis=1) - lambda2
    quad_b = (gram_direction * correlation).sum(axis=1) - lambda2
    quad_c = (correlation ** 2).sum(axis=1) - lambda2
    sqrt_discriminant = numpy.sqrt(numpy.maximum(quad_b ** 2 - quad_a * quad_c, 0.0))
    with numpy.errstate(divide="ignore", invalid="ignore"):
        roots = numpy.stack(
            ((quad_b - sqrt_discriminant) / quad_a, (quad_b + sqrt_discriminant) / quad_a), axis=1
        )
        linear_roots = quad_c / (2 * quad_b)
    degenerate = numpy.abs(quad_a) <= epsilon
    roots[degenerate] = linear_roots[degenerate, None]
    roots[~((roots > epsilon) & (roots <= 1.0 + epsilon))] = numpy.inf
    return roots.min(axis=1)


def group_fused_lars(
        matrix: numpy.ndarray,
        max_change_points: int = Default.max_change_points,
        epsilon: float = Default.epsilon,
        weights: Optional[numpy.ndarray] = None
) -> LarsPath:
    f"""
    Compute the regularization path of the group fused lasso with the LARS heuristic. Each step adds the jump whose
    (group) correlation with the residual catches up with the active set, so the path is ordered by decreasing
    lambda.
    Args:
        matrix: numpy.ndarray
            num_rows x num_columns signal, one column per track
        max_change_points: int (Default={Default.max_change_points})
            Maximum number of jumps on the path. Never more than num_rows - 1.
        epsilon: float (Default={Default.epsilon})
            Numerical tolerance. The path stops once lambda^2 falls to epsilon.
        weights: numpy.ndarray or None (Default=None)
            Position weights for the num_rows - 1 possible jumps. If None, use default_weights.
    Returns:
        path: LarsPath
            Jumps in order of entry with their lambda
    """
    signal = numpy.asarray(matrix, dtype=Default.float_type)
    if signal.ndim == 1:
        signal = signal[:, None]
    num_rows = signal.shape[0]
    max_jumps = min(max_change_points, num_rows - 1)
    if max_jumps <= 0 or signal.shape[1] == 0:
        return LarsPath()
    weights = default_weights(num_rows) if weights is None else numpy.asarray(weights, dtype=Default.float_type)
    if weights.shape != (num_rows - 1,):
        raise ValueError(f"weights must have {num_rows - 1} elements, got {weights.shape}")

    correlation = _left_multiply_by_xt(signal - signal.mean(axis=0), weights)
    first_jump = int(numpy.argmax((correlation ** 2).sum(axis=1)))
    lambda2 = float((correlation[first_jump] ** 2).sum())
    if lambda2 <= epsilon:
        return LarsPath()

    is_active = numpy.zeros(num_rows - 1, dtype=bool)
    is_active[first_jump] = True
    jumps, lambdas = [first_jump], [numpy.sqrt(lambda2)]
    while len(jumps) < max_jumps:
        active = numpy.flatnonzero(is_active)
        direction = _solve_active_gram(num_rows, active, correlation[active], weights)
        gram_direction = _left_multiply_by_xt(_multiply_x_by_sparse(num_rows, active, direction, weights), weights)

        inactive = numpy.flatnonzero(~is_active)
        gammas = _step_lengths(correlation[inactive], gram_direction[inactive], lambda2, epsilon)
        best = int(numpy.argmin(gammas))
        gamma = min(float(gammas[best]), 1.0)
        correlation -= gamma * gram_direction
        lambda2 *= (1.0 - gamma) ** 2
        if lambda2 <= epsilon:
            # the active jumps explain the whole signal
            break
        next_jump = int(inactive[best])
        is_active[next_jump] = True
        jumps.append(next_jump)
        lambdas.append(numpy.sqrt(lambda2))
    return LarsPath(jumps, lambdas)


def segmentation_costs(matrix: numpy.ndarray, candidate_jumps: Sequence[int]) -> Tuple[numpy.ndarray, numpy.ndarray]:
    """
    Residual sum of squares of every segment that starts and ends on candidate boundaries.
    Args:
        matrix: numpy.ndarray
            num_rows x num_columns signal
        candidate_jumps: Sequence[int]
            candidate breakpoints, any order
    Returns:
        boundaries: numpy.ndarray
            -1, the sorted unique candidates, then num_rows - 1
        costs: numpy.ndarray
            costs[s, t] is the RSS of rows boundaries[s] + 1 .. boundaries[t], inf when s >= t
    """
    signal = numpy.asarray(matrix, dtype=Default.float_type)
    if signal.ndim == 1:
        signal = signal[:, None]
    num_rows = signal.shape[0]
    boundaries = numpy.concatenate(
        ([-1], numpy.unique(numpy.asarray(candidate_jumps, dtype=Default.int_type)), [num_rows - 1])
    ).astype(Default.int_type)
    if boundaries[1:-1].size and (boundaries[1] < 0 or boundaries[-2] >= num_rows - 1):
        raise ValueError(f"candidate jumps must lie in [0, {num_rows - 2}]")
    zero_row = numpy.zeros((1, signal.shape[1]), dtype=Default.float_type)
    sums = numpy.vstack((zero_row, numpy.cumsum(signal, axis=0)))[boundaries + 1]
    sums_of_squares = numpy.concatenate(([0.0], numpy.cumsum((signal ** 2).sum(axis=1))))[boundaries + 1]

    lengths = (boundaries[None, :] - boundaries[:, None]).astype(Default.float_type)
    segment_sums = sums[None, :, :] - sums[:, None, :]
    with numpy.errstate(divide="ignore", invalid="ignore"):
        costs = (sums_of_squares[None, :] - sums_of_squares[:, None]) - (segment_sums ** 2).sum(axis=2) / lengths
    costs = numpy.maximum(costs, 0.0)
    costs[lengths <= 0] = numpy.inf
    return boundaries, costs


def best_segmentations(costs: numpy.ndarray) -> Tuple[numpy.ndarray, numpy.ndarray]:
    """
    Exact dynamic programming over candidate boundaries.
    Returns:
        rss: numpy.ndarray
            rss[m] is the smallest total cost using exactly m of the candidate breakpoints
        back_pointers: numpy.ndarray
            back_pointers[m - 1, t] is the boundary preceding t in the best path with m breakpoints ending at t
    """
    num_boundaries = costs.shape[0]
    num_candidates = num_boundaries - 2
    rss = numpy.empty(num_candidates + 1, dtype=Default.float_type)
    back_pointers = numpy.zeros((num_candidates, num_boundaries), dtype=Default.int_type)
    path_cost = costs[0].copy()
    rss[0] = path_cost[-1]
    columns = numpy.arange(num_boundaries)
    for num_breaks in range(1, num_candidates + 1):
        totals = path_cost[:, None] + costs
        back_pointers[num_breaks - 1] = numpy.argmin(totals, axis=0)
        path_cost = totals[back_pointers[num_breaks - 1], columns]
        rss[num_breaks] = path_cost[-1]
    return rss, back_pointers


def _trace_back(boundaries: numpy.ndarray, back_pointers: numpy.ndarray, num_breaks: int) -> numpy.ndarray:
    jumps = []
    boundary_index = len(boundaries) - 1
    for breaks_left in range(num_breaks, 0, -1):
        boundary_index = back_pointers[breaks_left - 1, boundary_index]
        jumps.append(boundaries[boundary_index])
    return numpy.array(sorted(jumps), dtype=Default.int_type)


def select_num_segments(rss: numpy.ndarray, dp_threshold: float = Default.dp_threshold) -> int:
    f"""
    Choose the number of segments from the RSS curve by its normalized curvature: with J(s) the RSS of the best
    segmentation into s = 1 .. M segments,
        J~(s) = (J(M) - J(s)) / (J(M) - J(1)) * (M - 1) + 1
        D(s) = J~(s - 1) - 2 J~(s) + J~(s + 1),  s = 2 .. M, with J~(M + 1) = J~(M)
    pick the largest s with D(s) > dp_threshold, or 1 if there is none.
    Args:
        rss: numpy.ndarray
            rss[m] for m = 0 .. M - 1 breakpoints
        dp_threshold: float (Default={Default.dp_threshold})
            Curvature threshold
    Returns:
        num_segments: int
    """
    num_max = len(rss)
    if num_max < 2 or not rss[0] > rss[-1]:
        return 1
    normalized = (rss[-1] - rss) / (rss[-1] - rss[0]) * (num_max - 1) + 1
    padded = numpy.append(normalized, normalized[-1])
    curvature = padded[:-2] - 2 * padded[1:-1] + padded[2:]
    qualifying = numpy.flatnonzero(curvature > dp_threshold)
    return int(qualifying[-1]) + 2 if qualifying.size else 1


def select_best_k(
        matrix: numpy.ndarray,
        candidate_jumps: Sequence[int],
        dp_threshold: float = Default.dp_threshold
) -> numpy.ndarray:
    """
    Refine candidate breakpoints: find the best segmentation for every number of breakpoints by dynamic programming,
    then keep the one chosen by select_num_segments.
    Returns:
        selected_jumps: numpy.ndarray
            sorted subset of candidate_jumps
    """
    if len(candidate_jumps) == 0:
        return numpy.array([], dtype=Default.int_type)
    boundaries, costs = segmentation_costs(matrix, candidate_jumps)
    rss, back_pointers = best_segmentations(costs)
    num_segments = select_num_segments(rss, dp_threshold=dp_threshold)
    return _trace_back(boundaries, back_pointers, num_segments - 1)


def detect_and_select(
        matrix: numpy.ndarray,
        max_change_points: int = Default.max_change_points,
        epsilon: float = Default.epsilon,
        dp_threshold: float = Default.dp_threshold
) -> numpy.ndarray:
    """
    Candidate breakpoints from group fused LARS, refined by dynamic programming. At most max_change_points breakpoints
    are returned, sorted by row.
    """
    path = group_fused_lars(matrix, max_change_points=max_change_points, epsilon=epsilon)
    return select_best_k(matrix, path.jumps, dp_threshold=dp_threshold)
