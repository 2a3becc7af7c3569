# oracle_sync/correlation.py
"""
Time-series alignment between exchange feeds.

Prices are turned into relative returns keyed by client receipt time, then for
every candidate clock offset the two series are merge-joined and correlated.
The offset with the highest Pearson correlation is the best estimate of the
relative latency between the two feeds.
"""
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .config import CalibrationConfig
from .models import OffsetSearchResult, PriceReturns, PriceSnapshot

CORRELATION_WEIGHT = 0.5
LIQUIDITY_WEIGHT = 0.3
DEPTH_WEIGHT = 0.2


@dataclass(slots=True, frozen=True)
class AlignedReturns:
    returns_a: Tuple[float, ...]
    returns_b: Tuple[float, ...]
    overlap_ms: int
    # summed |tA - tB'| over the paired samples
    alignment_error: int


def calculate_price_returns(snapshots: Sequence[PriceSnapshot], exchange_name: str) -> Optional[PriceReturns]:
    """
    returns[i] = (p[i] - p[i-1]) / p[i-1], stamped with snapshot i's client timestamp.
    Client time is the only clock every feed shares, so server time is ignored here.
    A zero previous price yields no return for that step.
    """
    if len(snapshots) < 2:
        return None

    returns = []
    timestamps = []
    for prev, curr in zip(snapshots, snapshots[1:]):
        if prev.price == 0:
            continue
        returns.append((curr.price - prev.price) / prev.price)
        timestamps.append(curr.client_timestamp)

    return PriceReturns(exchange=exchange_name, returns=tuple(returns), timestamps=tuple(timestamps))


def pearson_correlation(data_a: Sequence[float], data_b: Sequence[float]) -> float:
    """
    Pearson r in [-1, 1]. Mismatched or empty inputs and zero variance give 0.
    """
    n = len(data_a)
    if n == 0 or n != len(data_b):
        return 0.0

    mean_a = sum(data_a) / n
    mean_b = sum(data_b) / n

    covariance = 0.0
    variance_a = 0.0
    variance_b = 0.0
    for a, b in zip(data_a, data_b):
        diff_a = a - mean_a
        diff_b = b - mean_b
        covariance += diff_a * diff_b
        variance_a += diff_a * diff_a
        variance_b += diff_b * diff_b

    denominator = math.sqrt(variance_a * variance_b)
    if denominator == 0 or not math.isfinite(denominator):
        return 0.0

    # rounding can push |r| a hair past 1
    return max(-1.0, min(1.0, covariance / denominator))


def align_returns_with_offset(
    returns_a: PriceReturns,
    returns_b: PriceReturns,
    offset_ms: int,
    tolerance_ms: int = 100,
) -> Optional[AlignedReturns]:
    """
    Shifts B by offset_ms (positive delays B) and pairs samples whose timestamps
    are closer than tolerance_ms. Both series are time-ordered, so this is a
    single merge pass rather than a cross product.
    Returns None when the shifted series do not overlap at all.
    """
    ts_a = returns_a.timestamps
    ts_b = returns_b.timestamps
    if not ts_a or not ts_b:
        return None

    overlap_start = max(ts_a[0], ts_b[0] + offset_ms)
    overlap_end = min(ts_a[-1], ts_b[-1] + offset_ms)
    overlap_ms = overlap_end - overlap_start
    if overlap_ms < 0:
        return None

    aligned_a = []
    aligned_b = []
    alignment_error = 0
    idx_a = 0
    idx_b = 0
    len_a = len(ts_a)
    len_b = len(ts_b)

    while idx_a < len_a and idx_b < len_b:
        time_a = ts_a[idx_a]
        time_b = ts_b[idx_b] + offset_ms
        time_diff = abs(time_a - time_b)

        if time_diff < tolerance_ms:
            if overlap_start <= time_a <= overlap_end:
                aligned_a.append(returns_a.returns[idx_a])
                aligned_b.append(returns_b.returns[idx_b])
                alignment_error += time_diff
            idx_a += 1
            idx_b += 1
        elif time_a < time_b:
            idx_a += 1
        else:
            idx_b += 1

    return AlignedReturns(
        returns_a=tuple(aligned_a),
        returns_b=tuple(aligned_b),
        overlap_ms=overlap_ms,
        alignment_error=alignment_error,
    )


def find_optimal_offset(
    returns_a: PriceReturns,
    returns_b: PriceReturns,
    config: CalibrationConfig,
) -> OffsetSearchResult:
    """
    Grid search over [-offset_range_ms, +offset_range_ms] in offset_step_ms steps.

    Candidates with too little overlap or too few paired samples are skipped.
    Equal correlations are resolved in favour of the tighter timestamp pairing,
    since neighbouring offsets inside the alignment tolerance pair up the very
    same samples. If nothing was feasible the result carries correlation -1 and
    sample_size 0; callers must check sample_size before trusting it.
    """
    max_correlation = -1.0
    best_error = None
    optimal_offset_ms = 0
    best_sample_size = 0
    best_overlap_ms = 0

    for offset in range(-config.offset_range_ms, config.offset_range_ms + 1, config.offset_step_ms):
        aligned = align_returns_with_offset(returns_a, returns_b, offset, config.align_tolerance_ms)
        if aligned is None:
            continue
        if aligned.overlap_ms < config.min_overlap_ms:
            continue
        sample_size = len(aligned.returns_a)
        if sample_size < config.min_sample_size:
            continue

        correlation = pearson_correlation(aligned.returns_a, aligned.returns_b)

        better = correlation > max_correlation or best_error is None
        tie = correlation == max_correlation and best_error is not None and aligned.alignment_error < best_error
        if better or tie:
            max_correlation = correlation
            best_error = aligned.alignment_error
            optimal_offset_ms = offset
            best_sample_size = sample_size
            best_overlap_ms = aligned.overlap_ms

    return OffsetSearchResult(
        offset_ms=optimal_offset_ms,
        correlation=max_correlation,
        sample_size=best_sample_size,
        overlap_ms=best_overlap_ms,
    )


def calculate_pair_weight(
    baseline_correlation: float,
    liquidity_a: float,
    liquidity_b: float,
    snapshots_a: int,
    snapshots_b: int,
    max_liquidity: float,
    max_snapshots: int,
) -> float:
    """
    weight = 0.5 * max(0, r) + 0.3 * liquidity share + 0.2 * sample-depth share.
    The shares are relative to the best exchange of the same cycle.
    """
    weight_correlation = max(0.0, baseline_correlation) * CORRELATION_WEIGHT

    avg_liquidity = (liquidity_a + liquidity_b) / 2
    normalized_liquidity = avg_liquidity / max_liquidity if max_liquidity > 0 else 0.0
    weight_liquidity = normalized_liquidity * LIQUIDITY_WEIGHT

    avg_snapshots = (snapshots_a + snapshots_b) / 2
    normalized_depth = avg_snapshots / max_snapshots if max_snapshots > 0 else 0.0
    weight_depth = normalized_depth * DEPTH_WEIGHT

    return min(1.0, weight_correlation + weight_liquidity + weight_depth)
