# oracle_sync/correlation_engine.py
import math
import time
from typing import Dict, List, Mapping, Optional

from .config import CalibrationConfig
from .correlation import calculate_pair_weight, calculate_price_returns, find_optimal_offset
from .logger import EventSink
from .models import CorrelationMatrix, CorrelationResult, ExchangeView, PriceReturns, now_ms

SOURCE = "CorrelationEngine"


class CorrelationEngine:
    """
    Builds the all-pairs correlation matrix for one cycle.
    Unhealthy or thin exchanges are dropped from the cycle (and recorded), never fatal.
    Each call produces a fresh matrix that replaces the previous one wholesale.
    """
    def __init__(self, config: CalibrationConfig, sink: EventSink):
        self._config = config
        self.sink = sink
        self._last_matrix: Optional[CorrelationMatrix] = None

    @property
    def config(self) -> CalibrationConfig:
        return self._config

    @property
    def last_matrix(self) -> Optional[CorrelationMatrix]:
        return self._last_matrix

    def is_exchange_healthy(self, last_update: int, now: int) -> bool:
        return now - last_update < self._config.health_check_timeout_ms

    def calculate_correlation_matrix(
        self,
        exchanges: Mapping[str, ExchangeView],
        now: Optional[int] = None,
    ) -> CorrelationMatrix:
        """
        `exchanges` must iterate in the fixed configured order; pairs are formed as i < j over it.
        """
        now = now_ms() if now is None else now
        started = time.perf_counter()

        # 1. Health & sufficiency filters
        healthy: List[str] = []
        excluded: Dict[str, str] = {}
        returns_by_exchange: Dict[str, PriceReturns] = {}
        liquidity: Dict[str, float] = {}
        depth: Dict[str, int] = {}

        for name, view in exchanges.items():
            if not self.is_exchange_healthy(view.last_update, now):
                age_s = (now - view.last_update) / 1000
                excluded[name] = "stale"
                self.sink.record("warning", SOURCE, f"{name}: not healthy", {"last_update_s_ago": round(age_s, 1)})
                continue

            returns = calculate_price_returns(view.snapshots, name)
            sample_count = returns.sample_count if returns else 0
            if returns is None or sample_count < self._config.min_sample_size:
                excluded[name] = "insufficient_samples"
                self.sink.record("warning", SOURCE, f"{name}: insufficient samples",
                                 {"samples": sample_count, "required": self._config.min_sample_size})
                continue

            healthy.append(name)
            returns_by_exchange[name] = returns
            liquidity[name] = view.volume_stats.sample_count
            depth[name] = len(view.snapshots)

        self.sink.record("info", SOURCE, f"Healthy exchanges: {len(healthy)}/{len(exchanges)}",
                         {"exchanges": ", ".join(healthy)})

        # 2. Need at least one pair
        if len(healthy) < 2:
            self.sink.record("warning", SOURCE, "Insufficient healthy exchanges (need at least 2)")
            matrix = CorrelationMatrix(
                results=(),
                healthy_exchanges=tuple(healthy),
                average_correlation=0.0,
                timestamp=now,
                excluded=excluded,
            )
            self._last_matrix = matrix
            return matrix

        # 3. Normalisers are relative to this cycle's participants
        max_liquidity = max(liquidity.values())
        max_depth = max(depth.values())

        # 4. All unordered pairs
        results: List[CorrelationResult] = []
        for i in range(len(healthy)):
            for j in range(i + 1, len(healthy)):
                a, b = healthy[i], healthy[j]
                optimal = find_optimal_offset(returns_by_exchange[a], returns_by_exchange[b], self._config)
                weight = calculate_pair_weight(
                    optimal.correlation,
                    liquidity[a],
                    liquidity[b],
                    depth[a],
                    depth[b],
                    max_liquidity,
                    max_depth,
                )
                result = CorrelationResult(
                    exchange_a=a,
                    exchange_b=b,
                    correlation=optimal.correlation,
                    optimal_offset_ms=optimal.offset_ms,
                    sample_size=optimal.sample_size,
                    overlap_duration_ms=optimal.overlap_ms,
                    weight=weight,
                    calculated_at=now,
                )
                results.append(result)
                self.sink.record("debug", SOURCE, f"{a} <-> {b}", {
                    "r": round(result.correlation, 3),
                    "offset_ms": result.optimal_offset_ms,
                    "samples": result.sample_size,
                    "weight": round(result.weight, 3),
                })

        # 5. Average over positively correlated pairs only
        valid = [r.correlation for r in results if not math.isnan(r.correlation) and r.correlation > 0]
        average_correlation = sum(valid) / len(valid) if valid else 0.0

        matrix = CorrelationMatrix(
            results=tuple(results),
            healthy_exchanges=tuple(healthy),
            average_correlation=average_correlation,
            timestamp=now,
            excluded=excluded,
        )
        self._last_matrix = matrix

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.sink.record("info", SOURCE, f"Calculated {len(results)} pairs", {
            "elapsed_ms": round(elapsed_ms, 1),
            "avg_correlation": round(average_correlation, 3),
        })
        return matrix
