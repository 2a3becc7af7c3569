# oracle_sync/config.py
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import ccxt
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config.yaml"
DEFAULT_EXCHANGES = ("binance", "bybit", "okx", "gateio", "kucoin", "mexc", "bingx")


class ConfigError(ValueError):
    """Raised when config.yaml cannot be parsed or holds invalid values."""


def _pick(cls, payload: Optional[Mapping[str, Any]]):
    """Builds a config dataclass from a YAML section, ignoring unknown keys."""
    payload = payload or {}
    if not isinstance(payload, Mapping):
        raise ConfigError(f"{cls.__name__}: expected a mapping, got {type(payload).__name__}")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in payload.items() if k in known})


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


@dataclass(frozen=True)
class SystemConfig:
    symbol: str = "BTC/USDT"
    log_level: str = "INFO"
    audit_log: str = "logs/oracle_audit.csv"
    refresh_per_second: int = 4
    reconnect_delay_s: float = 2.0


@dataclass(frozen=True)
class SamplingConfig:
    snapshot_interval_ms: int = 100
    history_size: int = 600
    trade_window_ms: int = 60_000

    def validate(self) -> None:
        _require(self.snapshot_interval_ms > 0, "sampling.snapshot_interval_ms must be > 0")
        _require(self.history_size > 0, "sampling.history_size must be > 0")
        _require(self.trade_window_ms > 0, "sampling.trade_window_ms must be > 0")


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Offset search and correlation matrix settings.
    Defaults scan +-3 s in 50 ms steps (121 candidates) and need 45 s / 450 paired samples.
    """
    offset_range_ms: int = 3000
    offset_step_ms: int = 50
    min_overlap_ms: int = 45_000
    min_sample_size: int = 450
    health_check_timeout_ms: int = 5000
    align_tolerance_ms: int = 100
    interval_ms: int = 30_000

    def validate(self) -> None:
        _require(self.offset_range_ms >= 0, "calibration.offset_range_ms must be >= 0")
        _require(self.offset_step_ms > 0, "calibration.offset_step_ms must be > 0")
        _require(self.min_overlap_ms >= 0, "calibration.min_overlap_ms must be >= 0")
        _require(self.min_sample_size >= 2, "calibration.min_sample_size must be >= 2")
        _require(self.health_check_timeout_ms > 0, "calibration.health_check_timeout_ms must be > 0")
        _require(self.align_tolerance_ms > 0, "calibration.align_tolerance_ms must be > 0")
        _require(self.interval_ms > 0, "calibration.interval_ms must be > 0")


@dataclass(frozen=True)
class OracleConfig:
    max_staleness_ms: int = 5000
    min_sources: int = 3
    high_confidence_min_sources: int = 6
    high_confidence_max_spread: float = 0.5
    medium_confidence_min_sources: int = 4
    medium_confidence_max_spread: float = 1.0
    min_trades: int = 3

    def validate(self) -> None:
        _require(self.max_staleness_ms > 0, "oracle.max_staleness_ms must be > 0")
        _require(self.min_sources >= 1, "oracle.min_sources must be >= 1")
        _require(self.high_confidence_max_spread >= 0, "oracle.high_confidence_max_spread must be >= 0")
        _require(self.medium_confidence_max_spread >= 0, "oracle.medium_confidence_max_spread must be >= 0")
        _require(self.min_trades >= 1, "oracle.min_trades must be >= 1")


@dataclass(frozen=True)
class GapConfig:
    min_gap_percent: float = 0.1
    max_price_staleness_ms: int = 5000
    medium_confidence_age_ms: int = 2000
    exclude_exchanges: Tuple[str, ...] = ()
    default_fee_percent: float = 0.1

    def __post_init__(self):
        excluded = self.exclude_exchanges or ()
        # a bare string would otherwise be split into characters
        if not isinstance(excluded, (list, tuple)):
            raise ConfigError("gaps.exclude_exchanges: expected a list of exchange ids")
        # YAML gives lists; keep the frozen config hashable
        object.__setattr__(self, "exclude_exchanges", tuple(str(e) for e in excluded))

    def validate(self) -> None:
        _require(self.max_price_staleness_ms > 0, "gaps.max_price_staleness_ms must be > 0")
        _require(self.medium_confidence_age_ms >= 0, "gaps.medium_confidence_age_ms must be >= 0")
        _require(self.default_fee_percent >= 0, "gaps.default_fee_percent must be >= 0")


@dataclass(frozen=True)
class AppConfig:
    system: SystemConfig = field(default_factory=SystemConfig)
    exchanges: Tuple[str, ...] = DEFAULT_EXCHANGES
    fees: Dict[str, float] = field(default_factory=dict)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    gaps: GapConfig = field(default_factory=GapConfig)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AppConfig":
        exchanges = payload.get("exchanges") or list(DEFAULT_EXCHANGES)
        if not isinstance(exchanges, (list, tuple)):
            raise ConfigError("exchanges: expected a list of exchange ids")
        fees = payload.get("fees") or {}
        if not isinstance(fees, Mapping):
            raise ConfigError("fees: expected a mapping of exchange id to taker fee percent")
        try:
            fee_table = {str(k): float(v) for k, v in fees.items()}
        except (TypeError, ValueError) as e:
            raise ConfigError(f"fees: {e}") from e

        config = cls(
            system=_pick(SystemConfig, payload.get("system")),
            exchanges=tuple(str(e) for e in exchanges),
            fees=fee_table,
            sampling=_pick(SamplingConfig, payload.get("sampling")),
            calibration=_pick(CalibrationConfig, payload.get("calibration")),
            oracle=_pick(OracleConfig, payload.get("oracle")),
            gaps=_pick(GapConfig, payload.get("gaps")),
        )
        try:
            config.validate()
        except TypeError as e:
            # e.g. a quoted number compared against a bound
            raise ConfigError(f"invalid value type: {e}") from e
        return config

    def validate(self) -> None:
        _require(len(set(self.exchanges)) == len(self.exchanges), "exchanges: duplicate exchange id")
        _require(all(v >= 0 for v in self.fees.values()), "fees: taker fees must be >= 0")
        self.sampling.validate()
        self.calibration.validate()
        self.oracle.validate()
        self.gaps.validate()

    def with_exchanges(self, exchanges) -> "AppConfig":
        """Copy restricted to the exchanges picked at start-up, keeping config order."""
        selected = tuple(e for e in self.exchanges if e in set(exchanges))
        return AppConfig(
            system=self.system,
            exchanges=selected,
            fees=dict(self.fees),
            sampling=self.sampling,
            calibration=self.calibration,
            oracle=self.oracle,
            gaps=self.gaps,
        )


def config_path() -> Path:
    env_path = os.environ.get("ORACLE_SYNC_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(path: Optional[Path] = None) -> AppConfig:
    path = Path(path) if path else config_path()
    if not path.exists():
        return AppConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path}: top level must be a mapping")
    return AppConfig.from_dict(raw)


def published_taker_fee(exchange_id: str) -> Optional[float]:
    """
    Taker fee in percent from ccxt's static exchange metadata (no network call).
    """
    if exchange_id not in ccxt.exchanges:
        return None
    try:
        client = getattr(ccxt, exchange_id)()
        taker = client.fees["trading"]["taker"]
    except (AttributeError, KeyError, TypeError):
        return None
    if taker is None:
        return None
    return float(taker) * 100


def resolve_fee_table(config: AppConfig, sink=None) -> Dict[str, float]:
    """
    Per-exchange taker fee (%) used by the gap detector.
    Order of precedence: fees section, ccxt metadata, gaps.default_fee_percent.
    """
    table: Dict[str, float] = {}
    for name in config.exchanges:
        if name in config.fees:
            table[name] = config.fees[name]
            continue
        fee = published_taker_fee(name)
        if fee is None:
            fee = config.gaps.default_fee_percent
            if sink:
                sink.record("warning", "Config", f"Unknown fee structure for {name}, using default",
                            {"fee_percent": fee})
        table[name] = fee
    return table
