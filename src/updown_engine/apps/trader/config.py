"""Configuration dataclasses for the trading engine.

Hold the risk caps and tuneable thresholds for the exposure ledger, the
execution client, and the strategy.  Immutable after construction: caps
are read once at process start and treated as constants for the lifetime
of the process.  ``*_config_from`` helpers map ``settings.yaml`` sections
onto the dataclasses.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from updown_engine.core.config import ConfigLoader


@dataclass(frozen=True)
class LedgerConfig:
    """Exposure caps enforced by the ledger.

    Attributes:
        max_shares_per_side: Per-side cap on effective exposure.
        max_total_shares_per_market: Cap on UP + DOWN effective exposure.

    """

    max_shares_per_side: Decimal = Decimal(100)
    max_total_shares_per_market: Decimal = Decimal(200)


@dataclass(frozen=True)
class ExecutionConfig:
    """Throttling, backoff and pricing parameters of the execution client.

    Attributes:
        min_request_interval_seconds: Minimum spacing between exchange requests.
        cloudflare_cooldown_seconds: Fail-fast window after an edge block.
        depth_cache_ttl_seconds: Lifetime of cached book depth.
        min_depth_shares: Minimum opposite-side depth to submit.
        improvement_below_half: Price improvement at or below 50 cents.
        improvement_above_half: Price improvement above 50 cents.
        max_price: Ceiling for improved prices.
        tick_size: Exchange price increment.
        balance_cache_ttl_seconds: Lifetime of the cached USDC balance.

    """

    min_request_interval_seconds: float = 0.2
    cloudflare_cooldown_seconds: float = 60.0
    depth_cache_ttl_seconds: float = 2.0
    min_depth_shares: Decimal = Decimal(10)
    improvement_below_half: Decimal = Decimal("0.01")
    improvement_above_half: Decimal = Decimal("0.02")
    max_price: Decimal = Decimal("0.99")
    tick_size: Decimal = Decimal("0.01")
    balance_cache_ttl_seconds: float = 10.0


@dataclass(frozen=True)
class EntryConfig:
    """Entry gate thresholds."""

    edge_min: Decimal = Decimal("0.04")
    min_sec_remaining: float = 180
    max_sec_remaining: float = 780
    max_concurrent_markets_per_asset: int = 1
    max_spread: Decimal = Decimal("0.04")
    min_depth: Decimal = Decimal(20)
    base_shares: Decimal = Decimal(10)
    min_order_shares: Decimal = Decimal(5)


@dataclass(frozen=True)
class CorrectionConfig:
    """Conditions under which an entry is considered corrected."""

    min_seconds_after_fill: float = 20
    edge_corrected_max: Decimal = Decimal("0.01")
    profit_trigger_usd: Decimal = Decimal("0.20")


@dataclass(frozen=True)
class HedgeConfig:
    """Hedge sizing and affordability limits."""

    deadline_sec_remaining: float = 60
    max_opp_ask: Decimal = Decimal("0.65")
    max_cpp: Decimal = Decimal("0.99")
    ratio: Decimal = Decimal("1.0")
    min_shares: Decimal = Decimal(5)
    max_shares: Decimal = Decimal(50)


@dataclass(frozen=True)
class KillSwitchConfig:
    """Execution-quality thresholds that disable new entries."""

    require_fee_usd: bool = True
    min_maker_fill_ratio: Decimal = Decimal("0.6")
    maker_ratio_window: int = 20


@dataclass(frozen=True)
class StrategyConfig:
    """Complete strategy configuration.

    Attributes:
        enabled_assets: Assets the strategy trades; ticks for others are ignored.
        entry: Entry gate thresholds.
        correction: Correction trigger thresholds.
        hedge: Hedge limits.
        kill_switch: Kill-switch thresholds.
        tick: Price increment used for maker pricing.
        max_book_age_ms: Books older than this are stale.
        stale_order_timeout_seconds: In-flight orders older than this are forgotten.

    """

    enabled_assets: tuple[str, ...] = ("BTC", "ETH")
    entry: EntryConfig = field(default_factory=EntryConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    hedge: HedgeConfig = field(default_factory=HedgeConfig)
    kill_switch: KillSwitchConfig = field(default_factory=KillSwitchConfig)
    tick: Decimal = Decimal("0.01")
    max_book_age_ms: int = 3000
    stale_order_timeout_seconds: float = 60


def _dec(section: dict[str, Any], key: str, default: Decimal) -> Decimal:
    """Read a decimal value from a config section."""
    value = section.get(key)
    return default if value is None else Decimal(str(value))


def _num(section: dict[str, Any], key: str, default: float) -> float:
    """Read a float value from a config section."""
    value = section.get(key)
    return default if value is None else float(value)


def _sub(section: dict[str, Any], key: str) -> dict[str, Any]:
    """Return a nested mapping or an empty dict."""
    value = section.get(key)
    return value if isinstance(value, dict) else {}


def ledger_config_from(loader: ConfigLoader) -> LedgerConfig:
    """Build the ledger caps from the ``ledger`` section.

    Args:
        loader: Loaded configuration.

    Returns:
        Frozen ledger configuration.

    """
    section = loader.get_section("ledger")
    default = LedgerConfig()
    return LedgerConfig(
        max_shares_per_side=_dec(section, "max_shares_per_side", default.max_shares_per_side),
        max_total_shares_per_market=_dec(
            section, "max_total_shares_per_market", default.max_total_shares_per_market
        ),
    )


def execution_config_from(loader: ConfigLoader) -> ExecutionConfig:
    """Build the execution client settings from the ``execution`` section.

    Args:
        loader: Loaded configuration.

    Returns:
        Frozen execution configuration.

    """
    s = loader.get_section("execution")
    d = ExecutionConfig()
    return ExecutionConfig(
        min_request_interval_seconds=_num(
            s, "min_request_interval_seconds", d.min_request_interval_seconds
        ),
        cloudflare_cooldown_seconds=_num(
            s, "cloudflare_cooldown_seconds", d.cloudflare_cooldown_seconds
        ),
        depth_cache_ttl_seconds=_num(s, "depth_cache_ttl_seconds", d.depth_cache_ttl_seconds),
        min_depth_shares=_dec(s, "min_depth_shares", d.min_depth_shares),
        improvement_below_half=_dec(s, "improvement_below_half", d.improvement_below_half),
        improvement_above_half=_dec(s, "improvement_above_half", d.improvement_above_half),
        max_price=_dec(s, "max_price", d.max_price),
        tick_size=_dec(s, "tick_size", d.tick_size),
        balance_cache_ttl_seconds=_num(s, "balance_cache_ttl_seconds", d.balance_cache_ttl_seconds),
    )


def strategy_config_from(loader: ConfigLoader) -> StrategyConfig:
    """Build the strategy configuration from the ``strategy`` section.

    Args:
        loader: Loaded configuration.

    Returns:
        Frozen strategy configuration.

    """
    s = loader.get_section("strategy")
    e, c, h, k, x = (
        _sub(s, "entry"),
        _sub(s, "correction"),
        _sub(s, "hedge"),
        _sub(s, "kill_switch"),
        _sub(s, "execution"),
    )
    de, dc, dh = EntryConfig(), CorrectionConfig(), HedgeConfig()
    dk, d = KillSwitchConfig(), StrategyConfig()
    assets = s.get("enabled_assets")
    return StrategyConfig(
        enabled_assets=tuple(str(a) for a in assets) if assets else d.enabled_assets,
        entry=EntryConfig(
            edge_min=_dec(e, "edge_min", de.edge_min),
            min_sec_remaining=_num(e, "min_sec_remaining", de.min_sec_remaining),
            max_sec_remaining=_num(e, "max_sec_remaining", de.max_sec_remaining),
            max_concurrent_markets_per_asset=int(
                e.get("max_concurrent_markets_per_asset", de.max_concurrent_markets_per_asset)
            ),
            max_spread=_dec(e, "max_spread", de.max_spread),
            min_depth=_dec(e, "min_depth", de.min_depth),
            base_shares=_dec(e, "base_shares", de.base_shares),
            min_order_shares=_dec(e, "min_order_shares", de.min_order_shares),
        ),
        correction=CorrectionConfig(
            min_seconds_after_fill=_num(c, "min_seconds_after_fill", dc.min_seconds_after_fill),
            edge_corrected_max=_dec(c, "edge_corrected_max", dc.edge_corrected_max),
            profit_trigger_usd=_dec(c, "profit_trigger_usd", dc.profit_trigger_usd),
        ),
        hedge=HedgeConfig(
            deadline_sec_remaining=_num(h, "deadline_sec_remaining", dh.deadline_sec_remaining),
            max_opp_ask=_dec(h, "max_opp_ask", dh.max_opp_ask),
            max_cpp=_dec(h, "max_cpp", dh.max_cpp),
            ratio=_dec(h, "ratio", dh.ratio),
            min_shares=_dec(h, "min_shares", dh.min_shares),
            max_shares=_dec(h, "max_shares", dh.max_shares),
        ),
        kill_switch=KillSwitchConfig(
            require_fee_usd=bool(k.get("require_fee_usd", dk.require_fee_usd)),
            min_maker_fill_ratio=_dec(k, "min_maker_fill_ratio", dk.min_maker_fill_ratio),
            maker_ratio_window=int(k.get("maker_ratio_window", dk.maker_ratio_window)),
        ),
        tick=_dec(x, "tick", d.tick),
        max_book_age_ms=int(x.get("max_book_age_ms", d.max_book_age_ms)),
        stale_order_timeout_seconds=_num(
            s, "stale_order_timeout_seconds", d.stale_order_timeout_seconds
        ),
    )
