from dataclasses import dataclass, field, fields
from decimal import Decimal

from . import fixed

_DECIMAL_FIELDS = (
    "initial_price",
    "initial_ath_price",
    "min_market_cap",
    "initial_leverage",
    "leverage_ceiling",
    "max_expected_selloff_fraction",
    "bond_accrual_max_share",
    "initial_bear_length",
    "min_bear_length",
    "bear_length_tolerance",
    "demand_drop_tolerance",
    "bond_maturity_span",
    "bond_portion_at_maturity",
    "precision_tolerance",
)


@dataclass
class ProtocolConfig:
    # Units (both ledgers count in smallest denominations)
    collateral_symbol: str = "USDC"
    collateral_decimals: int = 6
    native_symbol: str = "RCH"
    native_decimals: int = 6

    # Bootstrap
    initial_price: Decimal = Decimal("0.1")        # collateral units per native unit
    initial_ath_price: Decimal = Decimal("1")
    bootstrap_slip_floor: int = 1_000_000          # virtual slip reserve under the curve (1 collateral)
    min_operating_slip: int = 1                    # below this (with price < ath) trading halts
    min_market_cap: Decimal = Decimal("1")         # tick() is a no-op below this market cap

    # Leverage
    initial_leverage: Decimal = Decimal("1.3")     # K0
    leverage_ceiling: Decimal = Decimal("10")
    max_expected_selloff_fraction: Decimal = Decimal("0.8")
    bond_accrual_max_share: Decimal = Decimal("0.5")  # share of tick market-cap gain routed to bonds

    # Bear market calibration (durations in ticks)
    initial_bear_length: Decimal = Decimal("365")
    min_bear_length: Decimal = Decimal("1")
    bear_length_tolerance: Decimal = Decimal("0.01")
    demand_drop_tolerance: Decimal = Decimal("1e-12")

    # Bonds
    bond_epoch_min_ticks: int = 1
    bond_maturity_span: Decimal = Decimal("180")
    bond_portion_at_maturity: Decimal = field(default_factory=lambda: fixed.exp(-2))

    # Numerics
    precision_tolerance: Decimal = Decimal("1e-25")

    # Events
    event_log_maxlen: int | None = 50_000

    def __post_init__(self) -> None:
        for name in _DECIMAL_FIELDS:
            setattr(self, name, fixed.D(getattr(self, name)))
        if self.initial_leverage <= 1:
            raise ValueError("initial_leverage must be greater than 1")
        if self.leverage_ceiling < self.initial_leverage:
            raise ValueError("leverage_ceiling must be at least initial_leverage")
        if not (0 < self.max_expected_selloff_fraction < 1):
            raise ValueError("max_expected_selloff_fraction must be in (0, 1)")
        if self.initial_price <= 0 or self.initial_ath_price < self.initial_price:
            raise ValueError("require 0 < initial_price <= initial_ath_price")
        if self.bootstrap_slip_floor <= 0:
            raise ValueError("bootstrap_slip_floor must be positive")
        if self.min_bear_length <= 0 or self.initial_bear_length < self.min_bear_length:
            raise ValueError("require 0 < min_bear_length <= initial_bear_length")
        if self.bond_maturity_span <= 0:
            raise ValueError("bond_maturity_span must be positive")
        if not (0 < self.bond_portion_at_maturity < 1):
            raise ValueError("bond_portion_at_maturity must be in (0, 1)")
        self.bond_epoch_min_ticks = max(1, int(self.bond_epoch_min_ticks))

    @classmethod
    def from_dict(cls, values: dict) -> "ProtocolConfig":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in names})


@dataclass
class ScenarioConfig:
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)

    # Population
    initial_traders: int = 40
    initial_bonders: int = 15
    trader_collateral_mean: float = 5_000.0          # whole collateral units, exponential draw
    bonder_collateral_mean: float = 20_000.0
    genesis_buy_collateral: float = 50_000.0         # seeds the curve at tick 0

    # Clock
    time_units_per_tick: int = 1

    # Sentiment cycle (drives buy/sell balance)
    cycle_length_ticks: int = 120
    cycle_amplitude: float = 0.35
    base_trade_prob: float = 0.25
    trade_size_mean_frac: float = 0.10               # share of the agent's holdings per trade
    trade_size_min_units: float = 1.0

    # Bonds
    bond_open_prob: float = 0.08
    bond_add_prob: float = 0.03
    bond_settle_prob: float = 0.15
    bond_policy_change_prob: float = 0.01
    bond_size_mean_frac: float = 0.5                 # share of native holdings locked per bond
    p_decay: float = 0.4
    p_gains_only: float = 0.3
    p_reinvest: float = 0.3
    epoch_stride_ticks: int = 7

    # Metrics
    metrics_stride: int = 1
    bond_metrics_stride: int = 7
    receipts_maxlen: int | None = 5_000

    # Debug
    debug_balances: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.protocol, dict):
            self.protocol = ProtocolConfig.from_dict(self.protocol)
        self.time_units_per_tick = max(1, int(self.time_units_per_tick))
        self.epoch_stride_ticks = max(1, int(self.epoch_stride_ticks))
        self.cycle_length_ticks = max(2, int(self.cycle_length_ticks))
        if self.p_decay + self.p_gains_only + self.p_reinvest <= 0:
            self.p_decay = 1.0
