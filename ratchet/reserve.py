"""
Reserve / AMM engine.

Collateral sits in two pools. The slip pool is priced on a constant-leverage bonding curve
`H ∝ (slip + F)^(1/K)` where `H` is the hypothetical supply and `F` a virtual floor that keeps
the curve finite at genesis; price on the curve is `K·(slip + F)/H`. Once price reaches the
all-time high, further collateral lands in the peg pool 1:1 at that price. `tick()` drains
excess peg back into slip, moves realized leverage toward its cap and converts the resulting
market-cap gain into price appreciation plus a mint for bond holders.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Optional, Protocol as TypingProtocol
import logging

from . import fixed
from .config import ProtocolConfig
from .core import (
    Clock,
    CollateralAsset,
    Event,
    EventLog,
    InsufficientBalance,
    ManagerCapability,
    MarketHalted,
    NativeUnit,
    require_amount,
)

logger = logging.getLogger(__name__)

# floor for Ky² - 1 so the safety threshold stays finite
_LEVERAGE_EPSILON = Decimal("1e-18")


class BondPositionRegistry(TypingProtocol):
    custody: str

    def total_locked(self) -> int: ...

    def accrue(self, caller, amount: int) -> None: ...


@dataclass
class ReserveState:
    price: Decimal
    ath_price: Decimal
    circulating_supply: int
    hypothetical_supply: int
    slip_pool: int
    peg_pool: int

    leverage_cap: Decimal
    leverage_realized: Decimal
    leverage_target: Decimal
    leverage_effective_low: Decimal
    leverage_effective_high: Decimal

    expected_selloff_fraction: Decimal
    calibrated_selloff_fraction: Decimal
    max_expected_selloff_fraction: Decimal
    observed_selloff_high_watermark_this_cycle: Decimal
    supply_high_watermark: int

    peg_floor_safety: Decimal
    peg_floor_drain: Decimal
    ath_peg_padding: Decimal
    peg_target: Decimal
    demand_score_drainage: Decimal

    bear_length_actual: Decimal
    bear_length_current: Decimal
    bear_length_estimate: Decimal
    last_update_tick: int
    last_bear_update_tick: int

    in_bear: bool = False
    bootstrapped: bool = False

    @property
    def reserve(self) -> int:
        return self.slip_pool + self.peg_pool

    def to_dict(self) -> dict:
        row = {}
        for k, v in asdict(self).items():
            row[k] = float(v) if isinstance(v, Decimal) else v
        row["reserve"] = self.reserve
        return row


class ReserveEngine:
    def __init__(
        self,
        cfg: ProtocolConfig,
        collateral: CollateralAsset,
        native: NativeUnit,
        clock: Clock,
        registry: BondPositionRegistry,
        manager: ManagerCapability,
        log: Optional[EventLog] = None,
    ) -> None:
        self.cfg = cfg
        self.collateral = collateral
        self.native = native
        self.clock = clock
        self.registry = registry
        self.log = log if log is not None else EventLog(maxlen=cfg.event_log_maxlen)
        self._manager = manager
        self.floor = int(cfg.bootstrap_slip_floor)
        self.state = self._genesis()

    @fixed.precise
    def _genesis(self) -> ReserveState:
        cfg = self.cfg
        # config prices are whole collateral per whole native unit; state prices are per smallest unit
        scale = fixed.power(10, self.collateral.decimals() - self.native.decimals())
        price = cfg.initial_price * scale
        ath = cfg.initial_ath_price * scale
        k0 = cfg.initial_leverage
        calibrated = min(fixed.ONE / (k0 * k0), cfg.max_expected_selloff_fraction)
        now = self.clock.now
        st = ReserveState(
            price=price,
            ath_price=ath,
            circulating_supply=0,
            hypothetical_supply=fixed.ceil_int(k0 * self.floor / price),
            slip_pool=0,
            peg_pool=0,
            leverage_cap=k0,
            leverage_realized=k0,
            leverage_target=k0,
            leverage_effective_low=k0,
            leverage_effective_high=k0,
            expected_selloff_fraction=calibrated,
            calibrated_selloff_fraction=calibrated,
            max_expected_selloff_fraction=cfg.max_expected_selloff_fraction,
            observed_selloff_high_watermark_this_cycle=fixed.ZERO,
            supply_high_watermark=0,
            peg_floor_safety=fixed.ZERO,
            peg_floor_drain=fixed.ZERO,
            ath_peg_padding=fixed.ZERO,
            peg_target=fixed.ZERO,
            demand_score_drainage=fixed.ONE,
            bear_length_actual=cfg.initial_bear_length,
            bear_length_current=fixed.ZERO,
            bear_length_estimate=cfg.initial_bear_length,
            last_update_tick=now,
            last_bear_update_tick=now,
        )
        return st

    # -----------------------------
    # Queries
    # -----------------------------
    def market_cap(self) -> Decimal:
        st = self.state
        with fixed.precision():
            return st.price * st.circulating_supply

    def is_halted(self) -> bool:
        st = self.state
        return (
            st.bootstrapped
            and st.price < st.ath_price
            and st.slip_pool < self.cfg.min_operating_slip
        )

    @fixed.precise
    def slip_at_ath(self) -> int:
        """Slip pool level at which the curve price reaches the ATH price."""
        st = self.state
        if st.price >= st.ath_price:
            return st.slip_pool
        k = st.leverage_cap
        base = fixed.D(st.slip_pool + self.floor)
        level = base * fixed.power(st.ath_price / st.price, k / (k - fixed.ONE))
        return max(st.slip_pool, fixed.ceil_int(level - self.floor))

    @fixed.precise
    def demand_score(self) -> Decimal:
        st = self.state
        if st.peg_target <= 0:
            return fixed.ONE
        return min(fixed.ONE, st.peg_pool / st.peg_target)

    def _require_functional(self) -> None:
        if self.is_halted():
            raise MarketHalted(
                f"slip pool {self.state.slip_pool} below operating threshold with price under ATH"
            )

    # -----------------------------
    # Trading
    # -----------------------------
    @fixed.precise
    def buy(self, account: str, amount: int) -> int:
        """Swap `amount` collateral for native units; returns the amount minted to `account`."""
        require_amount(amount)
        self._require_functional()
        self.collateral.require_balance(account, amount)

        st = self.state
        cfg = self.cfg
        now = self.clock.now
        first = not st.bootstrapped
        prev_target = st.peg_target
        self.collateral.transfer_in(account, amount)

        minted = 0
        remaining = amount
        used_slip = False

        # phase 1: bonding curve
        if st.price < st.ath_price:
            used_slip = True
            k = st.leverage_cap
            ath_slip = self.slip_at_ath()
            step = min(remaining, ath_slip - st.slip_pool)
            old_level = fixed.D(st.slip_pool + self.floor)
            new_level = old_level + step
            new_h = st.hypothetical_supply * fixed.power(new_level / old_level, fixed.ONE / k)
            minted_curve = max(0, fixed.floor_int(new_h - st.hypothetical_supply))
            st.hypothetical_supply += minted_curve
            st.slip_pool += step
            minted += minted_curve
            remaining -= step
            if st.slip_pool >= ath_slip:
                st.price = st.ath_price
            else:
                st.price = min(st.ath_price, k * (st.slip_pool + self.floor) / st.hypothetical_supply)

        # phase 2: peg at the ATH price, no slippage
        peg_in = 0
        if remaining > 0:
            peg_in = remaining
            minted += fixed.floor_int(remaining / st.price)
            st.peg_pool += remaining
            remaining = 0

        st.circulating_supply += minted
        st.supply_high_watermark = max(st.supply_high_watermark, st.circulating_supply)
        if first:
            st.bootstrapped = True
            st.last_update_tick = now
            st.last_bear_update_tick = now

        if used_slip:
            self._recompute_realized_leverage()
        self.update_leverage_target()
        self._resync_hypothetical_supply()
        self.update_peg_thresholds()

        if peg_in > 0:
            padding = max(st.ath_peg_padding, st.peg_pool - st.peg_floor_safety)
            if padding > st.ath_peg_padding:
                st.ath_peg_padding = padding
                self.update_peg_thresholds()
                if st.peg_target > prev_target:
                    self._end_bear_episode(now)
                    self.update_peg_thresholds()

        self._fold_bear_time(now)
        st.in_bear = st.peg_pool < st.peg_target

        self.native.mint(account, minted)
        self.log.add(Event(now, "BUY", actor_id=account, amount=amount,
                           meta={"minted": minted, "peg_in": peg_in, "price": float(st.price)}))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[BUY] account=%s collateral=%d minted=%d peg_in=%d price=%s slip=%d peg=%d",
                account, amount, minted, peg_in, st.price, st.slip_pool, st.peg_pool,
            )
        return minted

    @fixed.precise
    def sell(self, account: str, amount: int) -> int:
        """Burn `amount` native units for collateral; returns the payout."""
        require_amount(amount)
        self._require_functional()
        st = self.state
        if st.reserve <= 0:
            raise MarketHalted("reserve is empty")
        self.native.require_balance(account, amount)

        # plan the peg leg before writing anything
        to_peg = 0
        peg_exhausting = 0
        if st.peg_pool > 0:
            peg_exhausting = fixed.ceil_int(st.peg_pool / st.price)
            to_peg = min(amount, peg_exhausting)
        to_slip = amount - to_peg
        if to_slip > 0 and st.slip_pool < self.cfg.min_operating_slip:
            raise MarketHalted(f"sell needs {to_slip} against an empty slip pool")

        now = self.clock.now
        self.native.burn(account, amount)
        st.circulating_supply -= amount

        payout = 0
        if to_peg > 0:
            if to_peg == peg_exhausting:
                paid = st.peg_pool
            else:
                paid = min(st.peg_pool, fixed.floor_int(to_peg * st.price))
            st.peg_pool -= paid
            payout += paid
            if st.peg_pool == 0:
                # back onto the curve at the current price
                level = st.slip_pool + self.floor
                st.hypothetical_supply = max(
                    st.circulating_supply + to_slip,
                    fixed.ceil_int(st.leverage_cap * level / st.price),
                )

        if to_slip > 0:
            k = st.leverage_cap
            old_h = st.hypothetical_supply
            new_h = max(0, old_h - to_slip)
            old_level = fixed.D(st.slip_pool + self.floor)
            new_level = old_level * fixed.power(fixed.D(new_h) / old_h, k)
            new_slip = min(st.slip_pool, max(0, fixed.round_int(new_level - self.floor)))
            paid = st.slip_pool - new_slip
            st.slip_pool = new_slip
            st.hypothetical_supply = new_h
            payout += paid
            if new_h > 0:
                st.price = min(st.ath_price, k * (st.slip_pool + self.floor) / new_h)

        if st.supply_high_watermark > 0:
            selloff = fixed.ONE - fixed.D(st.circulating_supply) / st.supply_high_watermark
            st.observed_selloff_high_watermark_this_cycle = max(
                st.observed_selloff_high_watermark_this_cycle, selloff
            )

        self._recompute_realized_leverage()
        self.update_leverage_target()
        self._clamp_hypothetical_supply()
        self.update_peg_thresholds()
        self._fold_bear_time(now)
        st.in_bear = st.peg_pool < st.peg_target

        self.collateral.transfer_out(account, payout)
        self.log.add(Event(now, "SELL", actor_id=account, amount=amount,
                           meta={"payout": payout, "price": float(st.price)}))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[SELL] account=%s burned=%d payout=%d price=%s slip=%d peg=%d",
                account, amount, payout, st.price, st.slip_pool, st.peg_pool,
            )
        if self.is_halted():
            logger.warning("[SELL] market halted: slip=%d price=%s ath=%s", st.slip_pool, st.price, st.ath_price)
            self.log.add(Event(now, "MARKET_HALTED", actor_id=account, amount=st.slip_pool,
                               meta={"price": float(st.price), "ath_price": float(st.ath_price)}))
        return payout

    # -----------------------------
    # Leverage
    # -----------------------------
    def _recompute_realized_leverage(self) -> None:
        st = self.state
        if st.slip_pool <= 0:
            st.leverage_realized = min(st.leverage_realized, st.leverage_cap)
            return
        implied = (st.price * st.circulating_supply - st.peg_pool) / st.slip_pool
        st.leverage_realized = fixed.clamp(implied, fixed.ZERO, st.leverage_cap)

    def _refresh_effective_leverage(self) -> None:
        st = self.state
        st.leverage_effective_low = min(st.leverage_cap, st.leverage_target)
        st.leverage_effective_high = max(st.leverage_realized, st.leverage_effective_low)

    @fixed.precise
    def update_leverage_target(self) -> Decimal:
        st = self.state
        cfg = self.cfg
        hw = st.supply_high_watermark
        if hw <= 0:
            f = st.calibrated_selloff_fraction
        else:
            locked = self.registry.total_locked()
            unlocked_share = fixed.ONE - fixed.D(locked) / hw
            sold_share = fixed.ONE - fixed.D(st.circulating_supply) / hw
            f = max(unlocked_share, sold_share)
        f = min(f, st.calibrated_selloff_fraction, st.max_expected_selloff_fraction)
        f = max(f, fixed.ONE / (cfg.leverage_ceiling * cfg.leverage_ceiling))
        st.expected_selloff_fraction = f
        st.leverage_target = fixed.sqrt(fixed.ONE / f)
        self._refresh_effective_leverage()
        return st.leverage_target

    def _resync_hypothetical_supply(self) -> None:
        st = self.state
        level = st.slip_pool + self.floor + st.peg_pool
        st.hypothetical_supply = max(
            st.circulating_supply,
            fixed.ceil_int(st.leverage_cap * level / st.price),
        )

    def _clamp_hypothetical_supply(self) -> None:
        st = self.state
        st.hypothetical_supply = max(st.hypothetical_supply, st.circulating_supply)

    # -----------------------------
    # Peg thresholds and drainage
    # -----------------------------
    @fixed.precise
    def update_peg_thresholds(self) -> None:
        st = self.state
        self._refresh_effective_leverage()
        ky = st.leverage_effective_low
        kx = st.leverage_effective_high
        den = max(ky * ky - fixed.ONE, _LEVERAGE_EPSILON)
        st.peg_floor_safety = kx * st.slip_pool / den
        st.peg_floor_drain = kx * st.reserve / (ky * ky + kx - fixed.ONE)
        st.peg_target = st.peg_floor_safety + st.ath_peg_padding

    def _drain_peg(self, dt: int, now: int) -> int:
        st = self.state
        cfg = self.cfg
        peg = fixed.D(st.peg_pool)
        floor_drain = st.peg_floor_drain
        tau = st.bear_length_actual
        d_prev = st.demand_score_drainage
        d = self.demand_score()

        decay = fixed.exp(-fixed.D(dt) / tau)
        continuous_drop = d_prev * (fixed.ONE - decay)
        observed_drop = d_prev - d
        fallback = observed_drop > continuous_drop + cfg.demand_drop_tolerance
        if fallback:
            new_peg = floor_drain + (peg - floor_drain) * decay
            st.demand_score_drainage = d_prev * decay
        else:
            w = fixed.ONE - d * floor_drain / peg
            if w <= 0:
                new_peg = floor_drain
            else:
                new_peg = floor_drain + (peg - floor_drain) * fixed.exp(-fixed.D(dt) / (w * tau))
            st.demand_score_drainage = d

        drained = min(st.peg_pool, max(0, fixed.floor_int(peg - new_peg)))
        st.peg_pool -= drained
        st.slip_pool += drained
        if drained > 0:
            self.log.add(Event(now, "PEG_DRAINED", amount=drained,
                               meta={"fallback": fallback, "demand": float(d)}))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[DRAIN] dt=%d drained=%d fallback=%s demand=%s floor_drain=%s",
                dt, drained, fallback, d, floor_drain,
            )
        return drained

    # -----------------------------
    # Bear market calibration
    # -----------------------------
    def _fold_bear_time(self, now: int) -> None:
        st = self.state
        if st.in_bear and now > st.last_bear_update_tick:
            st.bear_length_current += now - st.last_bear_update_tick
        st.last_bear_update_tick = max(st.last_bear_update_tick, now)

    def _end_bear_episode(self, now: int) -> bool:
        st = self.state
        cfg = self.cfg
        self._fold_bear_time(now)
        current = st.bear_length_current
        if current < st.bear_length_estimate * (fixed.ONE - cfg.bear_length_tolerance):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[BEAR] minor episode current=%s estimate=%s", current, st.bear_length_estimate)
            return False

        length = max(current, cfg.min_bear_length)
        st.bear_length_actual = length
        st.bear_length_estimate = length
        floor = fixed.ONE / (cfg.leverage_ceiling * cfg.leverage_ceiling)
        st.calibrated_selloff_fraction = fixed.clamp(
            st.observed_selloff_high_watermark_this_cycle, floor, cfg.max_expected_selloff_fraction
        )
        st.leverage_cap = min(fixed.sqrt(fixed.ONE / st.calibrated_selloff_fraction), cfg.leverage_ceiling)
        st.leverage_target = max(st.leverage_target, st.leverage_cap)
        st.leverage_realized = min(st.leverage_realized, st.leverage_cap)
        self._refresh_effective_leverage()

        observed = st.observed_selloff_high_watermark_this_cycle
        st.bear_length_current = fixed.ZERO
        st.observed_selloff_high_watermark_this_cycle = fixed.ZERO
        st.supply_high_watermark = st.circulating_supply
        self._resync_hypothetical_supply()

        logger.info(
            "[BEAR] major episode ended length=%s observed_selloff=%s K=%s",
            length, observed, st.leverage_cap,
        )
        self.log.add(Event(now, "BEAR_ENDED", meta={
            "length": float(length),
            "observed_selloff": float(observed),
            "leverage_cap": float(st.leverage_cap),
        }))
        return True

    # -----------------------------
    # Tick
    # -----------------------------
    @fixed.precise
    def tick(self) -> bool:
        """Advance the reserve to the clock's current time; returns False when nothing happened."""
        st = self.state
        cfg = self.cfg
        now = self.clock.now
        dt = now - st.last_update_tick
        if dt <= 0:
            return False
        if self.market_cap() < cfg.min_market_cap or self.is_halted():
            return False

        in_bear = st.peg_pool < st.peg_target
        demand = self.demand_score()

        drained = 0
        if st.peg_pool > st.peg_floor_safety:
            drained = self._drain_peg(dt, now)
            self._recompute_realized_leverage()

        self.update_leverage_target()

        # leverage cap follows the target
        k0 = cfg.initial_leverage
        if st.leverage_target < st.leverage_cap:
            st.leverage_cap = max(st.leverage_target, st.leverage_realized)
        elif st.leverage_target > st.leverage_cap:
            tau = st.bear_length_actual * st.leverage_target / k0
            k = fixed.decay_toward(st.leverage_cap, st.leverage_target, dt, tau)
            st.leverage_cap = min(k, cfg.leverage_ceiling)

        # realized leverage follows the cap
        k_real_prev = st.leverage_realized
        k_real = fixed.decay_toward(k_real_prev, st.leverage_cap, dt, st.bear_length_actual)
        k_real = min(k_real, st.leverage_cap)
        gain = max(fixed.ZERO, (k_real - k_real_prev) * st.slip_pool)

        mcap = st.price * st.circulating_supply
        new_mcap = mcap + gain
        hw = st.supply_high_watermark
        locked = self.registry.total_locked()
        share = cfg.bond_accrual_max_share * (min(fixed.ONE, fixed.D(locked) / hw) if hw > 0 else fixed.ZERO)
        bond_value = gain * share
        new_price = (new_mcap - bond_value) / st.circulating_supply
        bond_mint = max(0, fixed.floor_int(bond_value / new_price))

        st.price = new_price
        st.ath_price = max(st.ath_price, new_price)
        if st.peg_pool > 0:
            st.price = st.ath_price
        st.leverage_realized = k_real

        if bond_mint > 0:
            self.native.mint(self.registry.custody, bond_mint)
            self.registry.accrue(self._manager, bond_mint)
            st.circulating_supply += bond_mint
            st.supply_high_watermark = max(st.supply_high_watermark, st.circulating_supply)

        self._recompute_realized_leverage()
        self._resync_hypothetical_supply()
        self.update_peg_thresholds()

        # bear duration bookkeeping
        if in_bear:
            st.bear_length_current += now - st.last_bear_update_tick
        current = st.bear_length_current
        if current < st.bear_length_estimate:
            rate = fixed.D(dt) * demand / st.bear_length_actual
            st.bear_length_estimate = current + (st.bear_length_estimate - current) * fixed.exp(-rate)
        else:
            st.bear_length_estimate = current
            st.bear_length_actual = max(st.bear_length_actual, current)
        st.last_update_tick = now
        st.last_bear_update_tick = now
        st.in_bear = st.peg_pool < st.peg_target

        self.log.add(Event(now, "TICK", amount=bond_mint, meta={
            "dt": dt,
            "drained": drained,
            "price": float(st.price),
            "leverage_cap": float(st.leverage_cap),
            "leverage_realized": float(st.leverage_realized),
        }))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[TICK] now=%d dt=%d drained=%d K=%s K_real=%s K_target=%s price=%s bond_mint=%d",
                now, dt, drained, st.leverage_cap, st.leverage_realized, st.leverage_target,
                st.price, bond_mint,
            )
        return True

    def summary(self) -> dict:
        st = self.state
        row = st.to_dict()
        row["market_cap"] = float(self.market_cap())
        row["halted"] = self.is_halted()
        row["demand_score"] = float(self.demand_score())
        return row
