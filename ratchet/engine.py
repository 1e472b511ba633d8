from __future__ import annotations
from typing import Callable, Dict, List, Optional
import logging
import math
import numpy as np
import random

from .config import ScenarioConfig
from .core import Clock, ProtocolError, ReceiptStore, TradeReceipt, TradeSide
from .factory import Agent, AgentFactory
from .metrics import MetricsStore
from .protocol import Protocol

logger = logging.getLogger(__name__)

GENESIS_ACCOUNT = "genesis"

class SimulationEngine:
    """Seeded agent population trading against one `Protocol` under a cyclical sentiment."""

    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.seed = seed
        self.rng = random.Random(seed)
        random.seed(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.protocol = Protocol(cfg.protocol, Clock(0))
        self.protocol.collateral.debug_balances = cfg.debug_balances
        self.protocol.native.debug_balances = cfg.debug_balances
        self.log = self.protocol.log
        self.metrics = MetricsStore()
        self.receipts = ReceiptStore(maxlen=cfg.receipts_maxlen)
        self.factory = AgentFactory(cfg, self.protocol)

        self.agents: Dict[str, Agent] = {}
        self._buy_volume_tick: int = 0
        self._sell_volume_tick: int = 0
        self._executed_tick: int = 0
        self._failed_tick: int = 0
        self._bond_payout_tick: int = 0

        self._bootstrap()

    def _bootstrap(self) -> None:
        cfg = self.cfg
        for _ in range(cfg.initial_traders):
            self.add_agent("trader")
        for _ in range(cfg.initial_bonders):
            self.add_agent("bonder")

        genesis = self.protocol.collateral.units(cfg.genesis_buy_collateral)
        if genesis > 0:
            self.protocol.fund(GENESIS_ACCOUNT, genesis)
            self._execute(GENESIS_ACCOUNT, "buy", genesis, lambda: self.protocol.buy(GENESIS_ACCOUNT, genesis))

        self.snapshot_metrics()

    def add_agent(self, role: str) -> Agent:
        agent = self.factory.create_agent(role)  # type: ignore[arg-type]
        self.agents[agent.agent_id] = agent
        return agent

    # -----------------------------
    # Helpers
    # -----------------------------
    def sentiment(self, tick: Optional[int] = None) -> float:
        t = self.tick if tick is None else tick
        return self.cfg.cycle_amplitude * math.sin(2.0 * math.pi * t / self.cfg.cycle_length_ticks)

    def _sample_fraction(self, mean: float) -> float:
        return float(min(1.0, np.random.exponential(max(1e-9, mean))))

    def _execute(
        self,
        actor: str,
        side: TradeSide,
        amount_in: int,
        action: Callable[[], object],
        bond_id: Optional[int] = None,
    ) -> Optional[object]:
        try:
            result = action()
        except ProtocolError as exc:
            self._failed_tick += 1
            self.receipts.add(TradeReceipt(self.tick, actor, side, amount_in, 0, "failed",
                                           bond_id=bond_id, fail_reason=f"{type(exc).__name__}: {exc}"))
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[SIM] tick=%d actor=%s side=%s failed: %s", self.tick, actor, side, exc)
            return None

        amount_out = result if isinstance(result, int) and not isinstance(result, bool) else 0
        if side == "bond_open":
            bond_id = getattr(result, "bond_id", bond_id)
        self._executed_tick += 1
        self.receipts.add(TradeReceipt(self.tick, actor, side, amount_in, amount_out, "executed", bond_id=bond_id))
        return result

    # -----------------------------
    # Agent behaviour
    # -----------------------------
    def _trade(self, agent: Agent, sentiment: float) -> None:
        cfg = self.cfg
        p = self.protocol
        p_buy = min(0.95, max(0.05, 0.5 + sentiment + 0.25 * agent.conviction))
        min_units = p.collateral.units(cfg.trade_size_min_units)

        if self.rng.random() < p_buy:
            balance = p.collateral.balance_of(agent.agent_id)
            amount = int(balance * self._sample_fraction(cfg.trade_size_mean_frac))
            if amount < min_units:
                return
            paid = self._execute(agent.agent_id, "buy", amount, lambda: p.buy(agent.agent_id, amount))
            if paid is not None:
                self._buy_volume_tick += amount
        else:
            balance = p.native.balance_of(agent.agent_id)
            amount = int(balance * self._sample_fraction(cfg.trade_size_mean_frac))
            if amount <= 0:
                return
            payout = self._execute(agent.agent_id, "sell", amount, lambda: p.sell(agent.agent_id, amount))
            if payout is not None:
                self._sell_volume_tick += int(payout)

    def _bond_actions(self, agent: Agent) -> None:
        cfg = self.cfg
        p = self.protocol
        owner = agent.agent_id

        for pos in p.bonds.positions_of(owner):
            bond_id = pos.bond_id
            if self.rng.random() < cfg.bond_settle_prob:
                paid = self._execute(owner, "bond_settle", 0,
                                     lambda: p.settle_bond(owner, bond_id), bond_id=bond_id)
                if paid:
                    self._bond_payout_tick += int(paid)
                if bond_id not in p.bonds.positions:
                    continue
            if self.rng.random() < cfg.bond_add_prob:
                amount = int(p.native.balance_of(owner) * self._sample_fraction(cfg.bond_size_mean_frac))
                if amount > 0:
                    self._execute(owner, "bond_add", amount,
                                  lambda: p.add_to_bond(owner, bond_id, amount), bond_id=bond_id)
            if self.rng.random() < cfg.bond_policy_change_prob:
                policy = self.factory.sample_policy()
                self._execute(owner, "bond_policy", 0,
                              lambda: p.change_bond_policy(owner, bond_id, policy), bond_id=bond_id)

        if self.rng.random() < cfg.bond_open_prob:
            amount = int(p.native.balance_of(owner) * self._sample_fraction(cfg.bond_size_mean_frac))
            if amount > 0:
                policy = agent.preferred_policy
                self._execute(owner, "bond_open", amount, lambda: p.open_bond(owner, amount, policy))

    # -----------------------------
    # Main loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        cfg = self.cfg
        for _ in range(n_ticks):
            self.tick += 1
            self._buy_volume_tick = 0
            self._sell_volume_tick = 0
            self._executed_tick = 0
            self._failed_tick = 0
            self._bond_payout_tick = 0

            self.protocol.advance(cfg.time_units_per_tick)
            sentiment = self.sentiment()

            agents = list(self.agents.values())
            self.rng.shuffle(agents)
            for agent in agents:
                if self.rng.random() < cfg.base_trade_prob:
                    self._trade(agent, sentiment)
                if agent.role == "bonder":
                    self._bond_actions(agent)

            self.protocol.tick()

            if self.tick % cfg.epoch_stride_ticks == 0:
                snap = self.protocol.close_bond_epoch()
                if snap is not None:
                    self.metrics.add_epoch(snap.to_dict())

            self.snapshot_metrics()

    def holdings(self) -> List[dict]:
        p = self.protocol
        rows = []
        for agent in self.agents.values():
            positions = p.bonds.positions_of(agent.agent_id)
            rows.append({
                "agent_id": agent.agent_id,
                "role": agent.role,
                "policy": agent.preferred_policy.value,
                "conviction": agent.conviction,
                "collateral": p.collateral.whole(p.collateral.balance_of(agent.agent_id)),
                "native": p.native.whole(p.native.balance_of(agent.agent_id)),
                "bonds": len(positions),
                "bonded": p.native.whole(int(sum(pos.locked for pos in positions))),
            })
        return rows

    def snapshot_metrics(self) -> None:
        cfg = self.cfg
        metrics_stride = int(cfg.metrics_stride or 0)
        bond_stride = int(cfg.bond_metrics_stride or 0)
        do_protocol = metrics_stride > 0 and self.tick % metrics_stride == 0
        do_bonds = bond_stride > 0 and self.tick % bond_stride == 0
        if not do_protocol and not do_bonds:
            return
        p = self.protocol

        if do_protocol:
            row = p.summary()
            row.update({
                "step": self.tick,
                "sentiment": self.sentiment(),
                "agents": len(self.agents),
                "buy_volume": p.collateral.whole(self._buy_volume_tick),
                "sell_volume": p.collateral.whole(self._sell_volume_tick),
                "bond_payouts": p.native.whole(self._bond_payout_tick),
                "receipts_executed": self._executed_tick,
                "receipts_failed": self._failed_tick,
                "price_whole": row["price"] * 10 ** (p.native.decimals() - p.collateral.decimals()),
            })
            self.metrics.add_protocol(row)

        if do_bonds:
            rows = []
            for pos in p.bonds.positions.values():
                rows.append({
                    "step": self.tick,
                    "bond_id": pos.bond_id,
                    "owner": pos.owner,
                    "policy": pos.policy.value,
                    "locked": float(pos.locked),
                    "original": float(pos.original_balance),
                    "ratio": float(pos.balance_ratio),
                    "last_settled_epoch": pos.last_settled_epoch,
                    "paid_out": pos.paid_out,
                })
            self.metrics.add_bond_rows(rows)
