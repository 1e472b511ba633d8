from __future__ import annotations
from dataclasses import dataclass
from typing import Literal, Optional
import numpy as np
import random

from .bonds import BondPolicy
from .config import ScenarioConfig
from .protocol import Protocol

AgentRole = Literal["trader", "bonder"]

@dataclass
class Agent:
    agent_id: str
    role: AgentRole
    preferred_policy: BondPolicy
    conviction: float            # shifts buy/sell odds, in [-1, 1]
    funded: int = 0              # collateral units granted at creation

class AgentFactory:
    def __init__(self, cfg: ScenarioConfig, protocol: Protocol) -> None:
        self.cfg = cfg
        self.protocol = protocol
        self.agent_counter = 0

    def _new_agent_id(self) -> str:
        self.agent_counter += 1
        return f"agent_{self.agent_counter:04d}"

    def sample_policy(self) -> BondPolicy:
        p_decay = max(0.0, float(self.cfg.p_decay))
        p_gains = max(0.0, float(self.cfg.p_gains_only))
        p_reinvest = max(0.0, float(self.cfg.p_reinvest))
        total = p_decay + p_gains + p_reinvest
        if total <= 0.0:
            return BondPolicy.DECAY
        r = random.random() * total
        if r < p_decay:
            return BondPolicy.DECAY
        r -= p_decay
        if r < p_gains:
            return BondPolicy.GAINS_ONLY
        return BondPolicy.REINVEST

    def create_agent(self, role: AgentRole, *, collateral_mean: Optional[float] = None) -> Agent:
        cfg = self.cfg
        if collateral_mean is None:
            collateral_mean = cfg.bonder_collateral_mean if role == "bonder" else cfg.trader_collateral_mean
        agent = Agent(
            agent_id=self._new_agent_id(),
            role=role,
            preferred_policy=self.sample_policy(),
            conviction=float(np.clip(np.random.normal(0.0, 0.35), -1.0, 1.0)),
        )
        # exponential wealth draw, at least one whole collateral unit
        whole = max(1.0, float(np.random.exponential(collateral_mean)))
        amount = self.protocol.collateral.units(whole)
        self.protocol.fund(agent.agent_id, amount)
        agent.funded = amount
        return agent
