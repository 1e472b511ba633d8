from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, Optional
import logging
import threading

from . import fixed
from .bonds import BondLedger, BondPolicy, BondPosition, EpochSnapshot
from .config import ProtocolConfig
from .core import Clock, CollateralAsset, EventLog, ManagerCapability, NativeUnit
from .reserve import ReserveEngine

logger = logging.getLogger(__name__)


class Protocol:
    """
    Public operation surface.

    One clock, one pair of token ledgers, one event log, the reserve engine and the bond
    ledger. Every entry point runs as a single transaction: a process-wide re-entrant lock
    and the 40-digit decimal context. Rejections are raised before anything is written.
    """

    def __init__(self, cfg: Optional[ProtocolConfig] = None, clock: Optional[Clock] = None) -> None:
        self.cfg = cfg or ProtocolConfig()
        self.clock = clock or Clock()
        self._lock = threading.RLock()

        self.log = EventLog(maxlen=self.cfg.event_log_maxlen)
        self.collateral = CollateralAsset(self.cfg.collateral_symbol, self.cfg.collateral_decimals)
        self.native = NativeUnit(self.cfg.native_symbol, self.cfg.native_decimals)
        self.manager = ManagerCapability("reserve")

        self.bonds = BondLedger(self.cfg, self.native, self.clock, self.manager, log=self.log)
        self.reserve = ReserveEngine(
            self.cfg,
            self.collateral,
            self.native,
            self.clock,
            registry=self.bonds,
            manager=self.manager,
            log=self.log,
        )

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock, fixed.precision():
            yield

    @property
    def state(self):
        return self.reserve.state

    # -----------------------------
    # Accounts
    # -----------------------------
    def fund(self, account: str, amount: int) -> None:
        """Credit collateral to an account from outside the protocol."""
        with self._transaction():
            self.collateral.fund(account, amount)

    def advance(self, n: int = 1) -> int:
        with self._transaction():
            return self.clock.advance(n)

    # -----------------------------
    # Reserve
    # -----------------------------
    def buy(self, account: str, amount: int) -> int:
        with self._transaction():
            return self.reserve.buy(account, amount)

    def sell(self, account: str, amount: int) -> int:
        with self._transaction():
            return self.reserve.sell(account, amount)

    def tick(self) -> bool:
        with self._transaction():
            return self.reserve.tick()

    # -----------------------------
    # Bonds
    # -----------------------------
    def open_bond(self, owner: str, amount: int, policy: BondPolicy | str) -> BondPosition:
        with self._transaction():
            pos = self.bonds.open(owner, amount, BondPolicy(policy))
            self.reserve.update_leverage_target()
            self.reserve.update_peg_thresholds()
            return pos

    def add_to_bond(self, owner: str, bond_id: int, amount: int) -> BondPosition:
        with self._transaction():
            pos = self.bonds.add(bond_id, amount, caller=owner)
            self.reserve.update_leverage_target()
            self.reserve.update_peg_thresholds()
            return pos

    def settle_bond(self, owner: str, bond_id: int) -> int:
        with self._transaction():
            paid = self.bonds.settle(bond_id, caller=owner)
            self.reserve.update_leverage_target()
            self.reserve.update_peg_thresholds()
            return paid

    def change_bond_policy(self, owner: str, bond_id: int, policy: BondPolicy | str) -> BondPosition:
        with self._transaction():
            return self.bonds.change_policy(bond_id, BondPolicy(policy), caller=owner)

    def close_bond_epoch(self) -> Optional[EpochSnapshot]:
        with self._transaction():
            return self.bonds.close_epoch()

    # -----------------------------
    # Reporting
    # -----------------------------
    def summary(self) -> dict:
        with self._transaction():
            row = {"tick": self.clock.now}
            row.update(self.reserve.summary())
            row.update({f"bond_{k}": v for k, v in self.bonds.summary().items()})
            row["native_total_supply"] = self.native.total_supply
            return row
