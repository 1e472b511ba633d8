"""
Bond epoch ledger.

Positions never touch the aggregate sums directly. Each closed epoch appends a snapshot
of the per-policy subtotals before and after the epoch plus the payouts issued, and a
position settles by walking the snapshots it has not seen yet. Principal that arrives
mid-epoch waits in a pending accumulator and is folded in right after the next close, so
no position ever shares in gains or decay accrued before it existed.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set
import logging

from . import fixed
from .config import ProtocolConfig
from .core import (
    Clock,
    Event,
    EventLog,
    ManagerCapability,
    NativeUnit,
    NotPositionOwner,
    Unauthorized,
    UnknownPosition,
    require_amount,
)

logger = logging.getLogger(__name__)


class BondPolicy(str, Enum):
    DECAY = "decay"              # principal unlocks exponentially
    GAINS_ONLY = "gains_only"    # principal locked, gains paid out
    REINVEST = "reinvest"        # gains compounded into principal


POLICIES = (BondPolicy.DECAY, BondPolicy.GAINS_ONLY, BondPolicy.REINVEST)


def _zeros() -> Dict[BondPolicy, Decimal]:
    return {p: fixed.ZERO for p in POLICIES}


@dataclass
class BondPosition:
    bond_id: int
    owner: str
    policy: BondPolicy
    balance: Decimal
    original_balance: Decimal
    last_settled_epoch: int
    pending: Decimal = fixed.ZERO
    pending_epoch: int = -1
    unpaid: Decimal = fixed.ZERO
    paid_out: int = 0
    opened_tick: int = 0

    @property
    def locked(self) -> Decimal:
        return self.balance + self.pending

    @property
    def balance_ratio(self) -> Decimal:
        return fixed.div(self.locked, self.original_balance, default=fixed.ONE)


@dataclass(frozen=True)
class EpochSnapshot:
    index: int
    closed_tick: int
    elapsed: int
    prior: Dict[BondPolicy, Decimal]
    after: Dict[BondPolicy, Decimal]
    payouts: Dict[BondPolicy, Decimal]
    accrual: Decimal

    @property
    def total(self) -> Decimal:
        return sum(self.after.values(), fixed.ZERO)

    @property
    def prior_total(self) -> Decimal:
        return sum(self.prior.values(), fixed.ZERO)

    def to_dict(self) -> dict:
        row = {
            "epoch": self.index,
            "closed_tick": self.closed_tick,
            "elapsed": self.elapsed,
            "accrual": float(self.accrual),
            "total": float(self.total),
        }
        for p in POLICIES:
            row[f"{p.value}_prior"] = float(self.prior[p])
            row[f"{p.value}_after"] = float(self.after[p])
            row[f"{p.value}_payout"] = float(self.payouts[p])
        return row


class BondLedger:
    """Bond position registry; also the `BondPositionRegistry` the reserve engine reads."""

    def __init__(
        self,
        cfg: ProtocolConfig,
        native: NativeUnit,
        clock: Clock,
        manager: ManagerCapability,
        log: Optional[EventLog] = None,
        custody: str = "bond_ledger",
    ) -> None:
        self.cfg = cfg
        self.native = native
        self.clock = clock
        self.custody = custody
        self.log = log if log is not None else EventLog(maxlen=cfg.event_log_maxlen)
        self._manager = manager

        self.positions: Dict[int, BondPosition] = {}
        self.owner_index: Dict[str, Set[int]] = {}
        self.epochs: List[EpochSnapshot] = []
        self.subtotals: Dict[BondPolicy, Decimal] = _zeros()
        self.pending_principal: Dict[BondPolicy, Decimal] = _zeros()
        self.pending_accrual: Decimal = fixed.ZERO
        self.last_close_tick: int = clock.now
        self._next_id: int = 1
        self.matured_count: int = 0

    # -----------------------------
    # Aggregates
    # -----------------------------
    @property
    def current_epoch(self) -> int:
        """Index of the epoch in progress; its snapshot is appended when it closes."""
        return len(self.epochs)

    @fixed.precise
    def total_locked(self) -> int:
        live = sum(self.subtotals.values(), fixed.ZERO)
        pending = sum(self.pending_principal.values(), fixed.ZERO)
        return max(0, fixed.floor_int(live + pending))

    def locked_by_policy(self) -> Dict[BondPolicy, Decimal]:
        return {p: self.subtotals[p] + self.pending_principal[p] for p in POLICIES}

    def positions_of(self, owner: str) -> List[BondPosition]:
        return [self.positions[i] for i in sorted(self.owner_index.get(owner, ()))]

    def position(self, bond_id: int) -> BondPosition:
        pos = self.positions.get(bond_id)
        if pos is None:
            raise UnknownPosition(f"bond {bond_id} does not exist")
        return pos

    # -----------------------------
    # Access control
    # -----------------------------
    def _authorize(self, pos: BondPosition, caller) -> None:
        if caller is self._manager:
            return
        if isinstance(caller, ManagerCapability):
            raise Unauthorized(f"{caller!r} is not this ledger's manager")
        if caller != pos.owner:
            raise NotPositionOwner(f"{caller} does not own bond {pos.bond_id}")

    def _require_manager(self, caller) -> None:
        if caller is not self._manager:
            raise Unauthorized("manager capability required")

    # -----------------------------
    # Position lifecycle
    # -----------------------------
    @fixed.precise
    def open(self, owner: str, amount: int, policy: BondPolicy) -> BondPosition:
        require_amount(amount)
        policy = BondPolicy(policy)
        self.native.require_balance(owner, amount)

        self.native.transfer(owner, self.custody, amount)
        value = fixed.D(amount)
        pos = BondPosition(
            bond_id=self._next_id,
            owner=owner,
            policy=policy,
            balance=fixed.ZERO,
            original_balance=value,
            last_settled_epoch=self.current_epoch,
            pending=value,
            pending_epoch=self.current_epoch,
            opened_tick=self.clock.now,
        )
        self._next_id += 1
        self.positions[pos.bond_id] = pos
        self.owner_index.setdefault(owner, set()).add(pos.bond_id)
        self.pending_principal[policy] += value

        self.log.add(Event(self.clock.now, "BOND_OPENED", actor_id=owner, bond_id=pos.bond_id,
                           amount=amount, meta={"policy": policy.value, "epoch": self.current_epoch}))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[BOND] open id=%d owner=%s policy=%s amount=%d epoch=%d",
                         pos.bond_id, owner, policy.value, amount, self.current_epoch)
        return pos

    @fixed.precise
    def add(self, bond_id: int, amount: int, caller) -> BondPosition:
        require_amount(amount)
        pos = self.position(bond_id)
        self._authorize(pos, caller)
        self.native.require_balance(pos.owner, amount)

        self.native.transfer(pos.owner, self.custody, amount)
        self._catch_up(pos)
        value = fixed.D(amount)
        pos.pending += value
        pos.pending_epoch = self.current_epoch
        pos.original_balance = max(pos.original_balance, pos.locked)
        self.pending_principal[pos.policy] += value

        self.log.add(Event(self.clock.now, "BOND_ADDED", actor_id=pos.owner, bond_id=bond_id,
                           amount=amount, meta={"policy": pos.policy.value}))
        return pos

    @fixed.precise
    def change_policy(self, bond_id: int, policy: BondPolicy, caller) -> BondPosition:
        policy = BondPolicy(policy)
        pos = self.position(bond_id)
        self._authorize(pos, caller)
        if policy == pos.policy:
            return pos

        self._catch_up(pos)
        old = pos.policy
        self.subtotals[old] = max(fixed.ZERO, self.subtotals[old] - pos.balance)
        self.subtotals[policy] += pos.balance
        if pos.pending > 0:
            self.pending_principal[old] = max(fixed.ZERO, self.pending_principal[old] - pos.pending)
            self.pending_principal[policy] += pos.pending
        pos.policy = policy
        if policy == BondPolicy.DECAY:
            pos.original_balance = max(pos.original_balance, pos.locked)

        self.log.add(Event(self.clock.now, "BOND_POLICY_CHANGED", actor_id=pos.owner, bond_id=bond_id,
                           meta={"from": old.value, "to": policy.value}))
        return pos

    @fixed.precise
    def settle(self, bond_id: int, caller) -> int:
        """Pay out everything the position earned in closed epochs; returns the amount transferred."""
        pos = self.position(bond_id)
        self._authorize(pos, caller)

        self._catch_up(pos)
        matured = (
            pos.policy == BondPolicy.DECAY
            and fixed.le_within(pos.balance_ratio, self.cfg.bond_portion_at_maturity,
                                self.cfg.precision_tolerance)
        )
        if matured:
            pos.unpaid += pos.balance + pos.pending
            self.subtotals[BondPolicy.DECAY] = max(fixed.ZERO, self.subtotals[BondPolicy.DECAY] - pos.balance)
            if pos.pending > 0:
                self.pending_principal[BondPolicy.DECAY] = max(
                    fixed.ZERO, self.pending_principal[BondPolicy.DECAY] - pos.pending
                )
            pos.balance = fixed.ZERO
            pos.pending = fixed.ZERO

        # rounding slack so sums that are whole in exact arithmetic are not floored one unit short
        slack = abs(pos.unpaid) * self.cfg.precision_tolerance
        payout = max(0, fixed.floor_int(pos.unpaid + slack))
        payout = min(payout, self.native.balance_of(self.custody))
        if payout > 0:
            pos.unpaid -= payout
            pos.paid_out += payout
            self.native.transfer(self.custody, pos.owner, payout)

        if matured:
            self._remove(pos)
            self.matured_count += 1
            self.log.add(Event(self.clock.now, "BOND_MATURED", actor_id=pos.owner, bond_id=bond_id,
                               amount=payout, meta={"paid_out_total": pos.paid_out}))
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[BOND] matured id=%d owner=%s payout=%d", bond_id, pos.owner, payout)
        elif payout > 0:
            self.log.add(Event(self.clock.now, "BOND_SETTLED", actor_id=pos.owner, bond_id=bond_id,
                               amount=payout, meta={"policy": pos.policy.value}))
        return payout

    def _remove(self, pos: BondPosition) -> None:
        self.positions.pop(pos.bond_id, None)
        ids = self.owner_index.get(pos.owner)
        if ids is not None:
            ids.discard(pos.bond_id)
            if not ids:
                self.owner_index.pop(pos.owner, None)

    def _catch_up(self, pos: BondPosition) -> None:
        """Walk every closed epoch the position has not seen; credits pos.unpaid, pays nothing."""
        earned = fixed.ZERO
        balance = pos.balance
        policy = pos.policy
        for snap in self.epochs[pos.last_settled_epoch + 1:]:
            if pos.pending > 0 and snap.index > pos.pending_epoch:
                balance += pos.pending
                pos.pending = fixed.ZERO
                pos.pending_epoch = -1
            before = snap.prior[policy]
            if balance > 0 and before > 0:
                share = balance / before
                if policy == BondPolicy.DECAY:
                    earned += snap.payouts[policy] * share
                    balance = balance * snap.after[policy] / before
                elif policy == BondPolicy.GAINS_ONLY:
                    earned += snap.payouts[policy] * share
                else:
                    balance = balance * snap.after[policy] / before
        # principal registered in an epoch that has since closed is part of the aggregates now
        if pos.pending > 0 and pos.pending_epoch < len(self.epochs):
            balance += pos.pending
            pos.pending = fixed.ZERO
            pos.pending_epoch = -1
        pos.balance = balance
        pos.unpaid += earned
        pos.last_settled_epoch = max(pos.last_settled_epoch, len(self.epochs) - 1)

    # -----------------------------
    # Manager interface
    # -----------------------------
    @fixed.precise
    def accrue(self, caller, amount: int) -> None:
        """Register newly minted value (already in custody) for distribution at the next close."""
        self._require_manager(caller)
        if amount <= 0:
            return
        self.pending_accrual += fixed.D(amount)

    # -----------------------------
    # Epochs
    # -----------------------------
    @fixed.precise
    def close_epoch(self) -> Optional[EpochSnapshot]:
        now = self.clock.now
        elapsed = now - self.last_close_tick
        if elapsed < self.cfg.bond_epoch_min_ticks:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("[EPOCH] close skipped elapsed=%d min=%d", elapsed, self.cfg.bond_epoch_min_ticks)
            return None

        prior = dict(self.subtotals)
        total = sum(prior.values(), fixed.ZERO)
        accrual = self.pending_accrual if total > 0 else fixed.ZERO
        shares = {p: (accrual * prior[p] / total if total > 0 else fixed.ZERO) for p in POLICIES}

        decay_factor = fixed.exp(-fixed.D(elapsed) / self.cfg.bond_maturity_span)
        after = {
            BondPolicy.DECAY: prior[BondPolicy.DECAY] * decay_factor,
            BondPolicy.GAINS_ONLY: prior[BondPolicy.GAINS_ONLY],
            BondPolicy.REINVEST: prior[BondPolicy.REINVEST] + shares[BondPolicy.REINVEST],
        }
        payouts = {
            BondPolicy.DECAY: prior[BondPolicy.DECAY] - after[BondPolicy.DECAY] + shares[BondPolicy.DECAY],
            BondPolicy.GAINS_ONLY: shares[BondPolicy.GAINS_ONLY],
            BondPolicy.REINVEST: fixed.ZERO,
        }
        snap = EpochSnapshot(
            index=len(self.epochs),
            closed_tick=now,
            elapsed=elapsed,
            prior=prior,
            after=after,
            payouts=payouts,
            accrual=accrual,
        )
        self.epochs.append(snap)
        self.pending_accrual -= accrual

        for p in POLICIES:
            self.subtotals[p] = after[p] + self.pending_principal[p]
        self.pending_principal = _zeros()
        self.last_close_tick = now

        self.log.add(Event(now, "EPOCH_CLOSED", amount=fixed.floor_int(accrual),
                           meta={"epoch": snap.index, "total": float(snap.total)}))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[EPOCH] closed index=%d elapsed=%d accrual=%s decay=%s gains=%s reinvest=%s",
                snap.index,
                elapsed,
                accrual,
                after[BondPolicy.DECAY],
                after[BondPolicy.GAINS_ONLY],
                after[BondPolicy.REINVEST],
            )
        return snap

    def summary(self) -> dict:
        locked = self.locked_by_policy()
        return {
            "epochs": len(self.epochs),
            "positions": len(self.positions),
            "matured": self.matured_count,
            "total_locked": self.total_locked(),
            "locked_decay": float(locked[BondPolicy.DECAY]),
            "locked_gains_only": float(locked[BondPolicy.GAINS_ONLY]),
            "locked_reinvest": float(locked[BondPolicy.REINVEST]),
            "pending_accrual": float(self.pending_accrual),
            "custody": self.native.balance_of(self.custody),
        }
