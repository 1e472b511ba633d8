from decimal import Decimal

import pytest

from ratchet import fixed
from ratchet.bonds import BondLedger, BondPolicy, POLICIES
from ratchet.config import ProtocolConfig
from ratchet.core import (
    Clock,
    InsufficientBalance,
    InvalidAmount,
    ManagerCapability,
    NativeUnit,
    NotPositionOwner,
    Unauthorized,
    UnknownPosition,
)


def _ledger(**overrides):
    cfg = ProtocolConfig(**overrides)
    clock = Clock()
    native = NativeUnit("RCH", 6)
    manager = ManagerCapability("test")
    ledger = BondLedger(cfg, native, clock, manager)
    return cfg, clock, native, manager, ledger


def _close(clock, ledger, dt=1):
    clock.advance(dt)
    return ledger.close_epoch()


class TestOpen:
    def setup_method(self):
        self.cfg, self.clock, self.native, self.manager, self.ledger = _ledger()
        self.native.mint("alice", 10_000)

    def test_open_moves_principal_into_custody(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.DECAY)
        assert self.native.balance_of("alice") == 9_000
        assert self.native.balance_of("bond_ledger") == 1_000
        assert pos.pending == 1_000
        assert pos.last_settled_epoch == self.ledger.current_epoch == 0
        assert self.ledger.total_locked() == 1_000
        assert self.ledger.positions_of("alice") == [pos]

    def test_open_rejections_leave_no_trace(self):
        with pytest.raises(InvalidAmount):
            self.ledger.open("alice", 0, BondPolicy.DECAY)
        with pytest.raises(InsufficientBalance):
            self.ledger.open("alice", 20_000, BondPolicy.DECAY)
        assert self.ledger.positions == {}
        assert self.ledger.total_locked() == 0
        assert self.native.balance_of("alice") == 10_000

    def test_policy_from_string(self):
        pos = self.ledger.open("alice", 10, "reinvest")
        assert pos.policy is BondPolicy.REINVEST

    def test_event_recorded(self):
        pos = self.ledger.open("alice", 10, BondPolicy.GAINS_ONLY)
        last = self.ledger.log.tail(1)[0]
        assert last.event_type == "BOND_OPENED"
        assert last.bond_id == pos.bond_id


class TestEpochs:
    def setup_method(self):
        self.cfg, self.clock, self.native, self.manager, self.ledger = _ledger(bond_epoch_min_ticks=5)
        self.native.mint("alice", 10_000)

    def test_rate_limited_close_returns_none(self):
        assert self.ledger.close_epoch() is None
        self.clock.advance(4)
        assert self.ledger.close_epoch() is None
        self.clock.advance(1)
        snap = self.ledger.close_epoch()
        assert snap is not None
        assert snap.index == 0
        assert snap.elapsed == 5
        assert self.ledger.current_epoch == 1

    def test_pending_principal_folds_after_close(self):
        self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        snap = _close(self.clock, self.ledger, 5)
        assert snap.prior[BondPolicy.GAINS_ONLY] == 0
        assert self.ledger.subtotals[BondPolicy.GAINS_ONLY] == 1_000
        assert all(v == 0 for v in self.ledger.pending_principal.values())

    def test_subtotals_sum_to_total(self):
        self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        self.ledger.open("alice", 2_000, BondPolicy.REINVEST)
        self.ledger.open("alice", 3_000, BondPolicy.DECAY)
        _close(self.clock, self.ledger, 5)
        self.native.mint(self.ledger.custody, 600)
        self.ledger.accrue(self.manager, 600)
        snap = _close(self.clock, self.ledger, 5)
        with fixed.precision():
            assert sum(snap.after[p] for p in POLICIES) == snap.total
        assert snap.accrual == 600
        assert snap.payouts[BondPolicy.REINVEST] == 0

    def test_accrual_waits_without_positions(self):
        self.native.mint(self.ledger.custody, 100)
        self.ledger.accrue(self.manager, 100)
        snap = _close(self.clock, self.ledger, 5)
        assert snap.accrual == 0
        assert self.ledger.pending_accrual == 100


class TestSettle:
    def setup_method(self):
        self.cfg, self.clock, self.native, self.manager, self.ledger = _ledger()
        self.native.mint("alice", 10_000)
        self.native.mint("bob", 10_000)

    def _accrue(self, amount):
        self.native.mint(self.ledger.custody, amount)
        self.ledger.accrue(self.manager, amount)

    def test_late_position_does_not_share_earlier_gains(self):
        alice = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        _close(self.clock, self.ledger)
        self._accrue(100)
        bob = self.ledger.open("bob", 1_000, BondPolicy.GAINS_ONLY)
        snap = _close(self.clock, self.ledger)
        assert snap.payouts[BondPolicy.GAINS_ONLY] == 100

        assert self.ledger.settle(alice.bond_id, "alice") == 100
        assert self.ledger.settle(bob.bond_id, "bob") == 0
        assert self.native.balance_of("alice") == 9_100
        assert bob.balance == 1_000
        assert bob.pending == 0

    def test_second_settle_pays_nothing(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        _close(self.clock, self.ledger)
        self._accrue(50)
        _close(self.clock, self.ledger)
        assert self.ledger.settle(pos.bond_id, "alice") == 50
        assert self.ledger.settle(pos.bond_id, "alice") == 0

    def test_gains_split_pro_rata(self):
        alice = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        bob = self.ledger.open("bob", 3_000, BondPolicy.GAINS_ONLY)
        _close(self.clock, self.ledger)
        self._accrue(400)
        _close(self.clock, self.ledger)
        assert self.ledger.settle(alice.bond_id, "alice") == 100
        assert self.ledger.settle(bob.bond_id, "bob") == 300

    def test_reinvest_compounds(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.REINVEST)
        _close(self.clock, self.ledger)
        self._accrue(100)
        _close(self.clock, self.ledger)
        assert self.ledger.settle(pos.bond_id, "alice") == 0
        assert pos.balance == 1_100
        assert self.ledger.total_locked() == 1_100

    def test_decay_pays_shrinkage(self):
        cfg, clock, native, manager, ledger = _ledger(bond_maturity_span=10)
        native.mint("alice", 1_000)
        pos = ledger.open("alice", 1_000, BondPolicy.DECAY)
        _close(clock, ledger)
        _close(clock, ledger, 1)
        paid = ledger.settle(pos.bond_id, "alice")
        with fixed.precision():
            expected = 1_000 - 1_000 * fixed.exp(Decimal("-0.1"))
        assert paid == fixed.floor_int(expected)
        assert pos.bond_id in ledger.positions

    def test_add_registers_pending(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        _close(self.clock, self.ledger)
        self.ledger.add(pos.bond_id, 500, "alice")
        assert pos.balance == 1_000
        assert pos.pending == 500
        assert pos.original_balance == 1_500
        assert self.ledger.total_locked() == 1_500
        self._accrue(150)
        _close(self.clock, self.ledger)
        # the added principal arrived after the epoch opened
        assert self.ledger.settle(pos.bond_id, "alice") == 150
        assert pos.balance == 1_500

    def test_change_policy_moves_aggregates(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        _close(self.clock, self.ledger)
        self.ledger.change_policy(pos.bond_id, BondPolicy.REINVEST, "alice")
        assert self.ledger.subtotals[BondPolicy.GAINS_ONLY] == 0
        assert self.ledger.subtotals[BondPolicy.REINVEST] == 1_000
        assert pos.policy is BondPolicy.REINVEST

    def test_change_policy_moves_pending(self):
        pos = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)
        self.ledger.change_policy(pos.bond_id, BondPolicy.DECAY, "alice")
        assert self.ledger.pending_principal[BondPolicy.GAINS_ONLY] == 0
        assert self.ledger.pending_principal[BondPolicy.DECAY] == 1_000


class TestMaturity:
    def test_decay_redeemed_when_threshold_crossed(self):
        cfg, clock, native, manager, ledger = _ledger(bond_maturity_span=1)
        native.mint("alice", 1_000)
        pos = ledger.open("alice", 1_000, BondPolicy.DECAY)
        _close(clock, ledger)

        _close(clock, ledger)
        first = ledger.settle(pos.bond_id, "alice")
        assert first == 632
        assert pos.bond_id in ledger.positions

        _close(clock, ledger)
        second = ledger.settle(pos.bond_id, "alice")
        assert first + second == 1_000
        assert pos.bond_id not in ledger.positions
        assert ledger.positions_of("alice") == []
        assert ledger.total_locked() == 0
        assert native.balance_of("alice") == 1_000
        assert ledger.log.tail(1)[0].event_type == "BOND_MATURED"

    def test_exact_threshold_is_redeemed(self):
        cfg, clock, native, manager, ledger = _ledger(bond_maturity_span=1)
        native.mint("alice", 1_000)
        pos = ledger.open("alice", 1_000, BondPolicy.DECAY)
        _close(clock, ledger)
        snap = _close(clock, ledger, 2)
        with fixed.precision():
            assert snap.after[BondPolicy.DECAY] == 1_000 * cfg.bond_portion_at_maturity

        assert ledger.settle(pos.bond_id, "alice") == 1_000
        assert pos.bond_id not in ledger.positions
        assert ledger.matured_count == 1

    def test_settle_after_removal_raises(self):
        cfg, clock, native, manager, ledger = _ledger(bond_maturity_span=1)
        native.mint("alice", 1_000)
        pos = ledger.open("alice", 1_000, BondPolicy.DECAY)
        _close(clock, ledger)
        _close(clock, ledger, 3)
        ledger.settle(pos.bond_id, "alice")
        with pytest.raises(UnknownPosition):
            ledger.settle(pos.bond_id, "alice")


class TestAccess:
    def setup_method(self):
        self.cfg, self.clock, self.native, self.manager, self.ledger = _ledger()
        self.native.mint("alice", 1_000)
        self.pos = self.ledger.open("alice", 1_000, BondPolicy.GAINS_ONLY)

    def test_non_owner_rejected(self):
        with pytest.raises(NotPositionOwner):
            self.ledger.settle(self.pos.bond_id, "mallory")
        with pytest.raises(NotPositionOwner):
            self.ledger.change_policy(self.pos.bond_id, BondPolicy.DECAY, "mallory")

    def test_manager_may_act(self):
        assert self.ledger.settle(self.pos.bond_id, self.manager) == 0

    def test_foreign_capability_rejected(self):
        other = ManagerCapability("test")
        with pytest.raises(Unauthorized):
            self.ledger.settle(self.pos.bond_id, other)
        with pytest.raises(Unauthorized):
            self.ledger.accrue(other, 10)
        with pytest.raises(Unauthorized):
            self.ledger.accrue("alice", 10)
        assert self.ledger.pending_accrual == 0

    def test_unknown_id(self):
        with pytest.raises(UnknownPosition):
            self.ledger.settle(999, "alice")
