import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from ratchet.bonds import BondPolicy
from ratchet.config import ProtocolConfig
from ratchet.core import (
    InvalidAmount,
    ManagerCapability,
    NotPositionOwner,
    ProtocolError,
    Unauthorized,
    UnknownPosition,
)
from ratchet.protocol import Protocol

UNIT = 10 ** 6
ACCOUNTS = ("alice", "bob", "carol")

OPERATION = st.tuples(
    st.sampled_from(["buy", "sell", "tick", "open", "add", "settle", "policy", "close"]),
    st.sampled_from(ACCOUNTS),
    st.integers(min_value=0, max_value=100_000),
    st.floats(min_value=0.0, max_value=1.0),
    st.sampled_from(list(BondPolicy)),
)


def _apply(p: Protocol, op: str, account: str, size: int, frac: float, policy: BondPolicy):
    held = p.native.balance_of(account)
    bonds = p.bonds.positions_of(account)
    if op == "buy":
        # up to 50,000 whole units, past the ATH slip level at defaults
        return p.buy(account, size * UNIT // 2)
    if op == "sell":
        return p.sell(account, int(held * frac))
    if op == "tick":
        p.advance(1 + size % 40)
        return p.tick()
    if op == "open":
        return p.open_bond(account, int(held * frac), policy)
    if op == "close":
        return p.close_bond_epoch()
    bond_id = bonds[size % len(bonds)].bond_id if bonds else size
    if op == "add":
        return p.add_to_bond(account, bond_id, int(held * frac))
    if op == "settle":
        return p.settle_bond(account, bond_id)
    return p.change_bond_policy(account, bond_id, policy)


class TestRandomSequences:
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(ops=st.lists(OPERATION, min_size=1, max_size=40), seed_peg=st.booleans())
    def test_invariants_hold_and_rejections_change_nothing(self, check_invariants, ops, seed_peg):
        p = Protocol(ProtocolConfig(initial_bear_length=30, bond_maturity_span=20))
        for account in ACCOUNTS:
            p.fund(account, 10_000_000 * UNIT)
        if seed_peg:
            # peg pool well above the safety floor so ticks drain it
            seed = 3 * p.reserve.slip_at_ath()
            p.fund("genesis", seed)
            p.buy("genesis", seed)
            assert p.state.peg_pool > p.state.peg_floor_safety

        for op in ops:
            before = p.summary()
            epochs_before = len(p.bonds.epochs)
            try:
                result = _apply(p, *op)
            except ProtocolError:
                assert p.summary() == before
                continue

            check_invariants(p)
            assert p.bonds.pending_accrual >= 0
            if op[0] == "close" and result is not None:
                assert result.index == epochs_before
                assert result.accrual <= before["bond_pending_accrual"] + 1
                assert all(v >= 0 for v in result.after.values())


class TestBondOperations:
    def setup_method(self):
        self.p = Protocol()
        self.p.fund("alice", 1_000 * UNIT)
        self.minted = self.p.buy("alice", 1_000 * UNIT)

    def test_open_raises_leverage_target(self):
        target_before = self.p.state.leverage_target
        self.p.open_bond("alice", self.minted // 2, "gains_only")
        assert self.p.state.leverage_target > target_before
        assert self.p.bonds.total_locked() == self.minted // 2

    def test_settle_lowers_target_back_when_position_leaves(self):
        pos = self.p.open_bond("alice", self.minted // 2, BondPolicy.DECAY)
        raised = self.p.state.leverage_target
        self.p.advance(1)
        self.p.close_bond_epoch()
        self.p.advance(500)
        self.p.close_bond_epoch()
        self.p.settle_bond("alice", pos.bond_id)
        assert pos.bond_id not in self.p.bonds.positions
        assert self.p.state.leverage_target < raised

    def test_foreign_owner_rejected(self):
        pos = self.p.open_bond("alice", 1_000, BondPolicy.REINVEST)
        before = self.p.summary()
        with pytest.raises(NotPositionOwner):
            self.p.settle_bond("bob", pos.bond_id)
        with pytest.raises(NotPositionOwner):
            self.p.add_to_bond("bob", pos.bond_id, 10)
        with pytest.raises(NotPositionOwner):
            self.p.change_bond_policy("bob", pos.bond_id, BondPolicy.DECAY)
        assert self.p.summary() == before

    def test_unknown_and_invalid(self):
        with pytest.raises(UnknownPosition):
            self.p.settle_bond("alice", 42)
        with pytest.raises(InvalidAmount):
            self.p.open_bond("alice", 0, BondPolicy.DECAY)
        with pytest.raises(ValueError):
            self.p.open_bond("alice", 10, "forever")

    def test_accrual_requires_the_reserve_capability(self):
        with pytest.raises(Unauthorized):
            self.p.bonds.accrue(ManagerCapability("reserve"), 10)
        self.p.bonds.accrue(self.p.manager, 0)
        assert self.p.bonds.pending_accrual == 0


class TestEventsAndSummary:
    def test_operations_are_logged_in_order(self):
        p = Protocol()
        p.fund("alice", 1_000 * UNIT)
        minted = p.buy("alice", 1_000 * UNIT)
        pos = p.open_bond("alice", minted // 4, BondPolicy.GAINS_ONLY)
        p.advance(2)
        p.tick()
        p.close_bond_epoch()
        p.sell("alice", minted // 4)

        types = [e.event_type for e in p.log.events]
        assert types == ["BUY", "BOND_OPENED", "TICK", "EPOCH_CLOSED", "SELL"]
        assert [e.tick for e in p.log.since(2)] == [2, 2, 2]
        assert p.log.tail(1)[0].actor_id == "alice"
        assert p.log.events[1].bond_id == pos.bond_id

    def test_summary_merges_reserve_and_bonds(self):
        p = Protocol()
        row = p.summary()
        assert row["tick"] == 0
        assert row["price"] == pytest.approx(0.1)
        assert row["bond_positions"] == 0
        assert row["native_total_supply"] == 0
        assert row["halted"] is False

    def test_event_log_is_bounded(self):
        p = Protocol(ProtocolConfig(event_log_maxlen=3))
        p.fund("alice", 100 * UNIT)
        for _ in range(5):
            p.buy("alice", 10 * UNIT)
        assert len(p.log.events) == 3
