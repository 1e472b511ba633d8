import pytest

from ratchet import fixed


def _check_invariants(protocol) -> None:
    st = protocol.state
    with fixed.precision():
        assert st.leverage_effective_low == min(st.leverage_cap, st.leverage_target)
        assert st.leverage_effective_high == max(st.leverage_realized, st.leverage_effective_low)
    assert st.slip_pool >= 0 and st.peg_pool >= 0
    assert st.reserve == st.slip_pool + st.peg_pool
    assert protocol.collateral.balance_of(protocol.collateral.holder) == st.reserve
    assert st.hypothetical_supply >= st.circulating_supply
    assert protocol.native.total_supply == st.circulating_supply
    assert st.leverage_realized <= st.leverage_cap
    assert st.price <= st.ath_price
    if st.peg_pool > 0:
        assert st.price == st.ath_price


@pytest.fixture
def check_invariants():
    return _check_invariants
