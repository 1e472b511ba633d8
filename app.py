import dataclasses
import json
import time
import streamlit as st
import pandas as pd

from ratchet.config import ScenarioConfig
from ratchet.engine import SimulationEngine

st.set_page_config(page_title="Ratchet Reserve Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=st.session_state.seed)
    return st.session_state.engine


def reset_engine(reset_config: bool = False) -> None:
    if reset_config:
        cfg = ScenarioConfig()
        seed = 1
        st.session_state.cfg = cfg
        st.session_state.seed = seed
    else:
        cfg = st.session_state.get("cfg", ScenarioConfig())
        seed = st.session_state.get("seed", 1)
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=seed)


engine = get_engine()

st.title("Ratchet Reserve Simulator")
st.caption("Time model: 1 step = `time_units_per_tick` protocol time units; bear lengths are in time units.")

def _fmt_duration(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    mins = int(seconds // 60)
    secs = seconds - (mins * 60)
    return f"{mins}m {secs:0.1f}s"

def _fmt(value: float) -> str:
    return f"{float(value):,.2f}"

def _fmt_ratio(value: float) -> str:
    return f"{float(value):,.4f}"

def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

# (name, label, type); "protocol." names live on the nested ProtocolConfig
BATCH_PARAM_SPECS = [
    ("protocol.initial_leverage", "Initial leverage K0", float),
    ("protocol.leverage_ceiling", "Leverage ceiling", float),
    ("protocol.max_expected_selloff_fraction", "Max expected selloff fraction", float),
    ("protocol.bond_accrual_max_share", "Bond accrual max share", float),
    ("protocol.initial_bear_length", "Initial bear length", float),
    ("protocol.bond_maturity_span", "Bond maturity span", float),
    ("cycle_length_ticks", "Sentiment cycle length (steps)", int),
    ("cycle_amplitude", "Sentiment amplitude", float),
    ("base_trade_prob", "Trade probability per agent / step", float),
    ("trade_size_mean_frac", "Trade size mean frac", float),
    ("bond_open_prob", "Bond open probability", float),
    ("bond_settle_prob", "Bond settle probability", float),
    ("epoch_stride_ticks", "Epoch stride (steps)", int),
]

def _parse_sweep_values(text: str, value_type: type) -> list:
    values = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if value_type is int:
                values.append(int(float(part)))
            else:
                values.append(float(part))
        except ValueError:
            continue
    return values

def _current_param(cfg: ScenarioConfig, name: str):
    if name.startswith("protocol."):
        return getattr(cfg.protocol, name.split(".", 1)[1])
    return getattr(cfg, name)

def _config_with(cfg: ScenarioConfig, name: str, value) -> ScenarioConfig:
    if name.startswith("protocol."):
        protocol = dataclasses.replace(cfg.protocol, **{name.split(".", 1)[1]: value})
        return dataclasses.replace(cfg, protocol=protocol)
    return dataclasses.replace(cfg, **{name: value})


with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
        st.session_state.batch_results = None
    st.caption("Restart resets the simulation to step 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input(
        "Random seed",
        min_value=1,
        max_value=100000,
        key="seed",
    )
    if st.button("Apply seed"):
        reset_engine()
        engine = st.session_state.engine

    run_ticks = st.slider("Steps to run", min_value=1, max_value=1000, value=50)
    c3, c4 = st.columns(2)
    run_one = c3.button("Step 1")
    run_many = c4.button("Run N steps")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one:
        progress_bar.progress(0.0, text="Run progress: 0%")
        start_ts = time.time()
        engine.step(1)
        elapsed = time.time() - start_ts
        progress_bar.progress(1.0, text=f"Run progress: 100% ({_fmt_duration(elapsed)})")
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
    if run_many:
        total = int(run_ticks)
        if total > 0:
            start_ts = time.time()
            for idx in range(total):
                engine.step(1)
                progress = (idx + 1) / total
                progress_bar.progress(progress, text=f"Run progress: {progress:.0%}")
            elapsed = time.time() - start_ts
            st.session_state.run_progress = 1.0
            st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
            progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    st.caption(f"Current step: {engine.tick} (protocol time {engine.protocol.clock.now})")

    st.subheader("Population")
    c1, c2 = st.columns(2)
    if c1.button("Add 5 traders"):
        for _ in range(5):
            engine.add_agent("trader")
    if c2.button("Add 5 bonders"):
        for _ in range(5):
            engine.add_agent("bonder")
    st.caption(f"Agents: {len(engine.agents)}")

    st.subheader("Sentiment")
    engine.cfg.cycle_amplitude = st.slider(
        "Cycle amplitude",
        0.0,
        0.5,
        float(engine.cfg.cycle_amplitude),
        step=0.05,
        help="Shifts the buy probability up in bull phases and down in bear phases.",
    )
    engine.cfg.cycle_length_ticks = int(st.number_input(
        "Cycle length (steps)",
        min_value=2,
        value=int(engine.cfg.cycle_length_ticks),
        step=10,
    ))
    engine.cfg.base_trade_prob = st.slider(
        "Trade probability per agent / step",
        0.0,
        1.0,
        float(engine.cfg.base_trade_prob),
        step=0.05,
    )

    st.subheader("Batch Runs")
    st.caption("Sweep one parameter across multiple runs to compare outcomes.")
    runs_per_value = st.number_input(
        "Runs per value", min_value=1, max_value=50, value=3, step=1
    )
    ticks_per_run = st.number_input(
        "Steps per run", min_value=1, max_value=2000, value=100, step=10
    )
    base_seed = st.number_input(
        "Base seed",
        min_value=1,
        max_value=100000,
        value=int(st.session_state.get("seed", 1)),
        step=1,
        key="batch_seed",
    )

    label_map = {label: (name, typ) for name, label, typ in BATCH_PARAM_SPECS}
    selected_label = st.selectbox("Parameter to sweep", list(label_map.keys()))
    param_name, param_type = label_map[selected_label]
    values_text = st.text_input(
        "Values (comma-separated)",
        value=str(_current_param(engine.cfg, param_name)),
        key="batch_values",
    )

    if st.button("Run batch"):
        values = _parse_sweep_values(values_text, param_type)
        if not values:
            st.warning("Enter at least one numeric value.")
        else:
            results = []
            with st.spinner("Running batch simulations..."):
                for value in values:
                    for idx in range(int(runs_per_value)):
                        try:
                            cfg = _config_with(engine.cfg, param_name, value)
                        except ValueError as exc:
                            st.warning(f"{param_name}={value}: {exc}")
                            break
                        seed = int(base_seed) + idx
                        sim = SimulationEngine(cfg=cfg, seed=seed)
                        sim.step(int(ticks_per_run))
                        df = sim.metrics.protocol_df()
                        latest = df.iloc[-1].to_dict() if not df.empty else {}
                        results.append({
                            "param": param_name,
                            "value": value,
                            "run": idx + 1,
                            "seed": seed,
                            "step": sim.tick,
                            "price": latest.get("price_whole", 0.0),
                            "ath_price": latest.get("ath_price", 0.0),
                            "market_cap": latest.get("market_cap", 0.0),
                            "leverage_cap": latest.get("leverage_cap", 0.0),
                            "leverage_realized": latest.get("leverage_realized", 0.0),
                            "slip_pool": latest.get("slip_pool", 0),
                            "peg_pool": latest.get("peg_pool", 0),
                            "bond_total_locked": latest.get("bond_total_locked", 0),
                            "halted": latest.get("halted", False),
                        })
            st.session_state.batch_results = results

tab_market, tab_leverage, tab_bonds, tab_events = st.tabs(
    ["Market Overview", "Leverage & Bear Calibration", "Bonds", "Events"]
)

df = engine.metrics.protocol_df()

with tab_market:
    if df.empty:
        st.info("No metrics yet. Run some steps.")
    else:
        latest = df.iloc[-1].to_dict()
        kpis = [
            ("Price", _fmt_ratio(latest["price_whole"])),
            ("ATH price", _fmt_ratio(latest["ath_price"])),
            ("Market cap", _fmt(engine.protocol.collateral.whole(int(latest["market_cap"])))),
            ("Slip pool", _fmt(engine.protocol.collateral.whole(int(latest["slip_pool"])))),
            ("Peg pool", _fmt(engine.protocol.collateral.whole(int(latest["peg_pool"])))),
            ("Circulating supply", _fmt(engine.protocol.native.whole(int(latest["circulating_supply"])))),
            ("Demand score", _fmt_ratio(latest["demand_score"])),
            ("Halted", "yes" if latest["halted"] else "no"),
        ]
        _render_kpi_grid(kpis, columns=4)

        st.subheader("Price vs ATH price")
        st.line_chart(df, x="step", y=["price", "ath_price"])

        st.subheader("Collateral pools (smallest units)")
        st.area_chart(df, x="step", y=["slip_pool", "peg_pool"])

        st.subheader("Peg thresholds")
        st.line_chart(df, x="step", y=["peg_pool", "peg_floor_safety", "peg_floor_drain", "peg_target"])

        st.subheader("Trade volume per step (whole collateral)")
        st.line_chart(df, x="step", y=["buy_volume", "sell_volume"])

        st.subheader("Receipts per step")
        st.line_chart(df, x="step", y=["receipts_executed", "receipts_failed"])

    if st.session_state.get("batch_results"):
        st.subheader("Batch Results")
        st.dataframe(pd.DataFrame(st.session_state.batch_results), use_container_width=True)

with tab_leverage:
    if df.empty:
        st.info("No metrics yet. Run some steps.")
    else:
        latest = df.iloc[-1].to_dict()
        kpis = [
            ("K (cap)", _fmt_ratio(latest["leverage_cap"])),
            ("K realized", _fmt_ratio(latest["leverage_realized"])),
            ("K target", _fmt_ratio(latest["leverage_target"])),
            ("Expected selloff", _fmt_ratio(latest["expected_selloff_fraction"])),
            ("Calibrated selloff", _fmt_ratio(latest["calibrated_selloff_fraction"])),
            ("Bear length (actual)", _fmt(latest["bear_length_actual"])),
            ("Bear length (estimate)", _fmt(latest["bear_length_estimate"])),
            ("Bear length (current)", _fmt(latest["bear_length_current"])),
        ]
        _render_kpi_grid(kpis, columns=4)

        st.subheader("Leverage")
        st.line_chart(df, x="step", y=[
            "leverage_cap",
            "leverage_realized",
            "leverage_target",
            "leverage_effective_low",
            "leverage_effective_high",
        ])

        st.subheader("Selloff fractions")
        st.line_chart(df, x="step", y=[
            "expected_selloff_fraction",
            "calibrated_selloff_fraction",
            "observed_selloff_high_watermark_this_cycle",
        ])

        st.subheader("Bear lengths")
        st.line_chart(df, x="step", y=["bear_length_actual", "bear_length_estimate", "bear_length_current"])

        st.subheader("Sentiment")
        st.line_chart(df, x="step", y=["sentiment"])

with tab_bonds:
    summary = engine.protocol.bonds.summary()
    kpis = [
        ("Open positions", _fmt(summary["positions"])),
        ("Matured", _fmt(summary["matured"])),
        ("Epochs closed", _fmt(summary["epochs"])),
        ("Total locked", _fmt(engine.protocol.native.whole(summary["total_locked"]))),
        ("Pending accrual", _fmt(engine.protocol.native.whole(int(summary["pending_accrual"])))),
    ]
    _render_kpi_grid(kpis, columns=5)

    if not df.empty:
        st.subheader("Locked by policy (smallest units)")
        st.area_chart(df, x="step", y=["bond_locked_decay", "bond_locked_gains_only", "bond_locked_reinvest"])
        st.subheader("Bond payouts per step (whole native)")
        st.line_chart(df, x="step", y=["bond_payouts"])

    epoch_df = engine.metrics.epoch_df()
    if not epoch_df.empty:
        st.subheader("Epoch accrual")
        st.line_chart(epoch_df, x="epoch", y=["accrual", "decay_payout", "gains_only_payout"])

    bond_df = engine.metrics.bond_df()
    if not bond_df.empty:
        st.subheader("Positions (latest snapshot)")
        last_step = bond_df["step"].max()
        st.dataframe(bond_df[bond_df["step"] == last_step], use_container_width=True)

    st.subheader("Holdings")
    st.dataframe(pd.DataFrame(engine.holdings()), use_container_width=True)

with tab_events:
    st.subheader("Event Log (latest 300)")
    tail = engine.log.tail(300)
    if not tail:
        st.info("No events yet.")
    else:
        events = pd.DataFrame([e.__dict__ for e in tail])
        events["_order"] = range(len(events))
        events = events.sort_values(["tick", "_order"], ascending=False).drop(columns="_order")
        if "meta" in events.columns:
            events["meta"] = events["meta"].apply(_format_event_meta)
        st.dataframe(events, use_container_width=True)

    st.subheader("Receipts (latest 300)")
    receipts = engine.receipts.tail(300)
    if not receipts:
        st.info("No receipts yet.")
    else:
        st.dataframe(pd.DataFrame([r.to_dict() for r in reversed(receipts)]), use_container_width=True)
