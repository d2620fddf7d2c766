import json

import streamlit as st

from projection_helpers import (
    DEFAULTS,
    MAX_AGE,
    SCENARIO_PRESETS,
    apply_preset,
    claim_upload,
    load_settings,
    save_settings,
)
from projection_report import (
    capital_trajectory_figure,
    ledger_csv,
    ledger_frames,
    ledger_totals,
    retirement_income_figure,
)
from projection_simulation import run_projection

st.set_page_config(page_title="RA Maximisation - Retirement Funding Plan", layout="wide")

# ======================
# Settings persistence
# ======================
SETTINGS_FILE = "projection_settings.json"


def collect_settings_from_session() -> dict:
    return {k: st.session_state.get(k, DEFAULTS[k]) for k in DEFAULTS.keys()}


def on_any_change():
    save_settings(collect_settings_from_session(), SETTINGS_FILE)


def set_settings(settings: dict):
    for k, v in settings.items():
        if k in DEFAULTS:
            st.session_state[k] = v
    save_settings(collect_settings_from_session(), SETTINGS_FILE)


def fmt_money(value: float) -> str:
    return "R " + f"{value:,.2f}".replace(",", " ")


def fmt_pct(value: float) -> str:
    return f"{value * 100:.2f}%"


# ----------------------
# Initialize session_state ONCE
# ----------------------
if "___initialized" not in st.session_state:
    for k, v in load_settings(SETTINGS_FILE).items():
        st.session_state[k] = v
    st.session_state["___initialized"] = True

st.title("RA Maximisation - Retirement Funding Plan")
st.caption(
    "Solves for the monthly contribution that sustains your target net income (today's money) "
    "until life expectancy. RA withdrawals are taxed; TFSA withdrawals are tax-free."
)

# ======================
# Inputs
# ======================
with st.sidebar:
    st.header("Settings Import/Export")
    st.download_button(
        label="Download Current Settings (JSON)",
        data=json.dumps(collect_settings_from_session(), indent=2),
        file_name=SETTINGS_FILE,
        mime="application/json",
    )
    uploaded_file = st.file_uploader("Upload Settings (JSON)", type=["json"])
    if uploaded_file is not None and claim_upload(st.session_state, uploaded_file.file_id):
        try:
            new_settings = json.load(uploaded_file)
        except ValueError as e:
            st.error(f"Error loading file: {e}")
        else:
            if isinstance(new_settings, dict):
                set_settings(new_settings)
                st.success("Settings uploaded!")
            else:
                st.error("Invalid settings file format.")

    st.divider()
    st.header("Scenario presets")
    p1, p2, p3 = st.columns(3)
    for col, name in zip((p1, p2, p3), SCENARIO_PRESETS.keys()):
        col.button(
            name.capitalize(),
            on_click=lambda n=name: set_settings(apply_preset(collect_settings_from_session(), n)),
        )

    st.header("Timeline")
    st.number_input("Current age", min_value=0, max_value=MAX_AGE, key="current_age", on_change=on_any_change)
    st.number_input("Retirement age", min_value=0, max_value=MAX_AGE, key="retire_age", on_change=on_any_change)
    st.number_input("Life expectancy", min_value=0, max_value=MAX_AGE, key="life_expectancy", on_change=on_any_change)

    st.header("Capital today")
    st.number_input("RA balance", min_value=0.0, step=1000.0, key="initial_capital", on_change=on_any_change)
    st.number_input("TFSA balance", min_value=0.0, step=1000.0, key="initial_tfsa_balance", on_change=on_any_change)
    st.number_input("TFSA contributions to date", min_value=0.0, step=1000.0, key="tfsa_contrib_to_date", on_change=on_any_change)
    st.number_input("TFSA monthly contribution", min_value=0.0, step=100.0, key="tfsa_monthly", on_change=on_any_change)

    st.header("Goal + market")
    st.number_input("Target net monthly income (today's money)", min_value=0.0, step=1000.0, key="target_net_today", on_change=on_any_change)
    st.number_input("Pre-retirement return %", step=0.25, key="pre_return_pct", on_change=on_any_change)
    st.number_input("Post-retirement return %", step=0.25, key="post_return_pct", on_change=on_any_change)
    st.number_input("Inflation %", min_value=0.0, step=0.25, key="inflation_pct", on_change=on_any_change)
    st.number_input("Annual contribution increase %", min_value=0.0, step=0.25, key="annual_increase_pct", on_change=on_any_change)

    st.header("Salary")
    st.number_input("Gross annual income", min_value=0.0, step=10000.0, key="gross_income", on_change=on_any_change)
    st.selectbox("Income growth", ["INFLATION", "CUSTOM", "NONE"], key="income_growth_mode", on_change=on_any_change)
    if st.session_state.get("income_growth_mode") == "CUSTOM":
        st.number_input("Income growth %", min_value=0.0, step=0.25, key="income_growth_rate_pct", on_change=on_any_change)

    st.header("Tax + drawdown")
    st.selectbox("Depletion order", ["TFSA_FIRST", "RA_FIRST"], key="deplete_order", on_change=on_any_change)
    st.selectbox("Tax mode", ["PROGRESSIVE", "FLAT"], key="tax_mode", on_change=on_any_change)
    if st.session_state.get("tax_mode") == "FLAT":
        st.number_input("Flat tax rate on withdrawals %", min_value=0.0, max_value=99.0, step=1.0, key="flat_tax_rate_pct", on_change=on_any_change)
    st.checkbox("Reinvest RA tax saving", key="reinvest_ra_tax_saving", on_change=on_any_change)
    st.checkbox("Tax realism (index brackets with inflation)", key="tax_realism", on_change=on_any_change)

    with st.expander("Tax table (advanced)"):
        st.caption("JSON list: [[upper_limit, base_tax, rate], ...]. Use null for the top limit.")
        st.text_area("Brackets JSON", key="tax_brackets_json", height=170, on_change=on_any_change)
        st.number_input("Primary rebate", step=10.0, key="rebate_primary", on_change=on_any_change)
        st.number_input("Secondary rebate (65+)", step=10.0, key="rebate_secondary", on_change=on_any_change)
        st.number_input("Tertiary rebate (75+)", step=10.0, key="rebate_tertiary", on_change=on_any_change)

    st.button("Reset to defaults", on_click=set_settings, args=(dict(DEFAULTS),))

# ======================
# Projection
# ======================
settings_now = collect_settings_from_session()
out = run_projection(settings_now)

if out.ages_adjusted:
    st.warning("Ages should satisfy current < retirement < life expectancy; the projection used adjusted ages.")
if not out.is_feasible:
    st.error(
        f"Target cannot be sustained: capital runs out at age {out.exhaustion_age} "
        f"(life expectancy {out.life_expectancy}) even at the largest contribution tried."
    )

c1, c2, c3, c4 = st.columns(4)
c1.metric("Required monthly contribution", fmt_money(out.required_monthly_contribution))
c2.metric("Capital at retirement", fmt_money(out.total_capital_at_ret))
c3.metric("Capital at retirement (today's money)", fmt_money(out.present_value_required_capital))
c4.metric("Target net monthly at retirement", fmt_money(out.target_net_monthly_at_ret))

c5, c6, c7, c8 = st.columns(4)
c5.metric("Year-1 drawdown", fmt_pct(out.year1_drawdown_pct))
c6.metric("Year-1 effective tax rate", fmt_pct(out.year1_effective_tax_rate))
c7.metric("Effective tax rate now", fmt_pct(out.effective_tax_rate_now))
c8.metric("RA deduction usage", fmt_pct(out.ra_usage_pct))

st.caption(
    f"RA {fmt_money(out.taxable_capital_at_ret)} | TFSA {fmt_money(out.tfsa_capital_at_ret)} | "
    f"Tax saving on max RA today {fmt_money(out.tax_saving)} (max RA {fmt_money(out.max_ra_contrib)})"
)

left, right = st.columns(2)
with left:
    st.write("**Capital trajectory**")
    st.pyplot(capital_trajectory_figure(out))
with right:
    st.write("**Retirement income vs need, and tax paid**")
    st.pyplot(retirement_income_figure(out))

frames = ledger_frames(out)
totals = ledger_totals(out)
tab_capital, tab_pre, tab_post = st.tabs(["Capital", "Pre-retirement", "Post-retirement"])

with tab_capital:
    st.dataframe(frames["trajectory"], use_container_width=True)
    st.download_button("Download CSV", data=ledger_csv(out, "trajectory"), file_name="capital_trajectory.csv", mime="text/csv")

with tab_pre:
    st.dataframe(frames["pre"], use_container_width=True)
    st.caption(
        f"Totals: contributions {fmt_money(totals['pre']['total_contribution'])}, "
        f"RA {fmt_money(totals['pre']['ra_contribution'])}, TFSA {fmt_money(totals['pre']['tfsa_contribution'])}, "
        f"tax saving {fmt_money(totals['pre']['ra_tax_saving'])}"
    )
    st.download_button("Download CSV", data=ledger_csv(out, "pre"), file_name="pre_retirement.csv", mime="text/csv")

with tab_post:
    st.dataframe(frames["post"], use_container_width=True)
    st.caption(
        f"Totals: net required {fmt_money(totals['post']['net_required'])}, "
        f"net delivered {fmt_money(totals['post']['net_delivered'])}, "
        f"gross {fmt_money(totals['post']['gross_withdrawal'])}, tax {fmt_money(totals['post']['tax_paid'])}"
    )
    st.download_button("Download CSV", data=ledger_csv(out, "post"), file_name="post_retirement.csv", mime="text/csv")
