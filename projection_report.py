"""
Tabular and chart views of a ProjectionResult.

Nothing here does projection arithmetic; it only reshapes the ledgers that
run_projection() already produced.
"""
from dataclasses import asdict
from typing import Dict

import matplotlib.pyplot as plt
import pandas as pd

from projection_simulation import ProjectionResult

PRE_COLUMNS = {
    "year_index": "Year",
    "age": "Age",
    "ra_start": "RA Start",
    "tfsa_start": "TFSA Start",
    "total_contribution": "Total Contribution",
    "ra_contribution": "RA Contribution",
    "tfsa_contribution": "TFSA Contribution",
    "ra_tax_saving": "RA Tax Saving Reinvested",
    "ra_end": "RA End",
    "tfsa_end": "TFSA End",
}

POST_COLUMNS = {
    "year_index": "Year",
    "age": "Age",
    "ra_start": "RA Start",
    "tfsa_start": "TFSA Start",
    "net_required": "Net Required",
    "net_delivered": "Net Delivered",
    "gross_withdrawal": "Gross Withdrawal",
    "tax_paid": "Tax Paid",
    "ra_end": "RA End",
    "tfsa_end": "TFSA End",
}

TRAJECTORY_COLUMNS = {
    "age": "Age",
    "ra": "RA",
    "tfsa": "TFSA",
    "total": "Total",
}


def _frame(rows, columns: Dict[str, str]) -> pd.DataFrame:
    df = pd.DataFrame([asdict(r) for r in rows], columns=list(columns.keys()))
    return df.rename(columns=columns)


def ledger_frames(result: ProjectionResult) -> Dict[str, pd.DataFrame]:
    """Fresh DataFrames for the pre, post and trajectory series (safe to mutate)."""
    return {
        "pre": _frame(result.pre_ledger, PRE_COLUMNS),
        "post": _frame(result.post_ledger, POST_COLUMNS),
        "trajectory": _frame(result.capital_trajectory, TRAJECTORY_COLUMNS),
    }


def ledger_csv(result: ProjectionResult, which: str) -> bytes:
    return ledger_frames(result)[which].to_csv(index=False).encode("utf-8")


def ledger_totals(result: ProjectionResult) -> Dict[str, Dict[str, float]]:
    pre = result.pre_ledger
    post = result.post_ledger
    return {
        "pre": {
            "total_contribution": sum(r.total_contribution for r in pre),
            "ra_contribution": sum(r.ra_contribution for r in pre),
            "tfsa_contribution": sum(r.tfsa_contribution for r in pre),
            "ra_tax_saving": sum(r.ra_tax_saving for r in pre),
        },
        "post": {
            "net_required": sum(r.net_required for r in post),
            "net_delivered": sum(r.net_delivered for r in post),
            "gross_withdrawal": sum(r.gross_withdrawal for r in post),
            "tax_paid": sum(r.tax_paid for r in post),
        },
    }


# ======================
# Charts
# ======================

def capital_trajectory_figure(result: ProjectionResult):
    df = ledger_frames(result)["trajectory"]
    fig, ax = plt.subplots()
    ax.plot(df["Age"], df["RA"], label="RA")
    ax.plot(df["Age"], df["TFSA"], label="TFSA")
    ax.plot(df["Age"], df["Total"], label="Total")

    ax.axvline(result.retirement_age, linestyle="--", linewidth=1, label="Retirement")
    if not result.is_feasible:
        ax.axvline(result.exhaustion_age, linestyle=":", linewidth=1, color="red", label="Capital exhausted")

    ax.set_ylabel("Capital (nominal)")
    ax.set_xlabel("Age")
    ax.legend(loc="upper center", bbox_to_anchor=(0.5, -0.15), ncol=3)
    fig.tight_layout()
    return fig


def retirement_income_figure(result: ProjectionResult):
    df = ledger_frames(result)["post"]
    fig, ax = plt.subplots()

    # LEFT axis = net income
    ax.plot(df["Age"], df["Net Required"], linestyle="--", label="Net required")
    ax.plot(df["Age"], df["Net Delivered"], label="Net delivered")
    ax.set_ylabel("Net income / year (nominal)")
    ax.set_xlabel("Age")

    # RIGHT axis = tax
    ax_tax = ax.twinx()
    ax_tax.bar(df["Age"], df["Tax Paid"], alpha=0.25, label="Tax paid")
    ax_tax.set_ylabel("Tax / year (nominal)")

    h1, l1 = ax.get_legend_handles_labels()
    h2, l2 = ax_tax.get_legend_handles_labels()
    ax.legend(h1 + h2, l1 + l2, loc="upper center", bbox_to_anchor=(0.5, -0.18), ncol=3, frameon=False)

    fig.tight_layout()
    return fig
