import json
import copy
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Tuple, Union

logger = logging.getLogger(__name__)


# ==========================================================
# DEFAULTS
# ==========================================================
DEFAULTS = {
    # ======================
    # Timeline
    # ======================
    "current_age": 30,
    "retire_age": 65,
    "life_expectancy": 100,

    # ======================
    # Pools
    # ======================
    "initial_capital": 0.0,            # RA (tax-deferred) balance today
    "initial_tfsa_balance": 0.0,       # TFSA balance today
    "tfsa_contrib_to_date": 0.0,       # lifetime TFSA contributions already made
    "tfsa_monthly": 3000.0,            # desired TFSA contribution per month

    # ======================
    # Goal
    # ======================
    "target_net_today": 45000.0,       # net monthly income, today's money

    # ======================
    # Market (percent)
    # ======================
    "pre_return_pct": 14.0,
    "post_return_pct": 10.0,
    "inflation_pct": 5.0,
    "annual_increase_pct": 0.0,        # contribution escalation per year

    # ======================
    # Salary
    # ======================
    "gross_income": 720000.0,
    "income_growth_mode": "INFLATION",  # INFLATION | CUSTOM | NONE
    "income_growth_rate_pct": 0.0,

    # ======================
    # Strategy / tax
    # ======================
    "deplete_order": "TFSA_FIRST",     # TFSA_FIRST | RA_FIRST
    "tax_mode": "PROGRESSIVE",         # PROGRESSIVE | FLAT
    "flat_tax_rate_pct": 25.0,
    "reinvest_ra_tax_saving": True,
    "tax_realism": False,              # index brackets + rebates with inflation

    # ----------------------
    # 2026 brackets: [upper_limit, base_tax, rate]; null = no upper limit
    # ----------------------
    "tax_brackets_json": (
        "[[237100, 0, 0.18], [370500, 42678, 0.26], [512800, 77362, 0.31], "
        "[673000, 121475, 0.36], [857900, 179147, 0.39], [1817000, 251258, 0.41], "
        "[null, 644489, 0.45]]"
    ),
    "rebate_primary": 17235.0,
    "rebate_secondary": 9444.0,        # age >= 65
    "rebate_tertiary": 3145.0,         # age >= 75

    # ======================
    # Statutory limits
    # ======================
    "tfsa_lifetime_limit": 500000.0,
    "tfsa_monthly_cap": 3000.0,        # 36 000 per year
    "ra_deduction_fraction": 0.275,
    "ra_deduction_ceiling": 350000.0,

    # ======================
    # Solver knobs
    # ======================
    "solver_initial_upper": 50000.0,
    "solver_max_doublings": 10,
    "solver_iterations": 30,
    "gross_up_iterations": 40,
    "max_marginal_rate": 0.45,

    # Debug / Dev
    "enable_debug_logging": False,
}

SCENARIO_PRESETS = {
    "base": {"pre_return_pct": 14.0, "post_return_pct": 10.0, "inflation_pct": 5.0},
    "conservative": {"pre_return_pct": 10.0, "post_return_pct": 7.0, "inflation_pct": 6.0},
    "aggressive": {"pre_return_pct": 18.0, "post_return_pct": 12.0, "inflation_pct": 5.0},
}

TAX_MODES = ("PROGRESSIVE", "FLAT")
TAX_MODE_ALIASES = {"SARS": "PROGRESSIVE"}
DEPLETE_ORDERS = ("TFSA_FIRST", "RA_FIRST")
INCOME_GROWTH_MODES = ("INFLATION", "CUSTOM", "NONE")

# Ceilings for raw input; they keep compounding factors finite and horizons short.
MAX_AGE = 120
MAX_ANNUAL_RATE = 1.0


# ==========================================================
# 1) Input coercion
# ==========================================================

def number_or(value: Any, fallback: float) -> float:
    """
    Parse free text into a finite float.
    Thousands separators ("," and spaces) are stripped; anything that does not
    parse, or parses to NaN/inf, returns the fallback.
    """
    if value is None or isinstance(value, bool):
        return float(fallback)
    try:
        n = float(str(value).replace(",", "").replace(" ", "").strip())
    except ValueError:
        return float(fallback)
    if not math.isfinite(n):
        return float(fallback)
    return n


def bool_or(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("true", "1", "yes", "on"):
            return True
        if s in ("false", "0", "no", "off"):
            return False
    return bool(fallback)


def choice_or(value: Any, choices: Tuple[str, ...], fallback: str, aliases: Optional[Dict[str, str]] = None) -> str:
    s = str(value).strip().upper() if value is not None else ""
    if aliases and s in aliases:
        s = aliases[s]
    return s if s in choices else fallback


# ==========================================================
# 2) Tax tables (data, not code)
# ==========================================================

@dataclass(frozen=True)
class TaxBracket:
    upper_limit: float      # inclusive; inf for the top bracket
    base_tax: float         # tax payable at the previous bracket's upper limit
    rate: float


@dataclass(frozen=True)
class Rebates:
    primary: float
    secondary: float        # age >= 65
    tertiary: float         # age >= 75

    def total_for_age(self, age: int, factor: float = 1.0) -> float:
        rebate = self.primary * factor
        if age >= 65:
            rebate += self.secondary * factor
        if age >= 75:
            rebate += self.tertiary * factor
        return rebate


def _normalize_brackets_input(brackets: Any) -> str:
    """
    Convert brackets input into a deterministic JSON string so it can be cached safely.
    Accepts a JSON string, a list of [upper_limit, base_tax, rate] rows, or None.
    """
    if brackets is None:
        return "[]"
    if isinstance(brackets, (list, tuple)):
        try:
            rows = []
            for row in brackets:
                if isinstance(row, TaxBracket):
                    row = (row.upper_limit, row.base_tax, row.rate)
                top, base, rate = row
                rows.append([None if top is None or float(top) == math.inf else float(top), float(base), float(rate)])
            return json.dumps(rows, separators=(",", ":"))
        except (TypeError, ValueError):
            return "[]"
    s = str(brackets).strip()
    return s if s else "[]"


@lru_cache(maxsize=64)
def _parse_brackets_cached(brackets_key: str) -> Tuple[TaxBracket, ...]:
    """
    brackets_key is always a JSON string produced by _normalize_brackets_input().
    The top bracket is forced open-ended so the table covers [0, inf).
    """
    try:
        data = json.loads(brackets_key)
        rows = []
        for top, base, rate in data:
            limit = math.inf if top is None else float(top)
            rows.append((limit, float(base), float(rate)))
        if not rows:
            raise ValueError("empty bracket table")
        for _, _, rate in rows:
            if not 0.0 <= rate < 1.0:
                raise ValueError(f"marginal rate {rate} outside [0, 1)")
    except (TypeError, ValueError) as ex:
        logger.warning(f"Unusable tax bracket table ({ex}); falling back to built-in 2026 table.")
        if brackets_key == DEFAULTS["tax_brackets_json"]:
            return tuple()
        return _parse_brackets_cached(DEFAULTS["tax_brackets_json"])

    rows.sort(key=lambda r: r[0])
    last_base, last_rate = rows[-1][1], rows[-1][2]
    rows[-1] = (math.inf, last_base, last_rate)
    brackets = tuple(TaxBracket(upper_limit=t, base_tax=b, rate=r) for t, b, r in rows)

    if not bracket_table_is_consistent(brackets):
        logger.warning("Tax bracket bases do not match cumulative tax of the previous bracket; using table as supplied.")
    return brackets


def parse_brackets(brackets_input: Any) -> Tuple[TaxBracket, ...]:
    """Public helper used everywhere else."""
    return _parse_brackets_cached(_normalize_brackets_input(brackets_input))


def bracket_table_is_consistent(brackets: Tuple[TaxBracket, ...], tolerance: float = 1.0) -> bool:
    """Each bracket's base must equal the tax payable at the previous upper limit."""
    prev_top = 0.0
    expected_base = 0.0
    for i, b in enumerate(brackets):
        if i > 0 and abs(b.base_tax - expected_base) > tolerance:
            return False
        if b.upper_limit == math.inf:
            return i == len(brackets) - 1
        expected_base = b.base_tax + (b.upper_limit - prev_top) * b.rate
        prev_top = b.upper_limit
    return True


# ==========================================================
# 3) Tax evaluators
# ==========================================================

def indexing_factor(indexing_years: float, inflation_rate: float, apply_indexing: bool) -> float:
    """Bracket-creep multiplier; 1.0 when indexing is off or has nothing to do."""
    if not apply_indexing or indexing_years <= 0 or inflation_rate <= 0:
        return 1.0
    return (1.0 + inflation_rate) ** indexing_years


def compute_tax(
    taxable_income: float,
    age: int,
    brackets: Tuple[TaxBracket, ...],
    rebates: Rebates,
    indexing_years: float = 0,
    inflation_rate: float = 0.0,
    apply_indexing: bool = False,
) -> float:
    """
    Progressive tax with age rebates.
    Brackets are scanned in ascending order; an income exactly on a limit belongs
    to the lower bracket. Limits, bases and rebates share one indexing factor.
    """
    if taxable_income <= 0:
        return 0.0

    factor = indexing_factor(indexing_years, inflation_rate, apply_indexing)

    tax = 0.0
    prev_limit = 0.0
    for i, bracket in enumerate(brackets):
        limit = bracket.upper_limit * factor
        if taxable_income <= limit:
            if i == 0:
                tax = taxable_income * bracket.rate
            else:
                tax = bracket.base_tax * factor + (taxable_income - prev_limit) * bracket.rate
            break
        prev_limit = limit

    return max(0.0, tax - rebates.total_for_age(age, factor))


def flat_tax(taxable_income: float, rate: float) -> float:
    if taxable_income <= 0:
        return 0.0
    return max(0.0, taxable_income * rate)


@dataclass(frozen=True)
class ProgressiveTaxRegime:
    brackets: Tuple[TaxBracket, ...]
    rebates: Rebates

    mode = "PROGRESSIVE"

    @property
    def top_rate(self) -> float:
        return max((b.rate for b in self.brackets), default=0.0)

    def tax(
        self,
        taxable_income: float,
        age: int,
        indexing_years: float = 0,
        inflation_rate: float = 0.0,
        apply_indexing: bool = False,
    ) -> float:
        return compute_tax(
            taxable_income, age, self.brackets, self.rebates, indexing_years, inflation_rate, apply_indexing
        )


@dataclass(frozen=True)
class FlatTaxRegime:
    rate: float

    mode = "FLAT"

    @property
    def top_rate(self) -> float:
        return self.rate

    def tax(
        self,
        taxable_income: float,
        age: int,
        indexing_years: float = 0,
        inflation_rate: float = 0.0,
        apply_indexing: bool = False,
    ) -> float:
        # No rebates and no bracket creep under a flat rate.
        return flat_tax(taxable_income, self.rate)


TaxRegime = Union[ProgressiveTaxRegime, FlatTaxRegime]


def progressive_regime_from_settings(settings: dict) -> ProgressiveTaxRegime:
    rebates = Rebates(
        primary=max(0.0, number_or(settings.get("rebate_primary"), DEFAULTS["rebate_primary"])),
        secondary=max(0.0, number_or(settings.get("rebate_secondary"), DEFAULTS["rebate_secondary"])),
        tertiary=max(0.0, number_or(settings.get("rebate_tertiary"), DEFAULTS["rebate_tertiary"])),
    )
    return ProgressiveTaxRegime(brackets=parse_brackets(settings.get("tax_brackets_json")), rebates=rebates)


# ==========================================================
# 4) Net-to-gross inversion
# ==========================================================

@dataclass(frozen=True)
class GrossUpResult:
    gross: float
    tax: float
    net: float


def gross_up(
    net_target: float,
    tax_fn: Callable[[float], float],
    iterations: int = 40,
    max_marginal_rate: float = 0.45,
) -> GrossUpResult:
    """
    Find the gross amount whose after-tax value meets net_target.

    Bisection over [net_target, net_target / (1 - max_marginal_rate)] for a fixed
    number of halvings, so output is reproducible to the bit. The upper end of the
    bracket is kept, which means the realised net is never below the target.
    """
    if net_target <= 0:
        return GrossUpResult(gross=0.0, tax=0.0, net=0.0)

    low = net_target
    high = net_target / (1.0 - max_marginal_rate)

    for _ in range(iterations):
        mid = (low + high) / 2.0
        net = mid - tax_fn(mid)
        if net >= net_target:
            high = mid
        else:
            low = mid

    gross = high
    tax = tax_fn(gross)
    return GrossUpResult(gross=gross, tax=tax, net=gross - tax)


# ==========================================================
# 5) Settings persistence / presets
# ==========================================================

def load_settings(path: str) -> dict:
    """Read settings JSON over DEFAULTS. Missing or unreadable files give DEFAULTS."""
    merged = copy.deepcopy(DEFAULTS)
    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
    except FileNotFoundError:
        return merged
    except (OSError, ValueError) as ex:
        logger.warning(f"Could not read settings from {path}: {ex}")
        return merged
    if isinstance(loaded, dict):
        merged.update({k: v for k, v in loaded.items() if k in DEFAULTS})
    return merged


def save_settings(settings: dict, path: str) -> bool:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(settings, f, indent=2)
    except (OSError, TypeError, ValueError) as ex:
        logger.warning(f"Could not save settings to {path}: {ex}")
        return False
    return True


def apply_preset(settings: dict, name: str) -> dict:
    """Return a copy of settings with a scenario preset's market assumptions applied."""
    out = dict(settings)
    out.update(SCENARIO_PRESETS[name])
    return out


UPLOAD_MARKER_KEY = "___applied_upload_id"


def claim_upload(state, upload_id: str) -> bool:
    """
    True the first time a given uploaded file is seen. Streamlit keeps the file in
    the uploader across reruns, so later calls with the same id return False.
    """
    if state.get(UPLOAD_MARKER_KEY) == upload_id:
        return False
    state[UPLOAD_MARKER_KEY] = upload_id
    return True
