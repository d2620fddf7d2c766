import copy
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from projection_helpers import (
    DEFAULTS,
    DEPLETE_ORDERS,
    INCOME_GROWTH_MODES,
    MAX_AGE,
    MAX_ANNUAL_RATE,
    TAX_MODES,
    TAX_MODE_ALIASES,
    FlatTaxRegime,
    GrossUpResult,
    ProgressiveTaxRegime,
    TaxRegime,
    bool_or,
    choice_or,
    gross_up,
    number_or,
    progressive_regime_from_settings,
)


# ==========================================================
# Records
# ==========================================================

@dataclass(frozen=True)
class ProjectionInputs:
    current_age: int
    retire_age: int
    life_expectancy: int

    initial_capital: float
    initial_tfsa_balance: float
    tfsa_contrib_to_date: float
    tfsa_monthly: float
    target_net_today: float

    # decimals, not percent
    pre_return: float
    post_return: float
    inflation: float
    annual_increase: float

    gross_income: float
    income_growth_mode: str
    income_growth_rate: float

    deplete_order: str
    tax_mode: str
    salary_regime: ProgressiveTaxRegime
    withdrawal_regime: TaxRegime
    reinvest_ra_tax_saving: bool
    tax_realism: bool

    tfsa_lifetime_limit: float
    ra_deduction_fraction: float
    ra_deduction_ceiling: float

    solver_initial_upper: float
    solver_max_doublings: int
    solver_iterations: int
    gross_up_iterations: int
    max_marginal_rate: float

    ages_adjusted: bool = False
    enable_debug_logging: bool = False

    @property
    def years_to_retire(self) -> int:
        return max(0, self.retire_age - self.current_age)

    @property
    def years_in_retirement(self) -> int:
        return max(0, self.life_expectancy - self.retire_age)

    @property
    def target_net_monthly_at_ret(self) -> float:
        return self.target_net_today * (1.0 + self.inflation) ** self.years_to_retire


@dataclass(frozen=True)
class PreRetirementYear:
    year_index: int
    age: int
    ra_start: float
    tfsa_start: float
    ra_end: float
    tfsa_end: float
    total_contribution: float
    ra_contribution: float
    tfsa_contribution: float
    ra_tax_saving: float


@dataclass(frozen=True)
class PostRetirementYear:
    year_index: int
    age: int
    ra_start: float
    tfsa_start: float
    ra_end: float
    tfsa_end: float
    net_required: float
    net_delivered: float
    gross_withdrawal: float
    tax_paid: float


@dataclass(frozen=True)
class CapitalPoint:
    age: int
    ra: float
    tfsa: float
    total: float


@dataclass(frozen=True)
class AccumulationResult:
    ra: float
    tfsa: float
    ledger: Tuple[PreRetirementYear, ...]


@dataclass(frozen=True)
class DecumulationResult:
    exhaustion_age: int
    year1_gross_withdrawal: float
    year1_net_withdrawal: float
    year1_tax: float
    ledger: Tuple[PostRetirementYear, ...]


@dataclass(frozen=True)
class ContributionTrial:
    contribution: float
    accumulation: AccumulationResult
    decumulation: DecumulationResult

    @property
    def exhaustion_age(self) -> int:
        return self.decumulation.exhaustion_age


@dataclass(frozen=True)
class ProjectionResult:
    # main outputs
    required_monthly_contribution: float
    taxable_capital_at_ret: float
    tfsa_capital_at_ret: float
    total_capital_at_ret: float
    target_net_monthly_at_ret: float
    present_value_required_capital: float
    exhaustion_age: int
    is_feasible: bool

    # year-1 headline
    year1_gross_withdrawal: float
    year1_net_withdrawal: float
    year1_tax: float
    year1_drawdown_pct: float
    year1_effective_tax_rate: float

    # salary-side tax
    effective_tax_rate_now: float
    max_ra_contrib: float
    tax_saving: float
    ra_usage_pct: float

    # lifetime totals
    total_contributions_at_retirement: float
    total_tax_savings_at_retirement: float
    lifetime_net_delivered: float
    lifetime_gross_withdrawn: float
    lifetime_tax_paid: float

    # series
    pre_ledger: Tuple[PreRetirementYear, ...]
    post_ledger: Tuple[PostRetirementYear, ...]
    capital_trajectory: Tuple[CapitalPoint, ...]

    # numeric meta for the UI
    retirement_age: int
    life_expectancy: int
    ages_adjusted: bool


# ==========================================================
# Settings -> inputs
# ==========================================================

def merge_settings(settings_input: Optional[Dict]) -> Dict:
    s = copy.deepcopy(DEFAULTS)
    if isinstance(settings_input, dict):
        s.update({k: v for k, v in settings_input.items() if k in DEFAULTS})
    return s


def normalize_inputs(settings_input: Optional[Dict]) -> ProjectionInputs:
    """
    Coerce a raw settings dict (possibly straight from text inputs) into clean,
    clamped ProjectionInputs. Never raises for bad values; falls back to DEFAULTS.
    """
    s = merge_settings(settings_input)

    def num(key: str) -> float:
        return number_or(s.get(key), DEFAULTS[key])

    def pct(key: str) -> float:
        return num(key) / 100.0

    def rate(key: str, floor: float) -> float:
        return min(MAX_ANNUAL_RATE, max(floor, pct(key)))

    raw_ages = [int(max(0.0, num(k))) for k in ("current_age", "retire_age", "life_expectancy")]
    cur_age, ret_age, life_exp = (min(MAX_AGE, a) for a in raw_ages)

    ages_adjusted = any(a > MAX_AGE for a in raw_ages)
    if ret_age < cur_age:
        ret_age = cur_age
        ages_adjusted = True
    if life_exp < ret_age:
        life_exp = ret_age
        ages_adjusted = True
    if ret_age == cur_age or life_exp == ret_age:
        ages_adjusted = True

    tfsa_cap = max(0.0, num("tfsa_monthly_cap"))
    tax_mode = choice_or(s.get("tax_mode"), TAX_MODES, DEFAULTS["tax_mode"], TAX_MODE_ALIASES)

    salary_regime = progressive_regime_from_settings(s)
    if tax_mode == "FLAT":
        withdrawal_regime = FlatTaxRegime(rate=min(0.99, max(0.0, pct("flat_tax_rate_pct"))))
    else:
        withdrawal_regime = salary_regime

    max_marginal = max(num("max_marginal_rate"), withdrawal_regime.top_rate)

    return ProjectionInputs(
        current_age=cur_age,
        retire_age=ret_age,
        life_expectancy=life_exp,
        initial_capital=max(0.0, num("initial_capital")),
        initial_tfsa_balance=max(0.0, num("initial_tfsa_balance")),
        tfsa_contrib_to_date=max(0.0, num("tfsa_contrib_to_date")),
        tfsa_monthly=min(tfsa_cap, max(0.0, num("tfsa_monthly"))),
        target_net_today=max(0.0, num("target_net_today")),
        pre_return=rate("pre_return_pct", -0.99),
        post_return=rate("post_return_pct", -0.99),
        inflation=rate("inflation_pct", 0.0),
        annual_increase=rate("annual_increase_pct", 0.0),
        gross_income=max(0.0, num("gross_income")),
        income_growth_mode=choice_or(s.get("income_growth_mode"), INCOME_GROWTH_MODES, DEFAULTS["income_growth_mode"]),
        income_growth_rate=rate("income_growth_rate_pct", 0.0),
        deplete_order=choice_or(s.get("deplete_order"), DEPLETE_ORDERS, DEFAULTS["deplete_order"]),
        tax_mode=tax_mode,
        salary_regime=salary_regime,
        withdrawal_regime=withdrawal_regime,
        reinvest_ra_tax_saving=bool_or(s.get("reinvest_ra_tax_saving"), DEFAULTS["reinvest_ra_tax_saving"]),
        tax_realism=bool_or(s.get("tax_realism"), DEFAULTS["tax_realism"]),
        tfsa_lifetime_limit=max(0.0, num("tfsa_lifetime_limit")),
        ra_deduction_fraction=max(0.0, num("ra_deduction_fraction")),
        ra_deduction_ceiling=max(0.0, num("ra_deduction_ceiling")),
        solver_initial_upper=num("solver_initial_upper") if num("solver_initial_upper") > 0 else DEFAULTS["solver_initial_upper"],
        solver_max_doublings=int(max(0.0, num("solver_max_doublings"))),
        solver_iterations=int(max(0.0, num("solver_iterations"))),
        gross_up_iterations=int(max(1.0, num("gross_up_iterations"))),
        max_marginal_rate=min(0.99, max(0.0, max_marginal)),
        ages_adjusted=ages_adjusted,
        enable_debug_logging=bool_or(s.get("enable_debug_logging"), False),
    )


def split_capped_contribution(desired: float, contributed_to_date: float, lifetime_limit: float) -> Tuple[float, float]:
    """
    Split one month's capped-pool contribution into (into_capped, overflow).
    Overflow is whatever the lifetime limit refuses; it goes to the uncapped pool.
    """
    if contributed_to_date < lifetime_limit:
        remaining_cap = lifetime_limit - contributed_to_date
        into_capped = min(desired, remaining_cap)
        overflow = max(0.0, desired - into_capped)
    else:
        into_capped = 0.0
        overflow = desired
    return into_capped, overflow


# ==========================================================
# Simulator
# ==========================================================

class ProjectionSimulator:
    def __init__(self, inputs: ProjectionInputs):
        self.p = inputs

        self.logger = logging.getLogger("ProjectionSimulator")
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(levelname)s: %(message)s")
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

        self.logger.setLevel(logging.INFO)
        if self.p.enable_debug_logging:
            self.logger.setLevel(logging.DEBUG)

    # -------------------------
    # Helpers
    # -------------------------
    def _salary_growth_rate(self) -> float:
        mode = self.p.income_growth_mode
        if mode == "INFLATION":
            return self.p.inflation
        if mode == "CUSTOM":
            return self.p.income_growth_rate
        return 0.0

    def _salary_tax(self, income: float, age: int, years_from_now: int) -> float:
        return self.p.salary_regime.tax(income, age, years_from_now, self.p.inflation, self.p.tax_realism)

    def _withdrawal_tax(self, gross: float, age: int, years_from_now: int) -> float:
        return self.p.withdrawal_regime.tax(gross, age, years_from_now, self.p.inflation, self.p.tax_realism)

    def _draw_taxable(self, net_needed: float, balance: float, age: int, years_from_now: int) -> GrossUpResult:
        """Gross up net_needed; if the pool cannot cover the gross, drain it and tax what there is."""
        draw = gross_up(
            net_needed,
            lambda g: self._withdrawal_tax(g, age, years_from_now),
            iterations=self.p.gross_up_iterations,
            max_marginal_rate=self.p.max_marginal_rate,
        )
        if draw.gross <= balance:
            return draw
        tax_all = self._withdrawal_tax(balance, age, years_from_now)
        return GrossUpResult(gross=balance, tax=tax_all, net=balance - tax_all)

    # -------------------------
    # Phase 1: accumulation (monthly)
    # -------------------------
    def accumulate(self, contribution_monthly: float) -> AccumulationResult:
        p = self.p
        monthly_rate = (1.0 + p.pre_return) ** (1.0 / 12.0) - 1.0
        salary_growth = self._salary_growth_rate()

        ra = p.initial_capital
        tfsa = p.initial_tfsa_balance
        tfsa_contrib_total = p.tfsa_contrib_to_date

        ledger: List[PreRetirementYear] = []

        for y in range(p.years_to_retire):
            age = p.current_age + y
            year_contribution_monthly = contribution_monthly * (1.0 + p.annual_increase) ** y
            tfsa_desired_monthly = p.tfsa_monthly
            ra_planned_monthly = max(0.0, year_contribution_monthly - tfsa_desired_monthly)

            gross_income_year = p.gross_income * (1.0 + salary_growth) ** y
            ra_deduction_limit = min(p.ra_deduction_fraction * gross_income_year, p.ra_deduction_ceiling)

            ra_start = ra
            tfsa_start = tfsa
            ra_annual = 0.0
            tfsa_annual = 0.0

            for _m in range(12):
                tfsa_this_month, tfsa_overflow = split_capped_contribution(
                    tfsa_desired_monthly, tfsa_contrib_total, p.tfsa_lifetime_limit
                )
                tfsa_contrib_total += tfsa_this_month

                ra_this_month = ra_planned_monthly + tfsa_overflow
                ra += ra_this_month
                tfsa += tfsa_this_month
                ra_annual += ra_this_month
                tfsa_annual += tfsa_this_month

                ra *= 1.0 + monthly_rate
                tfsa *= 1.0 + monthly_rate

            # Year-end lump sum: tax refunded on the deductible RA contribution.
            ra_tax_saving = 0.0
            if p.reinvest_ra_tax_saving and gross_income_year > 0 and ra_annual > 0:
                deductible = min(ra_annual, ra_deduction_limit)
                tax_before = self._salary_tax(gross_income_year, age, y)
                tax_after = self._salary_tax(gross_income_year - deductible, age, y)
                ra_tax_saving = max(0.0, tax_before - tax_after)
                ra += ra_tax_saving

            ledger.append(
                PreRetirementYear(
                    year_index=y,
                    age=age,
                    ra_start=ra_start,
                    tfsa_start=tfsa_start,
                    ra_end=ra,
                    tfsa_end=tfsa,
                    total_contribution=ra_annual + tfsa_annual,
                    ra_contribution=ra_annual,
                    tfsa_contribution=tfsa_annual,
                    ra_tax_saving=ra_tax_saving,
                )
            )

        return AccumulationResult(ra=ra, tfsa=tfsa, ledger=tuple(ledger))

    # -------------------------
    # Phase 2: decumulation (annual)
    # -------------------------
    def decumulate(self, ra_start: float, tfsa_start: float) -> DecumulationResult:
        p = self.p
        target_monthly_at_ret = p.target_net_monthly_at_ret
        order = ("TFSA", "RA") if p.deplete_order == "TFSA_FIRST" else ("RA", "TFSA")

        ra = ra_start
        tfsa = tfsa_start
        exhaustion_age = p.life_expectancy

        year1_gross = 0.0
        year1_net = 0.0
        year1_tax = 0.0

        ledger: List[PostRetirementYear] = []

        for y in range(p.years_in_retirement):
            age = p.retire_age + y
            years_from_now = p.years_to_retire + y
            ra_start_year = ra
            tfsa_start_year = tfsa

            net_required = target_monthly_at_ret * 12 * (1.0 + p.inflation) ** y
            remaining_net = net_required
            year_gross = 0.0
            year_tax = 0.0

            for pool in order:
                if remaining_net <= 0:
                    break
                if pool == "TFSA":
                    if tfsa > 0:
                        from_tfsa = min(tfsa, remaining_net)
                        tfsa -= from_tfsa
                        remaining_net -= from_tfsa
                        year_gross += from_tfsa
                elif ra > 0:
                    draw = self._draw_taxable(remaining_net, ra, age, years_from_now)
                    ra -= draw.gross
                    remaining_net -= draw.net
                    year_gross += draw.gross
                    year_tax += draw.tax

            net_delivered = net_required - max(0.0, remaining_net)

            if y == 0:
                year1_gross = year_gross
                year1_net = net_delivered
                year1_tax = year_tax

            ra *= 1.0 + p.post_return
            tfsa *= 1.0 + p.post_return

            ledger.append(
                PostRetirementYear(
                    year_index=y,
                    age=age,
                    ra_start=ra_start_year,
                    tfsa_start=tfsa_start_year,
                    ra_end=ra,
                    tfsa_end=tfsa,
                    net_required=net_required,
                    net_delivered=net_delivered,
                    gross_withdrawal=year_gross,
                    tax_paid=year_tax,
                )
            )

            self.logger.debug(
                f"Age {age}: need ${net_required:,.2f}, delivered ${net_delivered:,.2f}, "
                f"gross ${year_gross:,.2f}, tax ${year_tax:,.2f}"
            )

            if remaining_net > 0 or (net_required > 0 and ra + tfsa <= 0):
                exhaustion_age = age
                break

        return DecumulationResult(
            exhaustion_age=exhaustion_age,
            year1_gross_withdrawal=year1_gross,
            year1_net_withdrawal=year1_net,
            year1_tax=year1_tax,
            ledger=tuple(ledger),
        )

    def simulate_with_contribution(self, monthly: float) -> ContributionTrial:
        acc = self.accumulate(monthly)
        dec = self.decumulate(acc.ra, acc.tfsa)
        return ContributionTrial(contribution=monthly, accumulation=acc, decumulation=dec)

    # -------------------------
    # Solver (binary search)
    # -------------------------
    def solve(self) -> Tuple[float, ContributionTrial]:
        """
        Smallest monthly contribution that keeps capital alive to life expectancy.
        Doubles the upper bound a bounded number of times, then bisects a fixed
        number of times. If no bound survives, the largest attempt is returned.
        """
        p = self.p
        life_exp = p.life_expectancy

        if p.target_net_today <= 0 or p.years_in_retirement == 0:
            self.logger.debug("Nothing to fund after retirement; contribution is zero.")
            return 0.0, self.simulate_with_contribution(0.0)

        low, high = 0.0, p.solver_initial_upper
        solution = self.simulate_with_contribution(high)

        guard = 0
        while solution.exhaustion_age < life_exp and guard < p.solver_max_doublings:
            high *= 2.0
            solution = self.simulate_with_contribution(high)
            guard += 1
            self.logger.debug(f"Upper bound raised to ${high:,.2f} (exhaustion age {solution.exhaustion_age})")

        for _ in range(p.solver_iterations):
            mid = (low + high) / 2.0
            trial = self.simulate_with_contribution(mid)
            self.logger.debug(f"Probe ${mid:,.2f}/month -> exhaustion age {trial.exhaustion_age}")
            if trial.exhaustion_age >= life_exp:
                high = mid
                solution = trial
            else:
                low = mid

        return high, solution

    # -------------------------
    # Orchestration
    # -------------------------
    def run(self) -> ProjectionResult:
        p = self.p

        required, solution = self.solve()
        acc = solution.accumulation
        dec = solution.decumulation

        max_ra_contrib = min(p.ra_deduction_fraction * p.gross_income, p.ra_deduction_ceiling)
        tax_now = p.salary_regime.tax(p.gross_income, p.current_age)
        tax_with_max_ra = p.salary_regime.tax(p.gross_income - max_ra_contrib, p.current_age)
        tax_saving = max(0.0, tax_now - tax_with_max_ra)
        effective_tax_rate_now = tax_now / p.gross_income if p.gross_income > 0 else 0.0

        total_capital = acc.ra + acc.tfsa
        discount_to_today = (1.0 + p.inflation) ** p.years_to_retire

        year1_drawdown_pct = dec.year1_gross_withdrawal / total_capital if total_capital > 0 else 0.0
        year1_effective_tax_rate = (
            dec.year1_tax / dec.year1_gross_withdrawal if dec.year1_gross_withdrawal > 0 else 0.0
        )

        trajectory = tuple(
            CapitalPoint(age=row.age, ra=row.ra_end, tfsa=row.tfsa_end, total=row.ra_end + row.tfsa_end)
            for row in acc.ledger + dec.ledger
        )

        result = ProjectionResult(
            required_monthly_contribution=required,
            taxable_capital_at_ret=acc.ra,
            tfsa_capital_at_ret=acc.tfsa,
            total_capital_at_ret=total_capital,
            target_net_monthly_at_ret=p.target_net_monthly_at_ret,
            present_value_required_capital=total_capital / discount_to_today,
            exhaustion_age=dec.exhaustion_age,
            is_feasible=dec.exhaustion_age >= p.life_expectancy,
            year1_gross_withdrawal=dec.year1_gross_withdrawal,
            year1_net_withdrawal=dec.year1_net_withdrawal,
            year1_tax=dec.year1_tax,
            year1_drawdown_pct=year1_drawdown_pct,
            year1_effective_tax_rate=year1_effective_tax_rate,
            effective_tax_rate_now=effective_tax_rate_now,
            max_ra_contrib=max_ra_contrib,
            tax_saving=tax_saving,
            ra_usage_pct=(required * 12) / max_ra_contrib if max_ra_contrib > 0 else 0.0,
            total_contributions_at_retirement=sum(r.total_contribution for r in acc.ledger),
            total_tax_savings_at_retirement=sum(r.ra_tax_saving for r in acc.ledger),
            lifetime_net_delivered=sum(r.net_delivered for r in dec.ledger),
            lifetime_gross_withdrawn=sum(r.gross_withdrawal for r in dec.ledger),
            lifetime_tax_paid=sum(r.tax_paid for r in dec.ledger),
            pre_ledger=acc.ledger,
            post_ledger=dec.ledger,
            capital_trajectory=trajectory,
            retirement_age=p.retire_age,
            life_expectancy=p.life_expectancy,
            ages_adjusted=p.ages_adjusted,
        )

        self.logger.info(
            f"Required contribution ${required:,.2f}/month | capital at {p.retire_age}: ${total_capital:,.2f} "
            f"| exhaustion age {dec.exhaustion_age} (target {p.life_expectancy})"
        )
        self.logger.info(f"Ledgers: {len(acc.ledger)} pre-retirement years, {len(dec.ledger)} post-retirement years")
        return result


@lru_cache(maxsize=64)
def _run_projection_cached(inputs: ProjectionInputs) -> ProjectionResult:
    """Safe to cache: inputs is a frozen content record and the result is immutable."""
    return ProjectionSimulator(inputs).run()


def run_projection(settings_input: Optional[Dict]) -> ProjectionResult:
    """
    Entry point for the UI and any other caller.

    settings_input uses the DEFAULTS keys; values may be raw text ("45,000").
    Percent keys (*_pct) are in percent. Returns an immutable ProjectionResult;
    infeasible targets are reported via is_feasible / exhaustion_age, never raised.
    """
    return _run_projection_cached(normalize_inputs(settings_input))
