import math
import os
import sys
import unittest

sys.path.append(os.getcwd())
from projection_helpers import DEFAULTS, FlatTaxRegime, gross_up, progressive_regime_from_settings
from projection_simulation import (
    ProjectionSimulator,
    normalize_inputs,
    run_projection,
    split_capped_contribution,
)

REGIME = progressive_regime_from_settings(DEFAULTS)

# Everything switched off so each test turns on only what it checks.
BASE_SETTINGS = {
    "current_age": 30,
    "retire_age": 60,
    "life_expectancy": 90,
    "initial_capital": 0,
    "initial_tfsa_balance": 0,
    "tfsa_contrib_to_date": 0,
    "target_net_today": 0,
    "pre_return_pct": 0,
    "post_return_pct": 0,
    "inflation_pct": 0,
    "annual_increase_pct": 0,
    "tfsa_monthly": 0,
    "gross_income": 0,
    "income_growth_mode": "NONE",
    "income_growth_rate_pct": 0,
    "deplete_order": "RA_FIRST",
    "tax_mode": "PROGRESSIVE",
    "flat_tax_rate_pct": 25,
    "reinvest_ra_tax_saving": False,
    "tax_realism": False,
}


def settings(**overrides) -> dict:
    s = dict(BASE_SETTINGS)
    s.update(overrides)
    return s


def simulator(**overrides) -> ProjectionSimulator:
    return ProjectionSimulator(normalize_inputs(settings(**overrides)))


class TestProjectionDomain(unittest.TestCase):
    def test_tax_saving_uses_brackets_and_rebates(self):
        out = run_projection(settings(gross_income=500000))

        tax_now = REGIME.tax(500000, 30)
        ra_cap = min(0.275 * 500000, 350000)
        expected_saving = tax_now - REGIME.tax(500000 - ra_cap, 30)

        self.assertAlmostEqual(out.tax_saving, expected_saving, places=2)
        self.assertAlmostEqual(out.max_ra_contrib, 137500.0)
        self.assertAlmostEqual(out.effective_tax_rate_now, tax_now / 500000, places=4)

    def test_gross_withdrawal_derived_from_net_target(self):
        out = run_projection(
            settings(current_age=65, retire_age=65, life_expectancy=66, initial_capital=100000, target_net_today=6000)
        )
        expected = gross_up(6000 * 12, lambda g: REGIME.tax(g, 65))

        self.assertAlmostEqual(out.year1_net_withdrawal, expected.net, places=2)
        self.assertAlmostEqual(out.year1_gross_withdrawal, expected.gross, places=2)
        self.assertAlmostEqual(out.year1_tax, expected.tax, places=2)
        self.assertTrue(out.is_feasible)

    def test_salary_flat_when_income_growth_is_none(self):
        out = run_projection(
            settings(
                current_age=30,
                retire_age=32,
                life_expectancy=40,
                gross_income=600000,
                income_growth_mode="NONE",
                income_growth_rate_pct=5,
                inflation_pct=6,
                target_net_today=20000,
                reinvest_ra_tax_saving=True,
            )
        )
        self.assertEqual(len(out.pre_ledger), 2)
        year0, year1 = out.pre_ledger

        self.assertGreater(year0.ra_contribution, 0)
        self.assertAlmostEqual(year1.ra_contribution, year0.ra_contribution, places=6)
        self.assertGreater(year0.ra_tax_saving, 0)
        self.assertAlmostEqual(year1.ra_tax_saving, year0.ra_tax_saving, places=6)

    def test_tfsa_cap_rolls_overflow_into_ra(self):
        out = run_projection(settings(retire_age=31, life_expectancy=40, tfsa_monthly=800, tfsa_contrib_to_date=495000))
        self.assertEqual(len(out.pre_ledger), 1)
        year0 = out.pre_ledger[0]

        # No target => zero contribution; the only deposits are the TFSA plan.
        # 6 x 800 + 200 fills the last 5 000 of room; 600 + 5 x 800 overflows to RA.
        self.assertEqual(out.required_monthly_contribution, 0.0)
        self.assertAlmostEqual(year0.tfsa_contribution, 5000.0, places=6)
        self.assertAlmostEqual(year0.ra_contribution, 4600.0, places=6)
        self.assertAlmostEqual(year0.total_contribution, 9600.0, places=6)
        self.assertAlmostEqual(year0.tfsa_end, 5000.0, places=6)
        self.assertAlmostEqual(year0.ra_end, 4600.0, places=6)

    def test_capped_headroom_split_same_month(self):
        into, overflow = split_capped_contribution(800.0, 499999.5, 500000.0)
        self.assertEqual(into, 0.5)
        self.assertEqual(overflow, 799.5)
        self.assertEqual(split_capped_contribution(800.0, 500000.0, 500000.0), (0.0, 800.0))

        out = run_projection(settings(retire_age=31, life_expectancy=40, tfsa_monthly=800, tfsa_contrib_to_date=499999.5))
        year0 = out.pre_ledger[0]
        self.assertAlmostEqual(year0.tfsa_contribution, 0.5, places=6)
        self.assertAlmostEqual(year0.ra_contribution, 799.5 + 11 * 800, places=6)

    def test_tfsa_monthly_clamped_to_statutory_cap(self):
        out = run_projection(settings(retire_age=31, life_expectancy=40, tfsa_monthly="10,000"))
        self.assertAlmostEqual(out.pre_ledger[0].tfsa_contribution, 36000.0, places=6)

    def test_negative_pre_retirement_return_shrinks_balance(self):
        out = run_projection(settings(retire_age=31, life_expectancy=40, initial_capital=10000, pre_return_pct=-12))
        self.assertEqual(len(out.pre_ledger), 1)
        year0 = out.pre_ledger[0]

        self.assertAlmostEqual(year0.ra_start, 10000.0, places=2)
        self.assertAlmostEqual(year0.ra_end, 8800.0, delta=1.0)

    def test_tax_realism_indexes_brackets(self):
        common = dict(
            current_age=40,
            retire_age=45,
            life_expectancy=50,
            initial_capital=300000,
            target_net_today=10000,
            gross_income=600000,
            inflation_pct=6,
        )
        static = run_projection(settings(tax_realism=False, **common))
        indexed = run_projection(settings(tax_realism=True, **common))
        self.assertLess(indexed.year1_tax, static.year1_tax)

    def test_tfsa_first_minimises_withdrawal_tax(self):
        common = dict(
            current_age=65,
            retire_age=65,
            life_expectancy=66,
            initial_capital=200000,
            initial_tfsa_balance=50000,
            target_net_today=5000,
            tax_mode="FLAT",
            flat_tax_rate_pct=30,
        )
        ra_first = run_projection(settings(deplete_order="RA_FIRST", **common))
        tfsa_first = run_projection(settings(deplete_order="TFSA_FIRST", **common))

        self.assertLess(tfsa_first.year1_tax, ra_first.year1_tax)
        self.assertLess(tfsa_first.year1_gross_withdrawal, ra_first.year1_gross_withdrawal)
        # 50 000 tax-free, remaining 10 000 net grossed up at 30%
        self.assertAlmostEqual(tfsa_first.year1_gross_withdrawal, 50000 + 10000 / 0.7, delta=0.01)


class TestSimulatorPhases(unittest.TestCase):
    def test_contribution_escalates_yearly(self):
        acc = simulator(retire_age=32, annual_increase_pct=10).accumulate(1000.0)
        self.assertAlmostEqual(acc.ledger[0].ra_contribution, 12000.0, places=6)
        self.assertAlmostEqual(acc.ledger[1].ra_contribution, 13200.0, places=6)
        self.assertAlmostEqual(acc.ledger[1].total_contribution, 13200.0, places=6)

    def test_tax_saving_reinvested_as_year_end_lump_sum(self):
        acc = simulator(retire_age=31, gross_income=500000, reinvest_ra_tax_saving=True).accumulate(10000.0)
        year0 = acc.ledger[0]
        expected = REGIME.tax(500000, 30) - REGIME.tax(500000 - 120000, 30)

        self.assertAlmostEqual(year0.ra_tax_saving, expected, places=6)
        self.assertAlmostEqual(year0.ra_end, 120000.0 + expected, places=6)

    def test_deduction_capped_at_statutory_limit(self):
        # 27.5% of 200 000 = 55 000 < 120 000 contributed
        acc = simulator(retire_age=31, gross_income=200000, reinvest_ra_tax_saving=True).accumulate(10000.0)
        expected = REGIME.tax(200000, 30) - REGIME.tax(200000 - 55000, 30)
        self.assertAlmostEqual(acc.ledger[0].ra_tax_saving, expected, places=6)

    def test_decumulation_never_overdraws(self):
        sim = simulator(
            current_age=64, retire_age=65, life_expectancy=90, target_net_today=10000, post_return_pct=2, deplete_order="TFSA_FIRST"
        )
        dec = sim.decumulate(ra_start=300000.0, tfsa_start=100000.0)

        self.assertLess(dec.exhaustion_age, 90)
        self.assertEqual(dec.ledger[-1].age, dec.exhaustion_age)
        self.assertLess(len(dec.ledger), 25)
        for row in dec.ledger:
            self.assertGreaterEqual(row.ra_end, 0.0)
            self.assertGreaterEqual(row.tfsa_end, 0.0)
        self.assertLess(dec.ledger[-1].net_delivered, dec.ledger[-1].net_required)

    def test_decumulation_drains_tax_free_pool_net_for_net(self):
        sim = simulator(
            current_age=64, retire_age=65, life_expectancy=67, target_net_today=1000, tax_mode="FLAT",
            flat_tax_rate_pct=30, deplete_order="TFSA_FIRST",
        )
        dec = sim.decumulate(ra_start=100000.0, tfsa_start=100000.0)
        self.assertEqual(dec.year1_tax, 0.0)
        self.assertAlmostEqual(dec.year1_gross_withdrawal, 12000.0)
        self.assertAlmostEqual(dec.ledger[0].tfsa_end, 88000.0)
        self.assertAlmostEqual(dec.ledger[0].ra_end, 100000.0)
        self.assertIsInstance(sim.p.withdrawal_regime, FlatTaxRegime)


class TestSolver(unittest.TestCase):
    def test_identical_inputs_give_identical_results(self):
        s = settings(current_age=40, retire_age=60, life_expectancy=85, target_net_today=20000, pre_return_pct=10,
                     post_return_pct=7, inflation_pct=5, gross_income=600000, reinvest_ra_tax_saving=True)
        first = ProjectionSimulator(normalize_inputs(s)).run()
        second = ProjectionSimulator(normalize_inputs(dict(s))).run()
        self.assertEqual(first, second)
        self.assertIs(run_projection(s), run_projection(dict(s)))

    def test_required_contribution_monotonic_in_target(self):
        previous = -1.0
        for target in (5000, 20000, 45000, 90000):
            out = run_projection(settings(current_age=40, retire_age=60, life_expectancy=85, target_net_today=target,
                                          pre_return_pct=12, post_return_pct=8, inflation_pct=5))
            self.assertTrue(out.is_feasible)
            self.assertGreaterEqual(out.required_monthly_contribution, previous)
            previous = out.required_monthly_contribution

    def test_solution_is_minimal(self):
        s = settings(current_age=40, retire_age=60, life_expectancy=85, target_net_today=20000, pre_return_pct=12,
                     post_return_pct=8, inflation_pct=5)
        out = run_projection(s)
        sim = ProjectionSimulator(normalize_inputs(s))
        below = sim.simulate_with_contribution(out.required_monthly_contribution * 0.99)
        self.assertLess(below.exhaustion_age, 85)
        self.assertEqual(out.exhaustion_age, 85)

    def test_minimum_horizons(self):
        pre = run_projection(settings(current_age=59, retire_age=60, target_net_today=1000))
        self.assertEqual(len(pre.pre_ledger), 1)

        post = run_projection(settings(current_age=59, retire_age=89, life_expectancy=90, target_net_today=1000,
                                       initial_capital=1000000))
        self.assertEqual(len(post.post_ledger), 1)
        self.assertTrue(post.is_feasible)

    def test_infeasible_target_returns_largest_attempt(self):
        s = dict(DEFAULTS)
        s.update({"post_return_pct": -99, "solver_max_doublings": 3})
        out = run_projection(s)

        self.assertFalse(out.is_feasible)
        self.assertLess(out.exhaustion_age, out.life_expectancy)
        self.assertEqual(out.required_monthly_contribution, 50000.0 * 2 ** 3)
        self.assertEqual(out.post_ledger[-1].age, out.exhaustion_age)

    def test_zero_target_short_circuits(self):
        out = run_projection(settings(initial_capital=0))
        self.assertEqual(out.required_monthly_contribution, 0.0)
        self.assertTrue(out.is_feasible)
        self.assertEqual(out.exhaustion_age, 90)
        self.assertEqual(len(out.post_ledger), 30)
        self.assertEqual(out.year1_drawdown_pct, 0.0)
        self.assertEqual(out.year1_effective_tax_rate, 0.0)

    def test_zero_retirement_horizon(self):
        out = run_projection(settings(retire_age=60, life_expectancy=60, target_net_today=10000))
        self.assertEqual(out.post_ledger, ())
        self.assertEqual(out.required_monthly_contribution, 0.0)
        self.assertTrue(out.ages_adjusted)


class TestInputsAndResult(unittest.TestCase):
    def test_garbage_text_is_coerced(self):
        raw = {
            "current_age": "abc",
            "retire_age": "-5",
            "life_expectancy": "",
            "inflation_pct": "nan",
            "target_net_today": "45,000",
            "tfsa_monthly": "10 000",
            "deplete_order": "sideways",
            "tax_mode": "sars",
            "flat_tax_rate_pct": "150",
            "unknown_key": 1,
        }
        p = normalize_inputs(raw)
        self.assertEqual(p.current_age, 30)
        self.assertEqual(p.retire_age, 30)
        self.assertEqual(p.life_expectancy, 100)
        self.assertTrue(p.ages_adjusted)
        self.assertEqual(p.inflation, 0.05)
        self.assertEqual(p.target_net_today, 45000.0)
        self.assertEqual(p.tfsa_monthly, 3000.0)
        self.assertEqual(p.deplete_order, "TFSA_FIRST")
        self.assertEqual(p.tax_mode, "PROGRESSIVE")

        out = run_projection(raw)
        for value in (out.required_monthly_contribution, out.total_capital_at_ret, out.year1_drawdown_pct,
                      out.present_value_required_capital, out.ra_usage_pct):
            self.assertTrue(math.isfinite(value))

    def test_inverted_ages_are_repaired(self):
        p = normalize_inputs(settings(current_age=70, retire_age=65, life_expectancy=60))
        self.assertEqual((p.current_age, p.retire_age, p.life_expectancy), (70, 70, 70))
        self.assertTrue(p.ages_adjusted)
        self.assertFalse(normalize_inputs(settings()).ages_adjusted)

    def test_huge_ages_and_rates_are_capped(self):
        raw = settings(current_age=30, retire_age="20000", life_expectancy="20001", inflation_pct="1e6",
                       pre_return_pct=5000, income_growth_mode="CUSTOM", income_growth_rate_pct=900,
                       gross_income=600000, target_net_today=1000)
        p = normalize_inputs(raw)
        self.assertEqual((p.current_age, p.retire_age, p.life_expectancy), (30, 120, 120))
        self.assertTrue(p.ages_adjusted)
        self.assertEqual(p.years_to_retire, 90)
        self.assertEqual((p.inflation, p.pre_return, p.income_growth_rate), (1.0, 1.0, 1.0))
        self.assertTrue(math.isfinite(p.target_net_monthly_at_ret))

        acc = ProjectionSimulator(p).accumulate(0.0)
        self.assertEqual(len(acc.ledger), 90)
        self.assertTrue(math.isfinite(acc.ra + acc.tfsa))

        out = run_projection(raw)
        self.assertEqual(out.required_monthly_contribution, 0.0)
        self.assertEqual(out.post_ledger, ())

        # A single age above the ceiling is still flagged even when the order is otherwise fine.
        p = normalize_inputs(settings(current_age=30, retire_age=65, life_expectancy=150))
        self.assertEqual(p.life_expectancy, 120)
        self.assertTrue(p.ages_adjusted)

    def test_flat_rate_clamped_below_one(self):
        p = normalize_inputs(settings(tax_mode="FLAT", flat_tax_rate_pct=150))
        self.assertEqual(p.withdrawal_regime.rate, 0.99)
        self.assertEqual(p.max_marginal_rate, 0.99)

    def test_capital_trajectory_concatenates_ledgers(self):
        out = run_projection(settings(current_age=60, retire_age=63, life_expectancy=70, target_net_today=10000,
                                      initial_tfsa_balance=20000, tfsa_monthly=1000, deplete_order="TFSA_FIRST"))
        self.assertEqual(len(out.capital_trajectory), len(out.pre_ledger) + len(out.post_ledger))
        ages = [pt.age for pt in out.capital_trajectory]
        self.assertEqual(ages, sorted(ages))
        self.assertEqual(ages[0], 60)
        for pt in out.capital_trajectory:
            self.assertEqual(pt.total, pt.ra + pt.tfsa)
        self.assertAlmostEqual(out.total_capital_at_ret, out.pre_ledger[-1].ra_end + out.pre_ledger[-1].tfsa_end)

    def test_totals_match_ledgers(self):
        out = run_projection(settings(current_age=50, retire_age=55, life_expectancy=70, target_net_today=15000,
                                      pre_return_pct=8, post_return_pct=6, inflation_pct=4, gross_income=400000,
                                      reinvest_ra_tax_saving=True))
        self.assertAlmostEqual(out.total_contributions_at_retirement, sum(r.total_contribution for r in out.pre_ledger))
        self.assertAlmostEqual(out.total_tax_savings_at_retirement, sum(r.ra_tax_saving for r in out.pre_ledger))
        self.assertAlmostEqual(out.lifetime_tax_paid, sum(r.tax_paid for r in out.post_ledger))
        self.assertAlmostEqual(out.lifetime_net_delivered, sum(r.net_delivered for r in out.post_ledger))
        self.assertAlmostEqual(out.present_value_required_capital, out.total_capital_at_ret / 1.04 ** 5)
        self.assertAlmostEqual(out.ra_usage_pct, out.required_monthly_contribution * 12 / out.max_ra_contrib)

    def test_summary_is_logged(self):
        sim = simulator(current_age=60, retire_age=62, life_expectancy=65, target_net_today=5000)
        with self.assertLogs("ProjectionSimulator", level="INFO") as cm:
            sim.run()
        self.assertTrue(any("Required contribution" in line for line in cm.output))


if __name__ == "__main__":
    unittest.main()
