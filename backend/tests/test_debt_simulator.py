import unittest
from datetime import date
from decimal import Decimal

from backend.debt_normalizer import DebtRecord
from backend.debt_simulator import (
    MAX_SIMULATION_MONTHS,
    Converges,
    NeverConverges,
    Ordering,
    PayoffEvent,
    accrue_interest,
    estimate_solo_payoff,
    payoff_month,
    simulate,
)


def make_debt(
    debt_id: str,
    balance: str,
    apr: str,
    minimum_payment: str,
    name: str | None = None,
) -> DebtRecord:
    return DebtRecord(
        id=debt_id,
        name=name or debt_id,
        balance=Decimal(balance),
        apr=Decimal(apr),
        minimum_payment=Decimal(minimum_payment),
        debt_type="credit_card",
    )


def two_cards() -> list[DebtRecord]:
    return [
        make_debt("card_a", "2000", "22", "40", name="Card A"),
        make_debt("card_b", "500", "10", "25", name="Card B"),
    ]


def payoff_month_for(result, debt_id: str) -> int:
    for event in result.payoff_order:
        if event.debt_id == debt_id:
            return event.month
    raise AssertionError(f"{debt_id} never paid off")


class RepaymentSimulatorTests(unittest.TestCase):
    def test_empty_debt_list_returns_zero_result(self) -> None:
        for ordering in Ordering:
            result = simulate([], Decimal("100"), ordering)

            self.assertEqual(result.total_interest, Decimal("0"))
            self.assertEqual(result.months_to_payoff, 0)
            self.assertIsNone(result.payoff_date)
            self.assertEqual(result.payoff_order, ())

    def test_zero_balance_debts_are_skipped(self) -> None:
        result = simulate([make_debt("paid", "0", "19.99", "25")], Decimal("0"), Ordering.APR_DESC)

        self.assertEqual(result.months_to_payoff, 0)
        self.assertEqual(result.payoff_order, ())

    def test_first_months_match_hand_computed_amortization(self) -> None:
        debt = make_debt("card", "1000", "24", "50")

        self.assertEqual(accrue_interest(Decimal("1000"), Decimal("24")), Decimal("20.00"))

        result = simulate([debt], Decimal("0"), Ordering.APR_DESC, max_months=3)

        # 20.00 + 19.40 + 18.79
        self.assertEqual(result.total_interest, Decimal("58.19"))
        self.assertEqual(result.months_to_payoff, 3)
        self.assertEqual(result.payoff_order, ())

    def test_balance_after_first_month_is_970(self) -> None:
        debt = make_debt("card", "1000", "24", "50")

        # 1000 + 20.00 interest - 50 minimum leaves 970.00 for the extra payment
        cleared = simulate([debt], Decimal("970.00"), Ordering.APR_DESC, max_months=1)
        short = simulate([debt], Decimal("969.99"), Ordering.APR_DESC, max_months=1)

        self.assertEqual(cleared.total_interest, Decimal("20.00"))
        self.assertEqual(cleared.payoff_order, (PayoffEvent(debt_id="card", name="card", month=1),))
        self.assertEqual(short.payoff_order, ())

    def test_single_debt_converges_and_records_payoff_month(self) -> None:
        debt = make_debt("card", "1000", "24", "50", name="Visa")

        result = simulate([debt], Decimal("0"), Ordering.APR_DESC, today=date(2024, 1, 15))

        self.assertGreater(result.months_to_payoff, 0)
        self.assertLess(result.months_to_payoff, MAX_SIMULATION_MONTHS)
        self.assertEqual(
            result.payoff_order,
            (PayoffEvent(debt_id="card", name="Visa", month=result.months_to_payoff),),
        )
        self.assertEqual(result.payoff_date, payoff_month(date(2024, 1, 15), result.months_to_payoff))

    def test_payoff_date_adds_months_to_today(self) -> None:
        debt = make_debt("card", "1000", "24", "50")

        result = simulate([debt], Decimal("0"), Ordering.APR_DESC, today=date(2024, 11, 30), max_months=3)

        self.assertEqual(result.payoff_date, "2025-02")

    def test_avalanche_pays_high_rate_card_first(self) -> None:
        debts = two_cards()

        avalanche = simulate(debts, Decimal("100"), Ordering.APR_DESC)
        snowball = simulate(debts, Decimal("100"), Ordering.BALANCE_ASC)

        self.assertLess(payoff_month_for(avalanche, "card_a"), payoff_month_for(snowball, "card_a"))
        self.assertLess(payoff_month_for(snowball, "card_b"), payoff_month_for(avalanche, "card_b"))
        self.assertLess(avalanche.total_interest, snowball.total_interest)
        self.assertEqual(snowball.payoff_order[0].debt_id, "card_b")

    def test_interest_ordering_between_strategies(self) -> None:
        debts = two_cards()

        status_quo = simulate(debts, Decimal("0"), Ordering.APR_DESC)
        avalanche = simulate(debts, Decimal("100"), Ordering.APR_DESC)
        snowball = simulate(debts, Decimal("100"), Ordering.BALANCE_ASC)

        self.assertLessEqual(avalanche.total_interest, snowball.total_interest)
        self.assertLessEqual(snowball.total_interest, status_quo.total_interest)
        self.assertLess(avalanche.months_to_payoff, status_quo.months_to_payoff)

    def test_more_extra_payment_never_slows_payoff(self) -> None:
        debts = two_cards()
        for ordering in Ordering:
            previous = None
            for extra in ("0", "25", "100", "250"):
                result = simulate(debts, Decimal(extra), ordering)
                if previous is not None:
                    self.assertLessEqual(result.months_to_payoff, previous.months_to_payoff)
                    self.assertLessEqual(result.total_interest, previous.total_interest)
                previous = result

    def test_single_debt_strategies_are_identical(self) -> None:
        debts = [make_debt("loan", "4000", "8.5", "90")]

        avalanche = simulate(debts, Decimal("60"), Ordering.APR_DESC, today=date(2024, 1, 1))
        snowball = simulate(debts, Decimal("60"), Ordering.BALANCE_ASC, today=date(2024, 1, 1))

        self.assertEqual(avalanche, snowball)

    def test_non_convergent_debt_stops_at_ceiling(self) -> None:
        debt = make_debt("payday", "5000", "29.99", "10")

        result = simulate([debt], Decimal("0"), Ordering.APR_DESC)

        self.assertEqual(result.months_to_payoff, MAX_SIMULATION_MONTHS)
        self.assertEqual(result.payoff_order, ())
        self.assertGreater(result.total_interest, Decimal("0"))

    def test_extra_payment_targets_one_debt_per_month(self) -> None:
        debts = [
            make_debt("small", "30", "0", "10"),
            make_debt("large", "530", "0", "10"),
        ]

        result = simulate(debts, Decimal("100"), Ordering.BALANCE_ASC)

        self.assertEqual(result.months_to_payoff, 6)
        self.assertEqual(payoff_month_for(result, "small"), 1)
        self.assertEqual(payoff_month_for(result, "large"), 6)
        self.assertEqual(result.total_interest, Decimal("0"))

    def test_rollover_applies_leftover_extra_to_next_debt(self) -> None:
        debts = [
            make_debt("small", "30", "0", "10"),
            make_debt("large", "530", "0", "10"),
        ]

        result = simulate(debts, Decimal("100"), Ordering.BALANCE_ASC, rollover_extra=True)

        self.assertEqual(result.months_to_payoff, 5)
        self.assertEqual(payoff_month_for(result, "small"), 1)
        self.assertEqual(payoff_month_for(result, "large"), 5)

    def test_negative_extra_payment_is_treated_as_zero(self) -> None:
        debts = two_cards()

        negative = simulate(debts, Decimal("-50"), Ordering.APR_DESC, today=date(2024, 1, 1))
        baseline = simulate(debts, Decimal("0"), Ordering.APR_DESC, today=date(2024, 1, 1))

        self.assertEqual(negative, baseline)

    def test_caller_input_is_not_modified(self) -> None:
        debts = two_cards()
        snapshot = list(debts)

        simulate(debts, Decimal("100"), Ordering.BALANCE_ASC)

        self.assertEqual(debts, snapshot)

    def test_accepts_ordering_names(self) -> None:
        debts = two_cards()

        by_name = simulate(debts, "100", "balance_asc", today=date(2024, 1, 1))
        by_enum = simulate(debts, Decimal("100"), Ordering.BALANCE_ASC, today=date(2024, 1, 1))

        self.assertEqual(by_name, by_enum)

    def test_rejects_unknown_ordering(self) -> None:
        with self.assertRaises(ValueError):
            simulate(two_cards(), Decimal("0"), "random")


class SoloPayoffEstimatorTests(unittest.TestCase):
    def test_matches_single_debt_simulation(self) -> None:
        debt = make_debt("card", "1000", "24", "50")

        solo = estimate_solo_payoff(debt)
        result = simulate([debt], Decimal("0"), Ordering.APR_DESC)

        self.assertEqual(solo, Converges(result.months_to_payoff))

    def test_flags_minimum_below_interest(self) -> None:
        debt = make_debt("payday", "5000", "29.99", "10")

        self.assertEqual(estimate_solo_payoff(debt), NeverConverges())

    def test_flags_payoff_beyond_ceiling(self) -> None:
        debt = make_debt("slow", "10000", "12", "100.10")

        self.assertEqual(estimate_solo_payoff(debt), NeverConverges())

    def test_zero_balance_is_already_paid(self) -> None:
        self.assertEqual(estimate_solo_payoff(make_debt("done", "0", "20", "25")), Converges(0))

    def test_zero_apr_debt_divides_evenly(self) -> None:
        debt = make_debt("family", "300", "0", "100")

        self.assertEqual(estimate_solo_payoff(debt), Converges(3))


if __name__ == "__main__":
    unittest.main()
