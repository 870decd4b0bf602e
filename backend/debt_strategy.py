from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union

from backend.debt_normalizer import (
    DEFAULT_POLICY,
    CustomDebt,
    DebtRecord,
    NormalizerPolicy,
    normalize_debts,
)
from backend.debt_simulator import (
    EMPTY_RESULT,
    Converges,
    Ordering,
    SimulationResult,
    SoloPayoff,
    accrue_interest,
    estimate_solo_payoff,
    simulate,
)

ZERO = Decimal("0")
CENT = Decimal("0.01")
NEVER_PAYS_OFF_MONTHS = 999
STRATEGY_NAMES = ("status_quo", "avalanche", "snowball")


@dataclass(frozen=True)
class DebtDetail:
    record: DebtRecord
    solo_payoff: SoloPayoff


@dataclass(frozen=True)
class StrategySavings:
    interest_saved_avalanche: Decimal
    months_saved_avalanche: int
    interest_saved_snowball: Decimal
    months_saved_snowball: int


@dataclass(frozen=True)
class StrategyComparisonReport:
    total_debt: Decimal
    total_minimum_payment: Decimal
    debt_count: int
    debts: tuple[DebtDetail, ...]
    strategies: Mapping[str, SimulationResult]
    savings: StrategySavings


@dataclass(frozen=True)
class DebtSummary:
    total_balance: Decimal
    total_minimum_monthly: Decimal
    highest_apr: Decimal
    highest_apr_account: Optional[str]
    total_monthly_interest_cost: Decimal
    accounts_count: int


EMPTY_SAVINGS = StrategySavings(
    interest_saved_avalanche=ZERO,
    months_saved_avalanche=0,
    interest_saved_snowball=ZERO,
    months_saved_snowball=0,
)


def compare(
    liabilities_raw: Optional[Mapping[str, Any]],
    extra_payment: Decimal | int | float | str,
    custom_debts: Iterable[Union[CustomDebt, Mapping[str, Any]]] = (),
    apr_overrides: Optional[Mapping[str, Any]] = None,
    *,
    rollover_extra: bool = False,
    today: Optional[date] = None,
    policy: NormalizerPolicy = DEFAULT_POLICY,
) -> StrategyComparisonReport:
    debts = normalize_debts(liabilities_raw, custom_debts, apr_overrides, policy)
    return compare_records(
        debts, extra_payment, rollover_extra=rollover_extra, today=today
    )


def compare_records(
    debts: Sequence[DebtRecord],
    extra_payment: Decimal | int | float | str,
    *,
    rollover_extra: bool = False,
    today: Optional[date] = None,
) -> StrategyComparisonReport:
    active = tuple(debt for debt in debts if debt.balance > ZERO)
    if not active:
        return _empty_report()

    today = today or date.today()
    status_quo = simulate(active, ZERO, Ordering.APR_DESC, today=today)
    avalanche = simulate(
        active, extra_payment, Ordering.APR_DESC, rollover_extra=rollover_extra, today=today
    )
    snowball = simulate(
        active, extra_payment, Ordering.BALANCE_ASC, rollover_extra=rollover_extra, today=today
    )

    return StrategyComparisonReport(
        total_debt=sum((debt.balance for debt in active), ZERO),
        total_minimum_payment=sum((debt.minimum_payment for debt in active), ZERO),
        debt_count=len(active),
        debts=tuple(
            DebtDetail(record=debt, solo_payoff=estimate_solo_payoff(debt)) for debt in active
        ),
        strategies={
            "status_quo": status_quo,
            "avalanche": avalanche,
            "snowball": snowball,
        },
        savings=StrategySavings(
            interest_saved_avalanche=status_quo.total_interest - avalanche.total_interest,
            months_saved_avalanche=status_quo.months_to_payoff - avalanche.months_to_payoff,
            interest_saved_snowball=status_quo.total_interest - snowball.total_interest,
            months_saved_snowball=status_quo.months_to_payoff - snowball.months_to_payoff,
        ),
    )


def summarize_debts(debts: Iterable[DebtRecord]) -> DebtSummary:
    total_balance = ZERO
    total_minimum = ZERO
    highest_apr = ZERO
    highest_apr_account: Optional[str] = None
    count = 0
    for debt in debts:
        if debt.balance <= ZERO:
            continue
        count += 1
        total_balance += debt.balance
        total_minimum += debt.minimum_payment
        if debt.apr > highest_apr:
            highest_apr = debt.apr
            highest_apr_account = debt.name
    return DebtSummary(
        total_balance=total_balance,
        total_minimum_monthly=total_minimum,
        highest_apr=highest_apr,
        highest_apr_account=highest_apr_account,
        total_monthly_interest_cost=accrue_interest(total_balance, highest_apr),
        accounts_count=count,
    )


def solo_payoff_months(solo_payoff: SoloPayoff) -> int:
    if isinstance(solo_payoff, Converges):
        return solo_payoff.months
    return NEVER_PAYS_OFF_MONTHS


def report_to_dict(report: StrategyComparisonReport) -> Dict[str, Any]:
    """Render a report in the JSON shape the mobile client consumes."""
    return {
        "total_debt": _money(report.total_debt),
        "total_min_payment": _money(report.total_minimum_payment),
        "debt_count": report.debt_count,
        "debts": [_detail_to_dict(detail) for detail in report.debts],
        "strategies": {
            name: simulation_to_dict(report.strategies[name]) for name in STRATEGY_NAMES
        },
        "savings": {
            "interest_saved_avalanche": _money(report.savings.interest_saved_avalanche),
            "months_saved_avalanche": report.savings.months_saved_avalanche,
            "interest_saved_snowball": _money(report.savings.interest_saved_snowball),
            "months_saved_snowball": report.savings.months_saved_snowball,
        },
    }


def simulation_to_dict(result: SimulationResult) -> Dict[str, Any]:
    return {
        "total_interest": _money(result.total_interest),
        "months_to_payoff": result.months_to_payoff,
        "payoff_date": result.payoff_date,
        "payoff_order": [
            {"id": event.debt_id, "name": event.name, "month": event.month}
            for event in result.payoff_order
        ],
    }


def _detail_to_dict(detail: DebtDetail) -> Dict[str, Any]:
    record = detail.record
    return {
        "id": record.id,
        "name": record.name,
        "balance": _money(record.balance),
        "apr": float(record.apr),
        "min_payment": _money(record.minimum_payment),
        "is_custom": record.is_custom,
        "debt_type": record.debt_type,
        "apr_source": record.apr_source,
        "solo_payoff_months": solo_payoff_months(detail.solo_payoff),
        "solo_payoff_converges": isinstance(detail.solo_payoff, Converges),
    }


def _empty_report() -> StrategyComparisonReport:
    return StrategyComparisonReport(
        total_debt=ZERO,
        total_minimum_payment=ZERO,
        debt_count=0,
        debts=(),
        strategies={name: EMPTY_RESULT for name in STRATEGY_NAMES},
        savings=EMPTY_SAVINGS,
    )


def _money(amount: Decimal) -> float:
    return float(amount.quantize(CENT, rounding=ROUND_HALF_UP))
