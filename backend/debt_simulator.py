from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Optional, Sequence, Union

from backend.debt_normalizer import DebtRecord
from backend.logging_config import get_logger

ZERO = Decimal("0")
CENT = Decimal("0.01")
MONTHS_PER_YEAR = Decimal("12")
PERCENT = Decimal("100")
MAX_SIMULATION_MONTHS = 600
NON_CONVERGENCE_GRACE_MONTHS = 12

logger = get_logger(__name__)


class Ordering(str, Enum):
    APR_DESC = "APR_DESC"
    BALANCE_ASC = "BALANCE_ASC"


@dataclass(frozen=True)
class PayoffEvent:
    debt_id: str
    name: str
    month: int


@dataclass(frozen=True)
class SimulationResult:
    total_interest: Decimal
    months_to_payoff: int
    payoff_date: Optional[str]
    payoff_order: tuple[PayoffEvent, ...] = ()


EMPTY_RESULT = SimulationResult(
    total_interest=ZERO,
    months_to_payoff=0,
    payoff_date=None,
    payoff_order=(),
)


@dataclass(frozen=True)
class Converges:
    months: int


@dataclass(frozen=True)
class NeverConverges:
    pass


SoloPayoff = Union[Converges, NeverConverges]


@dataclass
class _LedgerEntry:
    id: str
    name: str
    balance: Decimal
    apr: Decimal
    minimum_payment: Decimal

    @classmethod
    def from_record(cls, record: DebtRecord) -> "_LedgerEntry":
        return cls(
            id=record.id,
            name=record.name,
            balance=record.balance,
            apr=record.apr,
            minimum_payment=record.minimum_payment,
        )


def monthly_rate(apr: Decimal) -> Decimal:
    return apr / PERCENT / MONTHS_PER_YEAR


def accrue_interest(balance: Decimal, apr: Decimal) -> Decimal:
    return (balance * monthly_rate(apr)).quantize(CENT, rounding=ROUND_HALF_UP)


def simulate(
    debts: Sequence[DebtRecord],
    extra_monthly_payment: Decimal | int | float | str,
    target_order: Ordering | str,
    *,
    rollover_extra: bool = False,
    today: Optional[date] = None,
    max_months: int = MAX_SIMULATION_MONTHS,
) -> SimulationResult:
    if max_months <= 0:
        raise ValueError("max_months must be greater than zero.")
    ordering = _validate_ordering(target_order)
    extra = max(_coerce_amount(extra_monthly_payment), ZERO)

    ledger = [_LedgerEntry.from_record(debt) for debt in debts if debt.balance > ZERO]
    if not ledger:
        return EMPTY_RESULT

    total_interest = ZERO
    months = 0
    payoff_order: List[PayoffEvent] = []
    paid_off: set[str] = set()

    while months < max_months and any(entry.balance > ZERO for entry in ledger):
        months += 1
        _sort_ledger(ledger, ordering)

        for entry in ledger:
            if entry.balance <= ZERO:
                continue
            interest = accrue_interest(entry.balance, entry.apr)
            entry.balance += interest
            total_interest += interest
            entry.balance -= min(entry.balance, entry.minimum_payment)
            _record_payoff(entry, months, paid_off, payoff_order)

        extra_available = extra
        for entry in ledger:
            if extra_available <= ZERO:
                break
            if entry.balance <= ZERO:
                continue
            payment = min(entry.balance, extra_available)
            entry.balance -= payment
            extra_available -= payment
            _record_payoff(entry, months, paid_off, payoff_order)
            if not rollover_extra:
                break

    if any(entry.balance > ZERO for entry in ledger):
        logger.debug(
            "Simulation stopped at month ceiling",
            extra={"ordering": ordering.value, "months": months},
        )

    return SimulationResult(
        total_interest=total_interest.quantize(CENT, rounding=ROUND_HALF_UP),
        months_to_payoff=months,
        payoff_date=payoff_month(today or date.today(), months),
        payoff_order=tuple(payoff_order),
    )


def estimate_solo_payoff(
    debt: DebtRecord, max_months: int = MAX_SIMULATION_MONTHS
) -> SoloPayoff:
    if debt.balance <= ZERO:
        return Converges(0)

    balance = debt.balance
    months = 0
    while balance > ZERO and months < max_months:
        months += 1
        interest = accrue_interest(balance, debt.apr)
        balance += interest
        balance -= min(balance, debt.minimum_payment)
        if debt.minimum_payment <= interest and months > NON_CONVERGENCE_GRACE_MONTHS:
            return NeverConverges()

    if balance > ZERO:
        return NeverConverges()
    return Converges(months)


def payoff_month(start: date, months: int) -> str:
    total_month = start.month - 1 + months
    year = start.year + total_month // 12
    month = total_month % 12 + 1
    day = min(start.day, monthrange(year, month)[1])
    return date(year, month, day).strftime("%Y-%m")


def _sort_ledger(ledger: List[_LedgerEntry], ordering: Ordering) -> None:
    if ordering is Ordering.APR_DESC:
        ledger.sort(key=lambda entry: entry.apr, reverse=True)
    else:
        ledger.sort(key=lambda entry: entry.balance)


def _record_payoff(
    entry: _LedgerEntry,
    month: int,
    paid_off: set[str],
    payoff_order: List[PayoffEvent],
) -> None:
    if entry.balance > ZERO or entry.id in paid_off:
        return
    paid_off.add(entry.id)
    payoff_order.append(PayoffEvent(debt_id=entry.id, name=entry.name, month=month))


def _validate_ordering(value: Ordering | str) -> Ordering:
    if isinstance(value, Ordering):
        return value
    normalized = value.strip().upper()
    try:
        return Ordering(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported ordering: {value}") from exc


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
