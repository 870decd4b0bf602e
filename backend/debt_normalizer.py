from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Iterable, List, Mapping, Optional, Union

ZERO = Decimal("0")

DEBT_TYPES = (
    "credit_card",
    "line_of_credit",
    "personal_loan",
    "student_loan",
    "mortgage",
    "other",
)

DEFAULT_APRS: Mapping[str, Decimal] = MappingProxyType(
    {
        "credit_card": Decimal("22.00"),
        "line_of_credit": Decimal("11.00"),
        "personal_loan": Decimal("10.00"),
        "student_loan": Decimal("6.00"),
        "mortgage": Decimal("5.00"),
        "other": Decimal("15.00"),
    }
)


class DebtNormalizationError(ValueError):
    """Raised when a debt record cannot be resolved into a DebtRecord."""


@dataclass(frozen=True)
class MinimumPaymentPolicy:
    rate: Decimal
    floor: Decimal

    def estimate(self, balance: Decimal) -> Decimal:
        return max(balance * self.rate, self.floor)


@dataclass(frozen=True)
class NormalizerPolicy:
    """Fallbacks used when a source omits an APR or a minimum payment.

    Keys of ``minimum_payments`` are the source kinds: ``credit``,
    ``student``, ``mortgage`` and ``custom``.
    """

    default_aprs: Mapping[str, Decimal] = field(default_factory=lambda: DEFAULT_APRS)
    minimum_payments: Mapping[str, MinimumPaymentPolicy] = field(
        default_factory=lambda: MappingProxyType(
            {
                "credit": MinimumPaymentPolicy(Decimal("0.02"), Decimal("25")),
                "student": MinimumPaymentPolicy(ZERO, Decimal("200")),
                "mortgage": MinimumPaymentPolicy(Decimal("0.01"), Decimal("25")),
                "custom": MinimumPaymentPolicy(Decimal("0.02"), Decimal("25")),
            }
        )
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "default_aprs", MappingProxyType(dict(self.default_aprs)))
        object.__setattr__(
            self, "minimum_payments", MappingProxyType(dict(self.minimum_payments))
        )

    def default_apr(self, debt_type: str) -> Decimal:
        normalized = normalize_debt_type(debt_type)
        if normalized in self.default_aprs:
            return self.default_aprs[normalized]
        return self.default_aprs["other"]


DEFAULT_POLICY = NormalizerPolicy()


@dataclass(frozen=True)
class DebtRecord:
    id: str
    name: str
    balance: Decimal
    apr: Decimal
    minimum_payment: Decimal
    debt_type: str = "other"
    is_custom: bool = False
    apr_source: str = "default"


@dataclass(frozen=True)
class AggregatedDebt:
    """A liability reported by the account aggregator."""

    account_id: str
    name: str
    debt_type: str
    source: str
    balance: Decimal
    explicit_apr: Optional[Decimal] = None
    minimum_payment: Optional[Decimal] = None


@dataclass(frozen=True)
class CustomDebt:
    """A debt entered manually by the user."""

    id: str
    name: str
    balance: Decimal
    apr: Optional[Decimal] = None
    minimum_payment: Optional[Decimal] = None
    debt_type: str = "other"


SourceDebt = Union[AggregatedDebt, CustomDebt]


def normalize_debt_type(value: Optional[str]) -> str:
    if not value:
        return "other"
    if not isinstance(value, str):
        raise DebtNormalizationError(f"Invalid debt_type: {value!r}")
    normalized = "_".join(value.strip().lower().split())
    if normalized not in DEBT_TYPES:
        return "other"
    return normalized


def parse_liabilities(liabilities: Optional[Mapping[str, Any]]) -> List[AggregatedDebt]:
    if not liabilities:
        return []
    liabilities = _require_mapping(liabilities, "liabilities")
    parsed: List[AggregatedDebt] = []
    for idx, item in enumerate(_require_list(liabilities.get("credit"), "credit")):
        parsed.append(_parse_credit(_require_mapping(item, f"credit[{idx}]"), idx))
    for idx, item in enumerate(_require_list(liabilities.get("student"), "student")):
        parsed.append(_parse_student(_require_mapping(item, f"student[{idx}]"), idx))
    for idx, item in enumerate(_require_list(liabilities.get("mortgage"), "mortgage")):
        parsed.append(_parse_mortgage(_require_mapping(item, f"mortgage[{idx}]"), idx))
    return parsed


def parse_custom_debt(item: Mapping[str, Any]) -> CustomDebt:
    item = _require_mapping(item, "custom debt")
    raw_id = item.get("id")
    if raw_id is None or str(raw_id) == "":
        raise DebtNormalizationError("Custom debt requires an id.")
    debt_id = str(raw_id)
    if not debt_id.startswith("custom_"):
        debt_id = f"custom_{debt_id}"
    balance = _coerce_amount(item.get("balance"), "balance")
    if balance is None:
        raise DebtNormalizationError(f"Custom debt {debt_id} requires a balance.")
    return CustomDebt(
        id=debt_id,
        name=_optional_text(item.get("name"), "name") or "Custom Debt",
        balance=balance,
        apr=_coerce_amount(item.get("apr"), "apr"),
        minimum_payment=_coerce_amount(item.get("min_payment"), "min_payment"),
        debt_type=normalize_debt_type(item.get("debt_type")),
    )


def normalize_debts(
    liabilities: Optional[Mapping[str, Any]],
    custom_debts: Iterable[Union[CustomDebt, Mapping[str, Any]]] = (),
    apr_overrides: Optional[Mapping[str, Union[Decimal, int, float, str]]] = None,
    policy: NormalizerPolicy = DEFAULT_POLICY,
) -> List[DebtRecord]:
    sources: List[SourceDebt] = list(parse_liabilities(liabilities))
    for item in custom_debts or ():
        sources.append(item if isinstance(item, CustomDebt) else parse_custom_debt(item))

    overrides = _coerce_overrides(apr_overrides)
    records: List[DebtRecord] = []
    for source in sources:
        record = to_debt_record(source, overrides, policy)
        if record.balance <= ZERO:
            continue
        records.append(record)
    return records


def to_debt_record(
    source: SourceDebt,
    overrides: Mapping[str, Decimal],
    policy: NormalizerPolicy = DEFAULT_POLICY,
) -> DebtRecord:
    if isinstance(source, AggregatedDebt):
        return _from_aggregated(source, overrides, policy)
    if isinstance(source, CustomDebt):
        return _from_custom(source, overrides, policy)
    raise TypeError(f"Unsupported debt source: {type(source).__name__}")


def _from_aggregated(
    debt: AggregatedDebt, overrides: Mapping[str, Decimal], policy: NormalizerPolicy
) -> DebtRecord:
    if debt.account_id in overrides:
        apr, apr_source = overrides[debt.account_id], "override"
    elif debt.explicit_apr is not None:
        apr, apr_source = debt.explicit_apr, "aggregator"
    else:
        apr, apr_source = policy.default_apr(debt.debt_type), "default"
    _check_apr(apr, debt.account_id)
    return DebtRecord(
        id=debt.account_id,
        name=debt.name,
        balance=debt.balance,
        apr=apr,
        minimum_payment=_resolve_minimum_payment(
            debt.minimum_payment, debt.balance, debt.source, debt.account_id, policy
        ),
        debt_type=normalize_debt_type(debt.debt_type),
        is_custom=False,
        apr_source=apr_source,
    )


def _from_custom(
    debt: CustomDebt, overrides: Mapping[str, Decimal], policy: NormalizerPolicy
) -> DebtRecord:
    if debt.id in overrides:
        apr, apr_source = overrides[debt.id], "override"
    elif debt.apr is not None:
        apr, apr_source = debt.apr, "custom"
    else:
        apr, apr_source = policy.default_apr(debt.debt_type), "default"
    _check_apr(apr, debt.id)
    return DebtRecord(
        id=debt.id,
        name=debt.name,
        balance=debt.balance,
        apr=apr,
        minimum_payment=_resolve_minimum_payment(
            debt.minimum_payment, debt.balance, "custom", debt.id, policy
        ),
        debt_type=normalize_debt_type(debt.debt_type),
        is_custom=True,
        apr_source=apr_source,
    )


def _resolve_minimum_payment(
    reported: Optional[Decimal],
    balance: Decimal,
    source: str,
    debt_id: str,
    policy: NormalizerPolicy,
) -> Decimal:
    if reported is not None and reported > ZERO:
        return reported
    try:
        estimator = policy.minimum_payments[source]
    except KeyError as exc:
        raise DebtNormalizationError(
            f"No minimum payment policy for source: {source}"
        ) from exc
    estimate = estimator.estimate(balance)
    if balance > ZERO and estimate <= ZERO:
        raise DebtNormalizationError(
            f"Minimum payment for {debt_id} resolved to zero."
        )
    return estimate


def _parse_credit(item: Mapping[str, Any], idx: int) -> AggregatedDebt:
    balance = _coerce_amount(item.get("last_statement_balance"), "last_statement_balance")
    if balance is None:
        current = _require_mapping(item.get("balances") or {}, "balances").get("current")
        balance = _coerce_amount(current, "balances.current")
    purchase_apr = None
    for entry in _require_list(item.get("aprs"), "aprs"):
        entry = _require_mapping(entry, "aprs entry")
        if entry.get("apr_type") == "purchase_apr":
            purchase_apr = _coerce_amount(entry.get("apr_percentage"), "apr_percentage")
            break
    return AggregatedDebt(
        account_id=_account_id(item, f"plaid_credit_{idx}"),
        name=_optional_text(item.get("name"), "name") or "Credit Card",
        debt_type="credit_card",
        source="credit",
        balance=balance or ZERO,
        explicit_apr=purchase_apr,
        minimum_payment=_coerce_amount(
            item.get("minimum_payment_amount"), "minimum_payment_amount"
        ),
    )


def _parse_student(item: Mapping[str, Any], idx: int) -> AggregatedDebt:
    principal = _coerce_amount(item.get("principal_balance"), "principal_balance") or ZERO
    interest = (
        _coerce_amount(item.get("outstanding_interest_amount"), "outstanding_interest_amount")
        or ZERO
    )
    return AggregatedDebt(
        account_id=_account_id(item, f"plaid_student_{idx}"),
        name=_optional_text(item.get("name"), "name")
        or _optional_text(item.get("loan_name"), "loan_name")
        or "Student Loan",
        debt_type="student_loan",
        source="student",
        balance=principal + interest,
        explicit_apr=_positive_or_none(
            _coerce_amount(item.get("interest_rate_percentage"), "interest_rate_percentage")
        ),
        minimum_payment=_coerce_amount(
            item.get("minimum_payment_amount"), "minimum_payment_amount"
        ),
    )


def _parse_mortgage(item: Mapping[str, Any], idx: int) -> AggregatedDebt:
    rate = _require_mapping(item.get("interest_rate") or {}, "interest_rate").get("percentage")
    return AggregatedDebt(
        account_id=_account_id(item, f"plaid_mortgage_{idx}"),
        name=_optional_text(item.get("name"), "name") or "Mortgage",
        debt_type="mortgage",
        source="mortgage",
        balance=_coerce_amount(
            item.get("outstanding_principal_balance"), "outstanding_principal_balance"
        )
        or ZERO,
        explicit_apr=_positive_or_none(_coerce_amount(rate, "interest_rate.percentage")),
        minimum_payment=_coerce_amount(
            item.get("next_monthly_payment"), "next_monthly_payment"
        ),
    )


def _coerce_overrides(
    apr_overrides: Optional[Mapping[str, Union[Decimal, int, float, str]]],
) -> Mapping[str, Decimal]:
    if not apr_overrides:
        return {}
    coerced = {}
    for account_id, value in apr_overrides.items():
        apr = _coerce_amount(value, "apr override")
        if apr is None:
            continue
        coerced[str(account_id)] = apr
    return coerced


def _require_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise DebtNormalizationError(f"{field_name} must be an object.")
    return value


def _require_list(value: Any, field_name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise DebtNormalizationError(f"{field_name} must be a list.")
    return value


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise DebtNormalizationError(f"Invalid {field_name}: {value!r}")
    return value.strip() or None


def _account_id(item: Mapping[str, Any], fallback: str) -> str:
    raw_id = item.get("account_id")
    if raw_id is None or raw_id == "":
        return fallback
    if not isinstance(raw_id, (str, int)) or isinstance(raw_id, bool):
        raise DebtNormalizationError(f"Invalid account_id: {raw_id!r}")
    return str(raw_id)


def _check_apr(apr: Decimal, debt_id: str) -> None:
    if apr < ZERO:
        raise DebtNormalizationError(f"APR for {debt_id} must not be negative.")


def _positive_or_none(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None or value <= ZERO:
        return None
    return value


def _coerce_amount(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise DebtNormalizationError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise DebtNormalizationError(f"Invalid {field_name}: {value!r}") from exc
    if not amount.is_finite():
        raise DebtNormalizationError(f"Invalid {field_name}: {value!r}")
    return amount
