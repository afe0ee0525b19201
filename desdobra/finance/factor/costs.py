from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict


_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")
_MONTH_DAYS = Decimal("30")


def to_money(value) -> Decimal:
    return _to_decimal(value, "value").quantize(_CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise ValueError(f"Invalid {field_name}: expected a number") from exc
    if not parsed.is_finite():
        raise ValueError(f"Invalid {field_name}: expected non-negative finite number")
    return parsed


def _non_negative(value, field_name: str) -> Decimal:
    parsed = _to_decimal(value, field_name)
    if parsed < 0:
        raise ValueError(f"Invalid {field_name}: expected non-negative finite number")
    return parsed


@dataclass(frozen=True)
class FactorRates:
    interest_rate: Decimal = Decimal("0")
    fee_rate: Decimal = Decimal("0")
    iof_rate: Decimal = Decimal("0")
    other_cost_rate: Decimal = Decimal("0")
    grace_days: int = 0

    @classmethod
    def from_factor(cls, factor: Dict[str, object]) -> "FactorRates":
        return cls(
            interest_rate=_non_negative(factor.get("default_interest_rate") or 0, "interest_rate"),
            fee_rate=_non_negative(factor.get("default_fee_rate") or 0, "fee_rate"),
            iof_rate=_non_negative(factor.get("default_iof_rate") or 0, "iof_rate"),
            other_cost_rate=_non_negative(factor.get("default_other_cost_rate") or 0, "other_cost_rate"),
            grace_days=int(_non_negative(factor.get("default_grace_days") or 0, "grace_days")),
        )


@dataclass(frozen=True)
class DiscountCostBreakdown:
    days_to_maturity: int
    billable_days: int
    interest_amount: Decimal
    fee_amount: Decimal
    iof_amount: Decimal
    other_cost_amount: Decimal
    total_cost_amount: Decimal
    net_amount: Decimal

    def to_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Decimal):
                payload[key] = float(value)
        return payload


@dataclass(frozen=True)
class OperationTotals:
    gross_amount: Decimal
    costs_amount: Decimal
    net_amount: Decimal

    def to_dict(self) -> Dict[str, float]:
        return {
            "gross_amount": float(self.gross_amount),
            "costs_amount": float(self.costs_amount),
            "net_amount": float(self.net_amount),
        }


def days_to_maturity(issue_date: date, due_date: date) -> int:
    return max(0, (due_date - issue_date).days)


def calculate_discount_costs(
    base_amount,
    issue_date: date,
    due_date: date,
    rates: FactorRates,
) -> DiscountCostBreakdown:
    base = _non_negative(base_amount, "base_amount")
    interest_rate = _non_negative(rates.interest_rate, "interest_rate")
    fee_rate = _non_negative(rates.fee_rate, "fee_rate")
    iof_rate = _non_negative(rates.iof_rate, "iof_rate")
    other_cost_rate = _non_negative(rates.other_cost_rate, "other_cost_rate")
    grace_days = int(_non_negative(rates.grace_days, "grace_days"))

    days = days_to_maturity(issue_date, due_date)
    billable_days = max(0, days - grace_days)

    interest_amount = to_money(base * (interest_rate / _HUNDRED) * (Decimal(billable_days) / _MONTH_DAYS))
    fee_amount = to_money(base * (fee_rate / _HUNDRED))
    iof_amount = to_money(base * (iof_rate / _HUNDRED))
    other_cost_amount = to_money(base * (other_cost_rate / _HUNDRED))
    total_cost_amount = to_money(interest_amount + fee_amount + iof_amount + other_cost_amount)
    net_amount = to_money(max(Decimal("0"), base - total_cost_amount))

    return DiscountCostBreakdown(
        days_to_maturity=days,
        billable_days=billable_days,
        interest_amount=interest_amount,
        fee_amount=fee_amount,
        iof_amount=iof_amount,
        other_cost_amount=other_cost_amount,
        total_cost_amount=total_cost_amount,
        net_amount=net_amount,
    )


def aggregate_operation_totals(
    gross_amount,
    interest_amount=0,
    fee_amount=0,
    iof_amount=0,
    other_cost_amount=0,
) -> OperationTotals:
    gross = _non_negative(gross_amount, "gross_amount")
    costs_amount = to_money(
        _non_negative(interest_amount, "interest_amount")
        + _non_negative(fee_amount, "fee_amount")
        + _non_negative(iof_amount, "iof_amount")
        + _non_negative(other_cost_amount, "other_cost_amount")
    )
    return OperationTotals(
        gross_amount=to_money(gross),
        costs_amount=costs_amount,
        net_amount=to_money(max(Decimal("0"), gross - costs_amount)),
    )
