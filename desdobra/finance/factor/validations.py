from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import FrozenSet


ITEM_ACTION_TYPES: FrozenSet[str] = frozenset({"discount", "buyback", "due_date_change"})
RESPONSE_STATUSES: FrozenSet[str] = frozenset({"pending", "accepted", "rejected", "adjusted"})
ACCEPTED_RESPONSE_STATUSES: FrozenSet[str] = frozenset({"accepted", "adjusted"})
ADJUSTMENT_RESPONSE_STATUSES: FrozenSet[str] = frozenset({"adjusted", "rejected"})
CUSTODY_STATUSES: FrozenSet[str] = frozenset({"own", "with_factor", "repurchased"})
OPEN_INSTALLMENT_STATUSES: FrozenSet[str] = frozenset({"OPEN", "PARTIAL", "OVERDUE"})

_DISCOUNTABLE_CUSTODY: FrozenSet[str] = frozenset({"own", "repurchased"})


@dataclass(frozen=True)
class EligibilityResult:
    ok: bool
    reason: str | None = None


def _amount(value) -> Decimal:
    try:
        return Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def validate_item_eligibility(
    *,
    action_type: str,
    installment_status: str | None,
    custody_status: str | None,
    amount_open,
    proposed_due_date: str | None = None,
) -> EligibilityResult:
    action = str(action_type or "").strip()
    if action not in ITEM_ACTION_TYPES:
        return EligibilityResult(False, f"Tipo de acao invalido: {action or '-'}")

    status = str(installment_status or "").strip().upper()
    if status not in OPEN_INSTALLMENT_STATUSES:
        return EligibilityResult(False, "Parcela nao esta em aberto")

    if _amount(amount_open) <= 0:
        return EligibilityResult(False, "Parcela sem saldo em aberto")

    custody = str(custody_status or "own").strip() or "own"
    if action == "discount" and custody not in _DISCOUNTABLE_CUSTODY:
        return EligibilityResult(False, "Parcela ja esta sob custodia do factor")

    if action == "buyback" and custody != "with_factor":
        return EligibilityResult(False, "Recompra exige parcela sob custodia do factor")

    if action == "due_date_change":
        if custody != "with_factor":
            return EligibilityResult(False, "Prorrogacao exige parcela sob custodia do factor")
        if not str(proposed_due_date or "").strip():
            return EligibilityResult(False, "Informe o novo vencimento proposto")

    return EligibilityResult(True)


def is_accepted_response(status: str | None) -> bool:
    return str(status or "").strip() in ACCEPTED_RESPONSE_STATUSES
