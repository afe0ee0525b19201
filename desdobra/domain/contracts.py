from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List


@dataclass(frozen=True)
class CreateFactorInput:
    name: str
    code: str | None = None
    organization_id: int | None = None
    default_interest_rate: Decimal = Decimal("0")
    default_fee_rate: Decimal = Decimal("0")
    default_iof_rate: Decimal = Decimal("0")
    default_other_cost_rate: Decimal = Decimal("0")
    default_grace_days: int = 0
    default_auto_settle_buyback: bool = False
    notes: str | None = None


@dataclass(frozen=True)
class CreateFactorOperationInput:
    factor_id: int
    reference: str | None = None
    issue_date: str | None = None
    expected_settlement_date: str | None = None
    settlement_account_id: int | None = None
    notes: str | None = None


@dataclass(frozen=True)
class UpdateFactorOperationInput:
    notes: str | None = None
    expected_settlement_date: str | None = None
    settlement_account_id: int | None = None
    status: str | None = None

    def header_changes(self) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if self.notes is not None:
            changes["notes"] = self.notes
        if self.expected_settlement_date is not None:
            changes["expected_settlement_date"] = self.expected_settlement_date
        if self.settlement_account_id is not None:
            changes["settlement_account_id"] = self.settlement_account_id
        return changes


@dataclass(frozen=True)
class AddFactorOperationItemInput:
    action_type: str
    installment_id: int
    proposed_due_date: str | None = None
    buyback_settle_now: bool = False
    notes: str | None = None


@dataclass(frozen=True)
class FactorResponseInput:
    item_id: int
    response_status: str
    response_code: str | None = None
    response_message: str | None = None
    accepted_amount: Decimal | None = None
    adjusted_amount: Decimal | None = None
    adjusted_due_date: str | None = None
    fee_amount: Decimal = Decimal("0")
    interest_amount: Decimal = Decimal("0")
    iof_amount: Decimal = Decimal("0")
    other_cost_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class ApplyFactorResponsesInput:
    version_id: int
    responses: List[FactorResponseInput] = field(default_factory=list)


@dataclass(frozen=True)
class ConcludeFactorOperationInput:
    settlement_date: str | None = None
    notes: str | None = None
