from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from desdobra.domain.contracts import (
    AddFactorOperationItemInput,
    ApplyFactorResponsesInput,
    ConcludeFactorOperationInput,
    CreateFactorInput,
    CreateFactorOperationInput,
    FactorResponseInput,
    UpdateFactorOperationInput,
)
from desdobra.errors import UserActionError, field_error
from desdobra.finance.factor.costs import (
    FactorRates,
    aggregate_operation_totals,
    calculate_discount_costs,
    to_money,
)
from desdobra.finance.factor.package import build_operation_package, package_filename
from desdobra.finance.factor.state_machine import (
    FactorOperationState,
    InvalidTransitionError,
    allowed_next_states,
    assert_transition,
    can_edit_operation,
    can_receive_responses,
    parse_state,
    validate_transition,
)
from desdobra.finance.factor.validations import (
    ADJUSTMENT_RESPONSE_STATUSES,
    OPEN_INSTALLMENT_STATUSES,
    is_accepted_response,
    validate_item_eligibility,
)
from desdobra.infrastructure.repositories.factor import FactorRepository
from desdobra.observability import observe_factor_transition
from desdobra.ui_strings import action_label, status_label


class FactorServiceError(UserActionError):
    def __init__(
        self,
        code: str,
        http_status: int,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message_key=code,
            http_status=http_status,
            critical=False,
            details=details,
            payload=payload,
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money(value: Any) -> Decimal:
    return to_money(value if value is not None else 0)


def _parse_date(value: Any) -> date:
    return date.fromisoformat(str(value)[:10])


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _latest_response_by_item(responses: List[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    latest: Dict[int, Dict[str, Any]] = {}
    for response in responses:
        latest.setdefault(int(response["operation_item_id"]), response)
    return latest


class FactorService:
    def __init__(self, tenant_id: str, user_id: str | None = None, repository: FactorRepository | None = None) -> None:
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.repository = repository or FactorRepository(tenant_id=tenant_id)
        self._logger = logging.getLogger("desdobra.factor")

    # Factors

    def create_factor(self, db, create_input: CreateFactorInput) -> dict:
        factor = self.repository.create_factor(
            db,
            data={
                "organization_id": create_input.organization_id,
                "name": create_input.name,
                "code": create_input.code,
                "default_interest_rate": create_input.default_interest_rate,
                "default_fee_rate": create_input.default_fee_rate,
                "default_iof_rate": create_input.default_iof_rate,
                "default_other_cost_rate": create_input.default_other_cost_rate,
                "default_grace_days": create_input.default_grace_days,
                "default_auto_settle_buyback": create_input.default_auto_settle_buyback,
                "notes": create_input.notes,
            },
            user_id=self.user_id,
        )
        self._audit(
            db,
            "factor_created",
            "factors",
            factor["id"],
            {"factor_name": factor["name"], "organization_id": factor.get("organization_id")},
        )
        return factor

    def list_factors(self, db) -> list[dict]:
        return self.repository.list_factors(db)

    # Operations

    def list_operations(self, db, *, status: str | None = None, factor_id: int | None = None) -> list[dict]:
        operations = self.repository.list_operations(db, status=status, factor_id=factor_id)
        for operation in operations:
            operation["status_label"] = status_label("factor_operacao", operation.get("status"))
        return operations

    def create_operation(self, db, create_input: CreateFactorOperationInput, *, currency: str = "BRL") -> dict:
        factor = self._require_factor(db, create_input.factor_id)
        operation = self.repository.create_operation(
            db,
            data={
                "factor_id": factor["id"],
                "reference": create_input.reference,
                "issue_date": create_input.issue_date or date.today().isoformat(),
                "expected_settlement_date": create_input.expected_settlement_date,
                "settlement_account_id": create_input.settlement_account_id,
                "currency": currency,
                "notes": create_input.notes,
            },
            user_id=self.user_id,
        )
        self._audit(
            db,
            "factor_operation_created",
            "factor_operations",
            operation["id"],
            {"operation_number": operation["operation_number"], "factor_id": operation["factor_id"]},
        )
        return operation

    def update_operation(self, db, operation_id: int, update_input: UpdateFactorOperationInput) -> dict:
        operation = self._require_operation(db, operation_id)
        changes = update_input.header_changes()

        if changes:
            if not can_edit_operation(operation["status"]):
                raise FactorServiceError(
                    "operation_not_editable",
                    409,
                    details=f"operation {operation_id} is {operation['status']}",
                    payload={"status": operation["status"]},
                )
            operation = self.repository.update_operation(db, operation_id, changes)
            self._audit(db, "factor_operation_updated", "factor_operations", operation_id, changes)

        if update_input.status is not None:
            operation = self.transition_operation(db, operation_id, update_input.status)
        return operation

    def transition_operation(self, db, operation_id: int, to_status: str) -> dict:
        """Move the operation to ``to_status``.

        ``sent_to_factor`` and ``completed`` carry side effects (a new version,
        postings) so they are routed through ``send_to_factor`` and
        ``conclude_operation`` after the transition is asserted.
        """
        operation = self._require_operation(db, operation_id)
        current = operation["status"]
        self._assert_transition(operation_id, current, to_status)
        if current == to_status:
            return operation

        target = parse_state(to_status)
        if target is FactorOperationState.SENT_TO_FACTOR:
            return self.send_to_factor(db, operation_id)["operation"]
        if target is FactorOperationState.COMPLETED:
            return self.conclude_operation(db, operation_id, ConcludeFactorOperationInput())["operation"]

        updated = self._write_status(db, operation, to_status)
        self._audit(
            db,
            "factor_operation_status_changed",
            "factor_operations",
            operation_id,
            {"from_status": current, "to_status": to_status},
        )
        return updated

    def check_transition(self, db, operation_id: int, to_status: str) -> dict:
        operation = self._require_operation(db, operation_id)
        current = operation["status"]
        result = validate_transition(current, to_status)
        return {
            "operation_id": operation_id,
            "from_status": current,
            "to_status": to_status,
            "known_status": parse_state(to_status) is not None,
            "allowed_next_states": allowed_next_states(current),
            **result.to_payload(),
        }

    def get_operation_detail(self, db, operation_id: int) -> dict:
        operation = self._require_operation(db, operation_id)
        factor = self.repository.get_factor(db, operation["factor_id"])
        items = self.repository.list_items(db, operation_id)
        versions = self.repository.list_versions(db, operation_id)
        responses = self.repository.list_responses(db, operation_id)
        postings = self.repository.list_postings(db, operation_id)
        response_by_item = _latest_response_by_item(responses)
        for item in items:
            item["action_label"] = action_label(item["action_type"])

        discount_amount = Decimal("0")
        buyback_amount = Decimal("0")
        factor_costs_amount = Decimal("0")
        for item in items:
            response = response_by_item.get(int(item["id"]))
            if not response or not is_accepted_response(response["response_status"]):
                continue
            effective = _money(self._effective_amount(item, response))
            if item["action_type"] == "discount":
                discount_amount += effective
                factor_costs_amount += _money(response.get("total_cost_amount"))
            elif item["action_type"] == "buyback":
                buyback_amount += effective

        status = operation["status"]
        return {
            "operation": {**operation, "status_label": status_label("factor_operacao", status)},
            "factor": factor,
            "items": items,
            "versions": versions,
            "responses": responses,
            "postings": postings,
            "posting_preview": {
                "discount_amount": float(to_money(discount_amount)),
                "buyback_amount": float(to_money(buyback_amount)),
                "factor_costs_amount": float(to_money(factor_costs_amount)),
            },
            "allowed_next_states": allowed_next_states(status),
            "can_edit": can_edit_operation(status),
            "can_receive_responses": can_receive_responses(status),
        }

    # Items

    def add_operation_item(self, db, operation_id: int, item_input: AddFactorOperationItemInput) -> dict:
        operation = self._require_operation(db, operation_id)
        self._require_editable(operation, "operation_not_editable")

        installment = self.repository.get_installment(db, item_input.installment_id)
        if installment is None:
            raise FactorServiceError(
                "installment_not_found",
                404,
                payload={"installment_id": item_input.installment_id},
            )

        eligibility = validate_item_eligibility(
            action_type=item_input.action_type,
            installment_status=installment.get("status"),
            custody_status=installment.get("factor_custody_status"),
            amount_open=installment.get("amount_open"),
            proposed_due_date=item_input.proposed_due_date,
        )
        if not eligibility.ok:
            raise FactorServiceError(
                "item_not_eligible",
                422,
                details=eligibility.reason,
                payload={"installment_id": item_input.installment_id, "reason": eligibility.reason},
            )

        item = self.repository.create_item(
            db,
            data={
                "operation_id": operation_id,
                "line_no": self.repository.next_line_no(db, operation_id),
                "action_type": item_input.action_type,
                "ar_installment_id": installment["id"],
                "ar_title_id": installment["ar_title_id"],
                "sales_document_id": installment.get("sales_document_id"),
                "customer_id": installment.get("customer_id"),
                "installment_number_snapshot": installment["installment_number"],
                "due_date_snapshot": installment["due_date"],
                "amount_snapshot": _money(installment["amount_open"]),
                "proposed_due_date": item_input.proposed_due_date,
                "buyback_settle_now": item_input.buyback_settle_now,
                "notes": item_input.notes,
            },
            user_id=self.user_id,
        )
        self._audit(
            db,
            "factor_item_added",
            "factor_operation_items",
            item["id"],
            {
                "operation_id": operation_id,
                "action_type": item["action_type"],
                "installment_id": item["ar_installment_id"],
            },
        )
        return item

    def remove_operation_item(self, db, operation_id: int, item_id: int) -> None:
        operation = self._require_operation(db, operation_id)
        self._require_editable(operation, "operation_not_editable")

        if self.repository.delete_item(db, operation_id, item_id) == 0:
            raise FactorServiceError("item_not_found", 404, payload={"item_id": item_id})
        self._audit(db, "factor_item_removed", "factor_operation_items", item_id, {"operation_id": operation_id})

    def list_eligible_installments(self, db, query_text: str | None = None, *, limit: int = 300) -> list[dict]:
        return self.repository.list_open_installments(
            db,
            statuses=OPEN_INSTALLMENT_STATUSES,
            query_text=query_text,
            limit=limit,
        )

    def list_installments_with_factor(self, db, *, limit: int = 300) -> list[dict]:
        return self.repository.list_installments_with_factor(db, statuses=OPEN_INSTALLMENT_STATUSES, limit=limit)

    # Versions

    def create_version(self, db, operation_id: int) -> dict:
        operation = self._require_operation(db, operation_id)
        self._require_editable(operation, "operation_version_invalid_status")

        items = self.repository.list_items(db, operation_id)
        if not items:
            raise FactorServiceError("operation_empty", 422, payload={"operation_id": operation_id})

        factor = self._require_factor(db, operation["factor_id"])
        rates = FactorRates.from_factor(factor)
        issue_date = _parse_date(operation["issue_date"])

        gross = Decimal("0")
        interest = Decimal("0")
        fee = Decimal("0")
        iof = Decimal("0")
        other = Decimal("0")
        snapshot_items = []
        for item in items:
            base_amount = _money(item["amount_snapshot"])
            gross += base_amount
            estimated = None
            if item["action_type"] == "discount":
                cost = calculate_discount_costs(base_amount, issue_date, _parse_date(item["due_date_snapshot"]), rates)
                interest += cost.interest_amount
                fee += cost.fee_amount
                iof += cost.iof_amount
                other += cost.other_cost_amount
                estimated = cost.to_dict()
            snapshot_items.append({**item, "estimated_costs": estimated})

        totals = aggregate_operation_totals(gross, interest, fee, iof, other)
        version_number = int(operation.get("version_counter") or 0) + 1
        version = self.repository.create_version(
            db,
            data={
                "operation_id": operation_id,
                "version_number": version_number,
                "source_status": operation["status"],
                "total_items": len(items),
                "gross_amount": totals.gross_amount,
                "costs_amount": totals.costs_amount,
                "net_amount": totals.net_amount,
                "snapshot_json": {
                    "generated_at": _now_iso(),
                    "operation_id": operation_id,
                    "operation_number": operation["operation_number"],
                    "factor_id": factor["id"],
                    "factor_name": factor["name"],
                    "items": snapshot_items,
                    "totals": totals.to_dict(),
                },
            },
            user_id=self.user_id,
        )
        updated = self.repository.update_operation(
            db,
            operation_id,
            {
                "version_counter": version_number,
                "current_version_id": version["id"],
                "gross_amount": totals.gross_amount,
                "costs_amount": totals.costs_amount,
                "net_amount": totals.net_amount,
            },
        )
        self._audit(
            db,
            "factor_version_created",
            "factor_operation_versions",
            version["id"],
            {"operation_id": operation_id, "version_number": version_number, "total_items": len(items)},
        )
        return {"operation": updated, "version": version}

    def send_to_factor(self, db, operation_id: int) -> dict:
        operation = self._require_operation(db, operation_id)
        self._assert_transition(operation_id, operation["status"], FactorOperationState.SENT_TO_FACTOR.value)

        version_result = self.create_version(db, operation_id)
        version = version_result["version"]
        sent = self._write_status(
            db,
            version_result["operation"],
            FactorOperationState.SENT_TO_FACTOR.value,
            {"sent_at": _now_iso(), "sent_by": self.user_id},
        )
        self._audit(
            db,
            "factor_operation_sent",
            "factor_operations",
            operation_id,
            {
                "version_id": version["id"],
                "version_number": version["version_number"],
                "total_items": version["total_items"],
                "totals": {
                    "gross_amount": version["gross_amount"],
                    "costs_amount": version["costs_amount"],
                    "net_amount": version["net_amount"],
                },
            },
        )
        return {"operation": sent, "version": version}

    # Responses

    def apply_responses(self, db, operation_id: int, responses_input: ApplyFactorResponsesInput) -> dict:
        operation = self._require_operation(db, operation_id)
        if not can_receive_responses(operation["status"]):
            raise FactorServiceError(
                "operation_response_invalid_status",
                409,
                payload={"status": operation["status"]},
            )

        version = self.repository.get_version(db, operation_id, responses_input.version_id)
        if version is None:
            raise FactorServiceError("version_not_found", 404, payload={"version_id": responses_input.version_id})

        items_by_id = {int(item["id"]): item for item in self.repository.list_items(db, operation_id)}
        for index, response in enumerate(responses_input.responses):
            if response.item_id not in items_by_id:
                raise FactorServiceError(
                    "item_not_in_operation",
                    422,
                    details=f"item {response.item_id} does not belong to operation {operation_id}",
                    payload={"item_id": response.item_id},
                )
            if response.response_status == "adjusted" and response.adjusted_amount is None and response.adjusted_due_date is None:
                raise field_error(f"responses.{index}", message_key="adjusted_response_requires_value")

        has_adjustments = False
        for response in responses_input.responses:
            item = items_by_id[response.item_id]
            stored = self.repository.upsert_response(
                db,
                data={
                    "operation_id": operation_id,
                    "version_id": version["id"],
                    "operation_item_id": item["id"],
                    "response_status": response.response_status,
                    "response_code": response.response_code,
                    "response_message": response.response_message,
                    "accepted_amount": response.accepted_amount,
                    "adjusted_amount": response.adjusted_amount,
                    "adjusted_due_date": response.adjusted_due_date,
                    "fee_amount": response.fee_amount,
                    "interest_amount": response.interest_amount,
                    "iof_amount": response.iof_amount,
                    "other_cost_amount": response.other_cost_amount,
                    "total_cost_amount": self._response_cost_total(response),
                },
                user_id=self.user_id,
            )
            self.repository.update_item_response(
                db,
                item["id"],
                status=stored["response_status"],
                final_amount=_money(
                    _first_present(stored.get("adjusted_amount"), stored.get("accepted_amount"), item["amount_snapshot"])
                ),
                final_due_date=_first_present(
                    stored.get("adjusted_due_date"),
                    item.get("proposed_due_date"),
                    item["due_date_snapshot"],
                ),
            )
            if stored["response_status"] in ADJUSTMENT_RESPONSE_STATUSES:
                has_adjustments = True

        next_status = (
            FactorOperationState.IN_ADJUSTMENT.value if has_adjustments else FactorOperationState.SENT_TO_FACTOR.value
        )
        stamp = {"last_response_at": _now_iso()}
        if next_status != operation["status"]:
            updated = self._write_status(db, operation, next_status, stamp)
        else:
            updated = self.repository.update_operation(db, operation_id, stamp)

        self._audit(
            db,
            "factor_response_applied",
            "factor_operations",
            operation_id,
            {
                "version_id": version["id"],
                "responses": len(responses_input.responses),
                "status_after": next_status,
            },
        )
        return updated

    # Conclusion

    def conclude_operation(self, db, operation_id: int, conclude_input: ConcludeFactorOperationInput) -> dict:
        operation = self._require_operation(db, operation_id)
        if operation["status"] == FactorOperationState.COMPLETED.value:
            return {"operation": operation, "idempotent": True, "postings_created": 0}

        if not can_receive_responses(operation["status"]):
            raise FactorServiceError(
                "operation_conclude_invalid_status",
                409,
                payload={"status": operation["status"]},
            )
        if not operation.get("current_version_id"):
            raise FactorServiceError("missing_version", 422, payload={"operation_id": operation_id})

        factor = self._require_factor(db, operation["factor_id"])
        items = self.repository.list_items(db, operation_id)
        response_by_item = _latest_response_by_item(self.repository.list_responses(db, operation_id))
        missing = [int(item["id"]) for item in items if int(item["id"]) not in response_by_item]
        if missing:
            raise FactorServiceError("missing_item_response", 422, payload={"item_ids": missing})

        now_iso = _now_iso()
        total_costs = Decimal("0")
        postings_created = 0
        for item in items:
            response = response_by_item[int(item["id"])]
            if not is_accepted_response(response["response_status"]):
                continue

            effective_amount = _money(self._effective_amount(item, response))
            total_costs += _money(response.get("total_cost_amount"))
            action_type = item["action_type"]

            if action_type == "discount":
                self.repository.update_installment(
                    db,
                    item["ar_installment_id"],
                    {
                        "factor_custody_status": "with_factor",
                        "factor_id": operation["factor_id"],
                        "factor_operation_item_id": item["id"],
                        "factor_assigned_at": now_iso,
                    },
                )
                postings_created += self._post(
                    db,
                    operation_id,
                    posting_type="ar_discount_settlement",
                    posting_key=f"discount:{item['id']}",
                    amount=effective_amount,
                    ar_title_id=item["ar_title_id"],
                    metadata={"operation_item_id": item["id"], "action_type": action_type},
                )
            elif action_type == "buyback":
                self.repository.update_installment(
                    db,
                    item["ar_installment_id"],
                    {
                        "factor_custody_status": "repurchased",
                        "factor_operation_item_id": item["id"],
                        "factor_released_at": now_iso,
                    },
                )
                postings_created += self._post(
                    db,
                    operation_id,
                    posting_type="ap_buyback",
                    posting_key=f"buyback:{item['id']}",
                    amount=effective_amount,
                    ar_title_id=item["ar_title_id"],
                    metadata={"operation_item_id": item["id"], "settle_now": bool(item.get("buyback_settle_now"))},
                )
            elif action_type == "due_date_change":
                final_due_date = _first_present(
                    response.get("adjusted_due_date"),
                    item.get("final_due_date"),
                    item.get("proposed_due_date"),
                )
                if not final_due_date:
                    raise FactorServiceError("missing_final_due_date", 422, payload={"item_id": item["id"]})
                self.repository.update_installment(
                    db,
                    item["ar_installment_id"],
                    {"due_date": final_due_date, "factor_operation_item_id": item["id"]},
                )

        total_costs = to_money(total_costs)
        cost_key = f"cost:{operation_id}"
        existing_keys = {posting["posting_key"] for posting in self.repository.list_postings(db, operation_id)}
        if total_costs > 0 and factor.get("organization_id") and cost_key not in existing_keys:
            settlement_date = conclude_input.settlement_date or operation["issue_date"]
            ap_title_id = self.repository.create_ap_title(
                db,
                supplier_id=factor["organization_id"],
                amount_total=total_costs,
                issue_date=settlement_date,
                document_number=f"FACTOR-{operation['operation_number']}",
                description=f"Custos operacao factor #{operation['operation_number']}",
            )
            self.repository.create_ap_installment(db, ap_title_id=ap_title_id, amount=total_costs, due_date=settlement_date)
            postings_created += self._post(
                db,
                operation_id,
                posting_type="ap_factor_cost",
                posting_key=cost_key,
                amount=total_costs,
                ap_title_id=ap_title_id,
                metadata={"operation_number": operation["operation_number"]},
            )

        completed = self._write_status(
            db,
            operation,
            FactorOperationState.COMPLETED.value,
            {
                "completed_at": now_iso,
                "completed_by": self.user_id,
                "notes": conclude_input.notes or operation.get("notes"),
            },
        )
        self._audit(
            db,
            "factor_operation_completed",
            "factor_operations",
            operation_id,
            {
                "operation_number": operation["operation_number"],
                "total_costs": float(total_costs),
                "item_count": len(items),
            },
        )
        return {"operation": completed, "idempotent": False, "postings_created": postings_created}

    # Demo data

    def seed_demo_data(self, db) -> dict:
        """Factor plus three open AR installments, for testing and development."""
        self.repository.ensure_tenant(db)
        factor_org_id = self.repository.create_organization(
            db, name="Factor Demo Fomento Mercantil", tax_id="00000000000191"
        )
        customer_id = self.repository.create_organization(db, name="Cliente Demo Ltda", tax_id="11111111000111")
        factor = self.repository.create_factor(
            db,
            data={
                "organization_id": factor_org_id,
                "name": "Factor Demo",
                "code": "FDEMO",
                "default_interest_rate": 2,
                "default_fee_rate": 0.5,
                "default_iof_rate": 0.38,
                "default_other_cost_rate": 0,
                "default_grace_days": 0,
            },
            user_id=self.user_id,
        )

        today = date.today()
        installment_ids = []
        for index in range(1, 4):
            amount = 1000 * index
            title_id = self.repository.create_ar_title(
                db,
                customer_id=customer_id,
                document_number=f"NF-DEMO-{index:04d}",
                amount_total=amount,
                issue_date=today.isoformat(),
            )
            installment_ids.append(
                self.repository.create_ar_installment(
                    db,
                    ar_title_id=title_id,
                    installment_number=1,
                    due_date=(today + timedelta(days=30 * index)).isoformat(),
                    amount=amount,
                )
            )
        return {"factor_id": factor["id"], "installment_ids": installment_ids}

    # Package

    def build_operation_package(self, db, operation_id: int) -> Tuple[str, bytes]:
        detail = self.get_operation_detail(db, operation_id)
        filename = package_filename(detail["operation"]["operation_number"])
        return filename, build_operation_package(detail)

    # Internals

    def _require_operation(self, db, operation_id: int) -> dict:
        operation = self.repository.get_operation(db, operation_id)
        if operation is None:
            raise FactorServiceError("operation_not_found", 404, payload={"operation_id": operation_id})
        return operation

    def _require_factor(self, db, factor_id: int) -> dict:
        factor = self.repository.get_factor(db, factor_id)
        if factor is None:
            raise FactorServiceError("factor_not_found", 404, payload={"factor_id": factor_id})
        return factor

    @staticmethod
    def _require_editable(operation: dict, code: str) -> None:
        if not can_edit_operation(operation["status"]):
            raise FactorServiceError(code, 409, payload={"status": operation["status"]})

    @staticmethod
    def _effective_amount(item: dict, response: dict) -> Any:
        return _first_present(
            response.get("adjusted_amount"),
            response.get("accepted_amount"),
            item.get("final_amount"),
            item.get("amount_snapshot"),
        )

    @staticmethod
    def _response_cost_total(response: FactorResponseInput) -> Decimal:
        return to_money(
            response.fee_amount + response.interest_amount + response.iof_amount + response.other_cost_amount
        )

    def _assert_transition(self, operation_id: int, from_status: str, to_status: str) -> None:
        try:
            assert_transition(from_status, to_status)
        except InvalidTransitionError as exc:
            observe_factor_transition(from_status, to_status, accepted=False)
            self._logger.warning(
                "factor_operation_transition_rejected",
                extra={
                    "tenant_id": self.tenant_id,
                    "operation_id": operation_id,
                    "from_status": exc.from_state,
                    "to_status": exc.to_state,
                    "reason": exc.reason,
                },
            )
            raise

    def _write_status(self, db, operation: dict, to_status: str, changes: Dict[str, Any] | None = None) -> dict:
        operation_id = int(operation["id"])
        from_status = operation["status"]
        self._assert_transition(operation_id, from_status, to_status)

        written = self.repository.update_operation_status(
            db,
            operation_id,
            expected_status=from_status,
            new_status=to_status,
            changes=changes,
        )
        if not written:
            raise FactorServiceError(
                "stale_operation_status",
                409,
                details=f"operation {operation_id} is no longer {from_status}",
                payload={"expected_status": from_status},
            )

        observe_factor_transition(from_status, to_status, accepted=True)
        self._logger.info(
            "factor_operation_transition",
            extra={
                "tenant_id": self.tenant_id,
                "user_id": self.user_id,
                "operation_id": operation_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )
        return self.repository.get_operation(db, operation_id)

    def _post(self, db, operation_id: int, *, posting_type: str, posting_key: str, amount: Decimal, **extra: Any) -> int:
        created = self.repository.create_posting(
            db,
            data={
                "operation_id": operation_id,
                "posting_type": posting_type,
                "posting_key": posting_key,
                "amount": amount,
                "ar_title_id": extra.get("ar_title_id"),
                "ap_title_id": extra.get("ap_title_id"),
                "metadata": extra.get("metadata"),
            },
            user_id=self.user_id,
        )
        return 1 if created else 0

    def _audit(self, db, action: str, entity_type: str, entity_id: Any, details: Dict[str, Any]) -> None:
        self.repository.insert_audit_log(
            db,
            user_id=self.user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
