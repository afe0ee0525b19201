"""Request payload parsing for the factor API.

Parsers accept camelCase (frontend) and snake_case keys and raise
``ValidationError`` with the offending ``field`` in the payload.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

from desdobra.domain.contracts import (
    AddFactorOperationItemInput,
    ApplyFactorResponsesInput,
    ConcludeFactorOperationInput,
    CreateFactorInput,
    CreateFactorOperationInput,
    FactorResponseInput,
    UpdateFactorOperationInput,
)
from desdobra.errors import ValidationError, field_error
from desdobra.finance.factor.state_machine import parse_state
from desdobra.finance.factor.validations import ITEM_ACTION_TYPES, RESPONSE_STATUSES


_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MISSING = object()


def _camel(key: str) -> str:
    head, *tail = key.split("_")
    return head + "".join(part.capitalize() for part in tail)


def _raw(payload: Mapping[str, Any], key: str, default: Any = _MISSING) -> Any:
    if key in payload:
        return payload[key]
    camel = _camel(key)
    if camel in payload:
        return payload[camel]
    return None if default is _MISSING else default


def _text(payload: Mapping[str, Any], key: str, *, max_len: int, min_len: int = 0, required: bool = False) -> str | None:
    value = _raw(payload, key)
    if value is None:
        if required:
            raise field_error(key)
        return None
    if not isinstance(value, (str, int)):
        raise field_error(key)
    text = str(value).strip()
    if not text:
        if required:
            raise field_error(key)
        return None
    if len(text) < min_len or len(text) > max_len:
        raise field_error(key, details=f"{key} length must be between {min_len} and {max_len}")
    return text


def _id(payload: Mapping[str, Any], key: str, *, required: bool = False) -> int | None:
    value = _raw(payload, key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise field_error(key)
        return None
    if isinstance(value, bool):
        raise field_error(key)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise field_error(key) from None
    if parsed <= 0:
        raise field_error(key)
    return parsed


def _decimal(
    payload: Mapping[str, Any],
    key: str,
    *,
    default: Decimal | None = None,
    max_value: Decimal | None = None,
) -> Decimal | None:
    value = _raw(payload, key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise field_error(key)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise field_error(key) from None
    if not parsed.is_finite() or parsed < 0:
        raise field_error(key)
    if max_value is not None and parsed > max_value:
        raise field_error(key, details=f"{key} must be <= {max_value}")
    return parsed


def _int_range(payload: Mapping[str, Any], key: str, *, low: int, high: int, default: int = 0) -> int:
    value = _raw(payload, key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise field_error(key)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise field_error(key) from None
    if parsed < low or parsed > high:
        raise field_error(key, details=f"{key} must be between {low} and {high}")
    return parsed


def _bool(payload: Mapping[str, Any], key: str, default: bool = False) -> bool:
    value = _raw(payload, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise field_error(key)


def _date(payload: Mapping[str, Any], key: str, *, required: bool = False) -> str | None:
    value = _raw(payload, key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise field_error(key)
        return None
    text = str(value).strip()
    if not _DATE_PATTERN.match(text):
        raise field_error(key, details=f"{key} must be YYYY-MM-DD")
    try:
        date.fromisoformat(text)
    except ValueError:
        raise field_error(key, details=f"{key} must be a valid date") from None
    return text


def _choice(payload: Mapping[str, Any], key: str, choices, *, required: bool = True) -> str | None:
    value = _raw(payload, key)
    text = str(value or "").strip()
    if not text:
        if required:
            raise field_error(key)
        return None
    if text not in choices:
        raise field_error(key, details=f"{key} must be one of {sorted(choices)}")
    return text


def _ensure_mapping(payload: Any) -> Dict[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise field_error("body", details="JSON object expected")
    return payload


_RATE_CEILING = Decimal("100")


def parse_create_factor(payload: Any) -> CreateFactorInput:
    data = _ensure_mapping(payload)
    return CreateFactorInput(
        name=_text(data, "name", min_len=2, max_len=120, required=True),
        code=_text(data, "code", max_len=40),
        organization_id=_id(data, "organization_id"),
        default_interest_rate=_decimal(data, "default_interest_rate", default=Decimal("0"), max_value=_RATE_CEILING),
        default_fee_rate=_decimal(data, "default_fee_rate", default=Decimal("0"), max_value=_RATE_CEILING),
        default_iof_rate=_decimal(data, "default_iof_rate", default=Decimal("0"), max_value=_RATE_CEILING),
        default_other_cost_rate=_decimal(data, "default_other_cost_rate", default=Decimal("0"), max_value=_RATE_CEILING),
        default_grace_days=_int_range(data, "default_grace_days", low=0, high=365),
        default_auto_settle_buyback=_bool(data, "default_auto_settle_buyback"),
        notes=_text(data, "notes", max_len=1000),
    )


def parse_create_operation(payload: Any) -> CreateFactorOperationInput:
    data = _ensure_mapping(payload)
    return CreateFactorOperationInput(
        factor_id=_id(data, "factor_id", required=True),
        reference=_text(data, "reference", min_len=1, max_len=80),
        issue_date=_date(data, "issue_date"),
        expected_settlement_date=_date(data, "expected_settlement_date"),
        settlement_account_id=_id(data, "settlement_account_id"),
        notes=_text(data, "notes", max_len=1000),
    )


def parse_update_operation(payload: Any) -> UpdateFactorOperationInput:
    data = _ensure_mapping(payload)
    status = _text(data, "status", max_len=40)
    if status is not None and parse_state(status) is None:
        raise field_error("status", details=f"unknown status: {status}")
    return UpdateFactorOperationInput(
        notes=_text(data, "notes", max_len=1000),
        expected_settlement_date=_date(data, "expected_settlement_date"),
        settlement_account_id=_id(data, "settlement_account_id"),
        status=status,
    )


def parse_transition_target(payload: Any) -> str:
    data = _ensure_mapping(payload)
    target = _text(data, "status", max_len=40) or _text(data, "to", max_len=40)
    if not target:
        raise field_error("status")
    return target


def parse_add_item(payload: Any) -> AddFactorOperationItemInput:
    data = _ensure_mapping(payload)
    return AddFactorOperationItemInput(
        action_type=_choice(data, "action_type", ITEM_ACTION_TYPES),
        installment_id=_id(data, "installment_id", required=True),
        proposed_due_date=_date(data, "proposed_due_date"),
        buyback_settle_now=_bool(data, "buyback_settle_now"),
        notes=_text(data, "notes", max_len=500),
    )


def _parse_response(data: Dict[str, Any], index: int) -> FactorResponseInput:
    try:
        response = FactorResponseInput(
            item_id=_id(data, "item_id", required=True),
            response_status=_choice(data, "response_status", RESPONSE_STATUSES),
            response_code=_text(data, "response_code", max_len=40),
            response_message=_text(data, "response_message", max_len=500),
            accepted_amount=_decimal(data, "accepted_amount"),
            adjusted_amount=_decimal(data, "adjusted_amount"),
            adjusted_due_date=_date(data, "adjusted_due_date"),
            fee_amount=_decimal(data, "fee_amount", default=Decimal("0")),
            interest_amount=_decimal(data, "interest_amount", default=Decimal("0")),
            iof_amount=_decimal(data, "iof_amount", default=Decimal("0")),
            other_cost_amount=_decimal(data, "other_cost_amount", default=Decimal("0")),
        )
    except ValidationError as exc:
        field = exc.payload.get("field")
        if field:
            exc.payload["field"] = f"responses.{index}.{field}"
        raise

    if response.response_status == "adjusted" and response.adjusted_amount is None and response.adjusted_due_date is None:
        raise field_error(
            f"responses.{index}",
            message_key="adjusted_response_requires_value",
            details="adjusted response requires adjusted amount and/or due date",
        )
    return response


def parse_apply_responses(payload: Any) -> ApplyFactorResponsesInput:
    data = _ensure_mapping(payload)
    version_id = _id(data, "version_id", required=True)
    raw_responses = _raw(data, "responses")
    if not isinstance(raw_responses, list) or not raw_responses:
        raise field_error("responses", details="at least one response is required")

    responses = []
    for index, item in enumerate(raw_responses):
        if not isinstance(item, dict):
            raise field_error(f"responses.{index}")
        responses.append(_parse_response(item, index))
    return ApplyFactorResponsesInput(version_id=version_id, responses=responses)


def parse_conclude(payload: Any) -> ConcludeFactorOperationInput:
    data = _ensure_mapping(payload)
    return ConcludeFactorOperationInput(
        settlement_date=_date(data, "settlement_date"),
        notes=_text(data, "notes", max_len=500),
    )
