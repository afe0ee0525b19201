from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify, request

from desdobra.application.factor_service import FactorService
from desdobra.db import get_db, get_read_db
from desdobra.errors import UserActionError, field_error
from desdobra.finance.factor.schemas import (
    parse_add_item,
    parse_apply_responses,
    parse_conclude,
    parse_create_factor,
    parse_create_operation,
    parse_transition_target,
    parse_update_operation,
)
from desdobra.finance.factor.state_machine import allowed_next_states
from desdobra.tenant import current_user_id, scoped_tenant_id
from desdobra.ui_strings import status_keys_for_group, success_message


factor_bp = Blueprint("factor", __name__, url_prefix="/api/finance/factor")

ALLOWED_OPERATION_STATUSES = set(status_keys_for_group("factor_operacao"))


def _service() -> FactorService:
    return FactorService(tenant_id=scoped_tenant_id(), user_id=current_user_id())


def _optional_positive_int(name: str) -> int | None:
    raw = str(request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise field_error(name) from None
    if value <= 0:
        raise field_error(name)
    return value


def _eligible_limit() -> int:
    return max(1, int(current_app.config.get("FACTOR_ELIGIBLE_LIMIT", 300) or 300))


@factor_bp.route("/factors", methods=["GET", "POST"])
def factors_api():
    if request.method == "POST":
        db = get_db()
        create_input = parse_create_factor(request.get_json(silent=True))
        factor = _service().create_factor(db, create_input)
        db.commit()
        return jsonify({"factor": factor, "message": success_message("factor_created")}), 201

    return jsonify({"items": _service().list_factors(get_read_db())})


@factor_bp.route("/operations", methods=["GET", "POST"])
def operations_api():
    if request.method == "POST":
        db = get_db()
        create_input = parse_create_operation(request.get_json(silent=True))
        operation = _service().create_operation(
            db,
            create_input,
            currency=current_app.config.get("FACTOR_DEFAULT_CURRENCY", "BRL"),
        )
        db.commit()
        return jsonify({"operation": operation, "message": success_message("operation_created")}), 201

    status = str(request.args.get("status") or "").strip() or None
    if status is not None and status not in ALLOWED_OPERATION_STATUSES:
        raise field_error("status", details=f"unknown status: {status}")
    items = _service().list_operations(
        get_read_db(),
        status=status,
        factor_id=_optional_positive_int("factor_id"),
    )
    return jsonify({"items": items})


@factor_bp.route("/operations/<int:operation_id>", methods=["GET", "PATCH"])
def operation_detail_api(operation_id: int):
    if request.method == "PATCH":
        db = get_db()
        update_input = parse_update_operation(request.get_json(silent=True))
        operation = _service().update_operation(db, operation_id, update_input)
        db.commit()
        return jsonify({"operation": operation, "message": success_message("operation_updated")})

    return jsonify(_service().get_operation_detail(get_read_db(), operation_id))


@factor_bp.route("/operations/<int:operation_id>/transition", methods=["POST"])
def operation_transition_api(operation_id: int):
    db = get_db()
    target = parse_transition_target(request.get_json(silent=True))
    operation = _service().transition_operation(db, operation_id, target)
    db.commit()
    return jsonify(
        {
            "operation": operation,
            "allowed_next_states": allowed_next_states(operation["status"]),
        }
    )


@factor_bp.route("/operations/<int:operation_id>/transition-check", methods=["GET"])
def operation_transition_check_api(operation_id: int):
    target = str(request.args.get("to") or "").strip()
    if not target:
        raise field_error("to")
    payload = _service().check_transition(get_read_db(), operation_id, target)
    if payload["ok"]:
        payload["message"] = success_message("transition_allowed")
    return jsonify(payload)


@factor_bp.route("/operations/<int:operation_id>/items", methods=["POST"])
def operation_items_api(operation_id: int):
    db = get_db()
    item_input = parse_add_item(request.get_json(silent=True))
    item = _service().add_operation_item(db, operation_id, item_input)
    db.commit()
    return jsonify({"item": item, "message": success_message("item_added")}), 201


@factor_bp.route("/operations/<int:operation_id>/items/<int:item_id>", methods=["DELETE"])
def operation_item_delete_api(operation_id: int, item_id: int):
    db = get_db()
    _service().remove_operation_item(db, operation_id, item_id)
    db.commit()
    return jsonify({"removed": True, "item_id": item_id, "message": success_message("item_removed")})


@factor_bp.route("/operations/<int:operation_id>/versions", methods=["POST"])
def operation_versions_api(operation_id: int):
    db = get_db()
    result = _service().create_version(db, operation_id)
    db.commit()
    return jsonify({**result, "message": success_message("version_created")}), 201


@factor_bp.route("/operations/<int:operation_id>/send", methods=["POST"])
def operation_send_api(operation_id: int):
    db = get_db()
    result = _service().send_to_factor(db, operation_id)
    db.commit()
    return jsonify({**result, "message": success_message("operation_sent")})


@factor_bp.route("/operations/<int:operation_id>/responses", methods=["POST"])
def operation_responses_api(operation_id: int):
    db = get_db()
    responses_input = parse_apply_responses(request.get_json(silent=True))
    operation = _service().apply_responses(db, operation_id, responses_input)
    db.commit()
    return jsonify({"operation": operation, "message": success_message("responses_applied")})


@factor_bp.route("/operations/<int:operation_id>/conclude", methods=["POST"])
def operation_conclude_api(operation_id: int):
    db = get_db()
    conclude_input = parse_conclude(request.get_json(silent=True))
    result = _service().conclude_operation(db, operation_id, conclude_input)
    db.commit()
    message_key = "operation_already_completed" if result["idempotent"] else "operation_completed"
    return jsonify({**result, "message": success_message(message_key)})


@factor_bp.route("/operations/<int:operation_id>/downloads/package-zip", methods=["GET", "POST"])
def operation_package_api(operation_id: int):
    filename, content = _service().build_operation_package(get_read_db(), operation_id)
    return Response(
        content,
        mimetype="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@factor_bp.route("/installments/eligible", methods=["GET"])
def eligible_installments_api():
    query_text = str(request.args.get("q") or "").strip() or None
    items = _service().list_eligible_installments(get_read_db(), query_text, limit=_eligible_limit())
    return jsonify({"items": items})


@factor_bp.route("/installments/with-factor", methods=["GET"])
def installments_with_factor_api():
    items = _service().list_installments_with_factor(get_read_db(), limit=_eligible_limit())
    return jsonify({"items": items})


@factor_bp.route("/seed", methods=["POST"])
def seed_api():
    if not (current_app.testing or current_app.config.get("SEED_ENABLED")):
        raise UserActionError(code="seed_disabled", message_key="seed_disabled", http_status=403)

    db = get_db()
    payload = _service().seed_demo_data(db)
    db.commit()
    return jsonify(payload), 201
