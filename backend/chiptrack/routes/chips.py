# Overview: Flask API routes for the chip registry and lifecycle transitions.

# backend/chiptrack/routes/chips.py
"""
RFID Chip API routes

Intake (staff):
- POST /api/chips/register-single
- POST /api/chips/import-excel
- POST /api/chips/parse-excel

Client app:
- POST /api/chips/activate-chip
- POST /api/chips/validate-scan

Transitions (all go through lifecycle_service.apply_transition):
- PUT  /api/chips/:id/receive-from-supplier   staff
- PUT  /api/chips/:id/encode                  staff
- PUT  /api/chips/:id/ship-to-client          staff
- PUT  /api/chips/:id/confirm-delivery        client (owner)
- PUT  /api/chips/:id/assign-to-controlpoint  client (owner)
- POST /api/chips/:id/request-sav             client (owner)
- PUT  /api/chips/:id/receive-sav             staff
- PUT  /api/chips/:id/replace                 staff or owner
- PUT  /api/chips/:id/archive                 staff or owner
- PUT  /api/chips/:id/deactivate              staff or owner (DELETE /:id is an alias)

SECURITY:
- User ids come from the authenticated session, never from the body
- Client users only ever reach chips of g.customer_id; foreign chips are 404
"""

from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_staff, require_client, tenant_scope
from ..services import activation_service, chip_import_service, lifecycle_service, reporting_service
from ..services.lifecycle_service import ChipAction
from ..validation import ValidationError, optional_int, require_int
from .common import json_body, json_error


chips_bp = Blueprint("chips", __name__, url_prefix="/api/chips")


def _serialize_outputs(outputs: dict) -> dict:
    result = {}
    for key, value in outputs.items():
        if key == "warranty_order":
            result[key] = value.to_dict()
        elif key == "replacement_chip":
            result[key] = value.to_summary()
        else:
            result[key] = value
    return result


def _transition_response(ctx, message: str):
    return jsonify({
        "chip": ctx.chip.to_dict(),
        "history": [row.to_dict() for row in ctx.history],
        **_serialize_outputs(ctx.outputs),
        "message": message,
    }), 200


def _transition(chip_id, action: ChipAction, owner_customer_id, **params):
    return lifecycle_service.apply_transition(
        chip_id,
        action,
        owner_customer_id=owner_customer_id,
        user_id=g.current_user.id,
        **params,
    )


# =============================================================================
# Intake
# =============================================================================

@chips_bp.post("/register-single")
@require_auth
@require_staff
def register_single_route():
    """
    Register one chip in EN_TRANSIT.

    Request body: {"uid": "04A2...", "supplier_order_id": 1, "customer_id": null}

    409 with the existing chip summary when the UID is already registered.
    """
    try:
        data = json_body()
        chip = chip_import_service.register_single(
            data.get("uid"),
            supplier_order_id=optional_int(data, "supplier_order_id"),
            customer_id=optional_int(data, "customer_id"),
            user_id=g.current_user.id,
        )
        return jsonify({"chip": chip.to_dict()}), 201
    except Exception as e:
        return json_error(e, "Failed to register chip")


def _uploaded_uids() -> list:
    file = request.files["file"]
    return chip_import_service.parse_uid_spreadsheet(file.filename, file.stream)


@chips_bp.post("/import-excel")
@require_auth
@require_staff
def import_excel_route():
    """
    Bulk import against a supplier order.

    Either multipart (file + supplier_order_id form field) or JSON
    {"supplier_order_id": 1, "uids": [...]}.

    400 with expected/provided/difference when the count does not match.
    """
    try:
        if "file" in request.files:
            data = request.form.to_dict()
            uids = _uploaded_uids()
        else:
            data = json_body()
            uids = data.get("uids")
        result = chip_import_service.import_uids(
            require_int(data, "supplier_order_id"),
            uids,
            customer_id=optional_int(data, "customer_id"),
            user_id=g.current_user.id,
        )
        return jsonify(result), 201
    except Exception as e:
        return json_error(e, "Failed to import chips")


@chips_bp.post("/parse-excel")
@require_auth
@require_staff
def parse_excel_route():
    """Return the UID column of an uploaded spreadsheet without importing anything."""
    try:
        if "file" not in request.files:
            raise ValidationError("file is required")
        uids = _uploaded_uids()
        return jsonify({"uids": uids, "count": len(uids)}), 200
    except Exception as e:
        return json_error(e, "Failed to parse spreadsheet")


# =============================================================================
# Client app
# =============================================================================

@chips_bp.post("/activate-chip")
@require_auth
@require_client
def activate_chip_route():
    """
    Activate a neutral stock chip for the caller's customer.

    Request body:
        {"uid": "...", "chip_id": "<uuid from block 1>",
         "block4_data": "<32 hex>", "block8_data": "<32 hex>"}

    Error responses:
        400: missing or malformed tag data
        403: authenticity check failed (details only in security_events)
        409: chip not in stock / concurrent activation
        422: subscription inactive, quota reached, no delivered order slot
    """
    try:
        data = json_body()
        result = activation_service.activate_chip(
            g.customer_id,
            data.get("uid"),
            data.get("chip_id"),
            data.get("block4_data"),
            data.get("block8_data"),
            user_id=g.current_user.id,
        )
        return jsonify({**result, "message": "Chip activated"}), 200
    except Exception as e:
        return json_error(e, "Failed to activate chip")


@chips_bp.post("/validate-scan")
@require_auth
@require_client
def validate_scan_route():
    try:
        data = json_body()
        result = activation_service.validate_scan(
            g.customer_id, data.get("uid"), user_id=g.current_user.id
        )
        return jsonify(result), 200
    except Exception as e:
        return json_error(e, "Failed to validate scan")


# =============================================================================
# Transitions
# =============================================================================

@chips_bp.put("/<uuid:chip_id>/receive-from-supplier")
@require_auth
@require_staff
def receive_from_supplier_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.RECEIVE_FROM_SUPPLIER, None,
            notes=data.get("notes"),
            supplier_order_id=optional_int(data, "supplier_order_id"),
        )
        return _transition_response(ctx, "Chip received from supplier")
    except Exception as e:
        return json_error(e, "Failed to receive chip")


@chips_bp.put("/<uuid:chip_id>/encode")
@require_auth
@require_staff
def encode_route(chip_id):
    """Generates salt/checksum; the response carries the tag payload and chip key once."""
    try:
        ctx = _transition(chip_id, ChipAction.ENCODE, None, notes=json_body().get("notes"))
        return _transition_response(ctx, "Chip encoded")
    except Exception as e:
        return json_error(e, "Failed to encode chip")


@chips_bp.put("/<uuid:chip_id>/ship-to-client")
@require_auth
@require_staff
def ship_to_client_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.SHIP_TO_CLIENT, None,
            notes=data.get("notes"),
            client_order_id=require_int(data, "client_order_id"),
            packaging_code=data.get("packaging_code"),
        )
        return _transition_response(ctx, "Chip shipped")
    except Exception as e:
        return json_error(e, "Failed to ship chip")


@chips_bp.put("/<uuid:chip_id>/confirm-delivery")
@require_auth
@require_client
def confirm_delivery_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.CONFIRM_DELIVERY, g.customer_id,
            packaging_code=data.get("packaging_code"),
        )
        return _transition_response(ctx, "Delivery confirmed")
    except Exception as e:
        return json_error(e, "Failed to confirm delivery")


@chips_bp.put("/<uuid:chip_id>/assign-to-controlpoint")
@require_auth
@require_client
def assign_to_control_point_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.ASSIGN_TO_CONTROL_POINT, g.customer_id,
            control_point_id=require_int(data, "control_point_id"),
        )
        return _transition_response(ctx, "Chip assigned to control point")
    except Exception as e:
        return json_error(e, "Failed to assign chip")


@chips_bp.post("/<uuid:chip_id>/request-sav")
@require_auth
@require_client
def request_sav_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.REQUEST_SAV, g.customer_id,
            reason=data.get("reason"),
        )
        return _transition_response(ctx, "Warranty return requested")
    except Exception as e:
        return json_error(e, "Failed to request SAV")


@chips_bp.put("/<uuid:chip_id>/receive-sav")
@require_auth
@require_staff
def receive_sav_route(chip_id):
    try:
        ctx = _transition(chip_id, ChipAction.RECEIVE_SAV, None, notes=json_body().get("notes"))
        return _transition_response(ctx, "Warranty return received")
    except Exception as e:
        return json_error(e, "Failed to receive SAV")


@chips_bp.put("/<uuid:chip_id>/replace")
@require_auth
def replace_route(chip_id):
    try:
        data = json_body()
        ctx = _transition(
            chip_id, ChipAction.REPLACE, tenant_scope(),
            notes=data.get("notes"),
            replacement_chip_id=data.get("replacement_chip_id"),
        )
        return _transition_response(ctx, "Chip replaced")
    except Exception as e:
        return json_error(e, "Failed to replace chip")


@chips_bp.put("/<uuid:chip_id>/archive")
@require_auth
def archive_route(chip_id):
    try:
        ctx = _transition(
            chip_id, ChipAction.ARCHIVE, tenant_scope(),
            reason=json_body().get("reason"),
        )
        return _transition_response(ctx, "Chip archived")
    except Exception as e:
        return json_error(e, "Failed to archive chip")


@chips_bp.put("/<uuid:chip_id>/deactivate")
@chips_bp.delete("/<uuid:chip_id>")
@require_auth
def deactivate_route(chip_id):
    """Chips are never deleted; DELETE deactivates."""
    try:
        ctx = _transition(chip_id, ChipAction.DEACTIVATE, tenant_scope(), notes=json_body().get("notes"))
        return _transition_response(ctx, "Chip deactivated")
    except Exception as e:
        return json_error(e, "Failed to deactivate chip")


# =============================================================================
# Lookups
# =============================================================================

@chips_bp.get("/")
@require_auth
def list_chips_route():
    try:
        customer_id = tenant_scope()
        if customer_id is None:
            customer_id = request.args.get("customer_id", type=int)
        result = reporting_service.list_chips(
            customer_id=customer_id,
            status=request.args.get("status"),
            page=request.args.get("page", 1, type=int),
            per_page=request.args.get("per_page", 50, type=int),
        )
        return jsonify(result), 200
    except Exception as e:
        return json_error(e, "Failed to list chips")


@chips_bp.get("/<uuid:chip_id>")
@require_auth
def get_chip_route(chip_id):
    try:
        chip = lifecycle_service.get_chip(chip_id, owner_customer_id=tenant_scope())
        return jsonify({
            "chip": chip.to_dict(),
            "allowed_actions": [a.value for a in lifecycle_service.allowed_actions(chip.status)],
        }), 200
    except Exception as e:
        return json_error(e, "Failed to get chip")


@chips_bp.get("/<uuid:chip_id>/status-history")
@require_auth
def status_history_route(chip_id):
    try:
        rows = lifecycle_service.get_status_history(chip_id, owner_customer_id=tenant_scope())
        return jsonify({"items": [row.to_dict() for row in rows], "count": len(rows)}), 200
    except Exception as e:
        return json_error(e, "Failed to get status history")


@chips_bp.get("/<uuid:chip_id>/audit")
@require_auth
@require_staff
def audit_route(chip_id):
    try:
        chip = lifecycle_service.get_chip(chip_id)
        return jsonify(lifecycle_service.audit_chip(chip)), 200
    except Exception as e:
        return json_error(e, "Failed to audit chip")


@chips_bp.get("/check-exists/<uid>")
@require_auth
def check_exists_route(uid: str):
    try:
        return jsonify(reporting_service.check_exists(uid, customer_id=tenant_scope())), 200
    except Exception as e:
        return json_error(e, "Failed to check chip")


@chips_bp.get("/count-by-order/<int:order_id>")
@require_auth
def count_by_order_route(order_id: int):
    try:
        return jsonify(reporting_service.count_by_order(order_id, customer_id=tenant_scope())), 200
    except Exception as e:
        return json_error(e, "Failed to count chips for order")
