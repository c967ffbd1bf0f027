# Overview: Flask API routes for chip reporting (stats, CSV export, whitelist, stock).

from flask import Blueprint, Response, request, jsonify, g

from ..decorators import require_auth, require_staff, tenant_scope
from ..services import reporting_service, security_event_service
from ..models.security import SEVERITY_WARNING
from chiptrack.time_utils import day_stamp
from .common import json_error


reports_bp = Blueprint("reports", __name__, url_prefix="/api/chips")


def _report_scope() -> int | None:
    """Clients see their own customer; staff may narrow with ?customer_id=."""
    customer_id = tenant_scope()
    if customer_id is None:
        customer_id = request.args.get("customer_id", type=int)
    return customer_id


@reports_bp.get("/stats/by-status")
@require_auth
def stats_by_status_route():
    try:
        return jsonify(reporting_service.stats_by_status(_report_scope())), 200
    except Exception as e:
        return json_error(e, "Failed to compute chip statistics")


@reports_bp.get("/export/csv")
@require_auth
def export_csv_route():
    try:
        customer_id = _report_scope()
        body = reporting_service.export_csv(customer_id)
        filename = f"chips-{customer_id or 'all'}-{day_stamp()}.csv"
        return Response(
            body,
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )
    except Exception as e:
        return json_error(e, "Failed to export chips")


@reports_bp.get("/whitelist/<int:customer_id>")
@require_auth
def whitelist_route(customer_id: int):
    """
    ACTIVE chips of a customer for offline scanner caches.

    Clients may only read their own customer; staff need is_superadmin.
    """
    try:
        allowed = (
            g.customer_id == customer_id
            if not g.is_staff
            else bool(g.current_user.is_superadmin)
        )
        if not allowed:
            security_event_service.log_security_event(
                user_id=g.current_user.id,
                customer_id=g.customer_id,
                event_type="CROSS_TENANT_ACCESS_DENIED",
                success=False,
                severity=SEVERITY_WARNING,
                reason=f"Whitelist of customer {customer_id} requested",
            )
            return jsonify({"error": "Access denied"}), 403

        items = reporting_service.whitelist(customer_id)
        return jsonify({"customer_id": customer_id, "items": items, "count": len(items)}), 200
    except Exception as e:
        return json_error(e, "Failed to build whitelist")


@reports_bp.get("/stock/stats")
@require_auth
@require_staff
def stock_stats_route():
    try:
        return jsonify(reporting_service.stock_statistics()), 200
    except Exception as e:
        return json_error(e, "Failed to compute stock statistics")
