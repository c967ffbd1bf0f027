# Overview: Error-to-response mapping shared by the chip blueprints.

from flask import current_app, jsonify, request

from ..services.chip_import_service import DuplicateChipError, ImportAnomalyError
from ..services.chip_security_service import SecurityViolationError
from ..services.concurrency import ConcurrentModificationError
from ..services.lifecycle_service import InvalidTransitionError
from ..validation import BusinessRuleError, ConflictError, NotFoundError, ValidationError


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def json_error(exc: Exception, failure: str):
    """
    Map a domain exception to its HTTP response.

    Anything unrecognised is logged with its traceback under `failure` and
    answered with a bare 500.
    """
    if isinstance(exc, ImportAnomalyError):
        return jsonify(exc.to_dict()), 400
    if isinstance(exc, SecurityViolationError):
        # reason_code stays in security_events
        return jsonify({"error": "Chip rejected: authenticity could not be verified"}), 403
    if isinstance(exc, DuplicateChipError):
        return jsonify({"error": str(exc), "existing": exc.existing}), 409
    if isinstance(exc, InvalidTransitionError):
        return jsonify({
            "error": str(exc),
            "current_status": exc.current_status.value,
            "action": exc.action.value,
        }), 409
    if isinstance(exc, (ConcurrentModificationError, ConflictError)):
        return jsonify({"error": str(exc)}), 409
    if isinstance(exc, ValidationError):
        return jsonify({"error": str(exc)}), 400
    if isinstance(exc, NotFoundError):
        return jsonify({"error": str(exc)}), 404
    if isinstance(exc, BusinessRuleError):
        return jsonify({"error": str(exc)}), 422
    current_app.logger.exception(failure)
    return jsonify({"error": "Internal server error"}), 500
