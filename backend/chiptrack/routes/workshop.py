# Overview: Unauthenticated endpoints used by the encoding station in the workshop.

"""
Workshop encoding tool routes

The encoding station runs on an isolated workshop machine and has no user
account. It reads a tag's UID, asks the server to encode it, then writes
blocks 1/4/8 with the returned key. The history row for these encodings has
no changed_by_user_id.

- POST /api/chips/request-encoding   ENCODE by uid, returns crypto material once
- GET  /api/chips/info/<uid>         encoded or not; never any crypto material
"""

from flask import Blueprint, jsonify

from ..services import lifecycle_service, reporting_service
from ..services.lifecycle_service import ChipAction
from .common import json_body, json_error


workshop_bp = Blueprint("workshop", __name__, url_prefix="/api/chips")


@workshop_bp.post("/request-encoding")
def request_encoding_route():
    try:
        data = json_body()
        ctx = lifecycle_service.apply_transition_by_uid(
            data.get("uid"),
            ChipAction.ENCODE,
            notes="Encoded by workshop station",
        )
        return jsonify({
            **ctx.outputs["tag_payload"],
            "status": ctx.chip.status.value,
            "message": "Chip encoded; write the payload to the tag now",
        }), 200
    except Exception as e:
        return json_error(e, "Failed to encode chip")


@workshop_bp.get("/info/<uid>")
def chip_info_route(uid: str):
    try:
        return jsonify(reporting_service.workshop_info(uid)), 200
    except Exception as e:
        return json_error(e, "Failed to read chip info")
