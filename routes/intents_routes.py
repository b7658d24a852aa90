from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services.container import get_services
from services.input_validation import parse_positive_int
from services.intents import serialize_intent
from services.permissions import json_error


intents_bp = Blueprint("intents", __name__)


def _parse_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@intents_bp.get("/api/intents")
@login_required
def list_intents():
    include_canceled = _parse_bool(request.args.get("includeCanceled"))
    items = get_services().intents.list(current_user.id, include_canceled=include_canceled)
    return jsonify({"intents": [serialize_intent(item) for item in items]})


@intents_bp.post("/api/intents")
@login_required
def create_intent():
    payload = request.get_json(silent=True) or {}
    intent = get_services().intents.create(current_user.id, payload)
    return jsonify({"intent": serialize_intent(intent)}), 201


@intents_bp.post("/api/intents/extract")
@login_required
def extract_intent():
    payload = request.get_json(silent=True) or {}
    extraction = get_services().extractor.extract(payload.get("message"))
    return jsonify(
        {
            "intent": extraction.intent,
            "clarification": extraction.clarification,
            "missingFields": list(extraction.missing_fields),
        }
    )


@intents_bp.get("/api/intents/<int:intent_id>")
@login_required
def get_intent(intent_id: int):
    intent = get_services().intents.get(current_user.id, intent_id)
    return jsonify({"intent": serialize_intent(intent)})


@intents_bp.patch("/api/intents/<int:intent_id>")
@login_required
def update_intent(intent_id: int):
    payload = request.get_json(silent=True) or {}
    intent = get_services().intents.update(current_user.id, intent_id, payload)
    return jsonify({"intent": serialize_intent(intent)})


@intents_bp.post("/api/intents/<int:intent_id>/<action>")
@login_required
def intent_action(intent_id: int, action: str):
    intents = get_services().intents
    if action == "pause":
        intent = intents.pause(current_user.id, intent_id)
    elif action == "resume":
        intent = intents.resume(current_user.id, intent_id)
    elif action == "cancel":
        intent = intents.cancel(current_user.id, intent_id)
    else:
        return json_error("unknown_action", 404)
    return jsonify({"intent": serialize_intent(intent)})


@intents_bp.post("/api/intents/<int:intent_id>/purchase")
@login_required
def purchase_intent(intent_id: int):
    payload = request.get_json(silent=True) or {}
    outcome = get_services().purchases.start(
        current_user,
        intent_id,
        address_id=parse_positive_int(payload.get("addressId")),
        strategy=str(payload.get("strategy") or "manual_one_off"),
    )
    status = 200 if outcome.checkout.success else 502
    return jsonify(outcome.to_payload()), status
