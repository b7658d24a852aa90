from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from models.extensions import db
from models.subscription_model import Subscription
from services.addresses import serialize_address
from services.container import get_services
from services.permissions import json_error


subscriptions_bp = Blueprint("subscriptions", __name__)


def _iso(value):
    return value.isoformat() if value else None


def _serialize_subscription(sub: Subscription) -> dict:
    product = sub.product
    return {
        "id": sub.id,
        "intentId": sub.intent_id,
        "product": {
            "id": product.id,
            "name": product.name,
            "url": product.url,
            "merchant": product.merchant,
        }
        if product
        else None,
        "renewalFrequencyDays": sub.renewal_frequency_days,
        "lastPriceCents": sub.last_price_cents,
        "addressId": sub.address_id,
        "status": sub.status,
        "lastPurchasedAt": _iso(sub.last_purchased_at),
        "nextRenewalAt": _iso(sub.next_renewal_at),
        "canceledAt": _iso(sub.canceled_at),
    }


@subscriptions_bp.get("/api/subscriptions")
@login_required
def list_subscriptions():
    include_canceled = str(request.args.get("includeCanceled") or "").lower() in {"1", "true", "yes"}
    subs = get_services().ledger.list_for_owner(current_user.id, include_canceled=include_canceled)
    return jsonify({"subscriptions": [_serialize_subscription(sub) for sub in subs]})


@subscriptions_bp.post("/api/subscriptions/<int:subscription_id>/<action>")
@login_required
def subscription_action(subscription_id: int, action: str):
    ledger = get_services().ledger
    if action not in {"pause", "resume", "cancel"}:
        return json_error("unknown_action", 404)

    # garante que pertence ao usuario antes de travar
    ledger.get(current_user.id, subscription_id)
    with ledger.locked(subscription_id) as sub:
        if action == "pause":
            ledger.pause(sub)
        elif action == "resume":
            ledger.resume(sub)
        else:
            ledger.cancel(sub)
        db.session.commit()
        return jsonify({"subscription": _serialize_subscription(sub)})


@subscriptions_bp.get("/api/addresses")
@login_required
def list_addresses():
    items = get_services().addresses.list(current_user.id)
    return jsonify({"addresses": [serialize_address(item) for item in items]})


@subscriptions_bp.post("/api/addresses")
@login_required
def create_address():
    payload = request.get_json(silent=True) or {}
    address = get_services().addresses.create(current_user.id, payload)
    return jsonify({"address": serialize_address(address)}), 201


@subscriptions_bp.post("/api/addresses/<int:address_id>/primary")
@login_required
def set_primary_address(address_id: int):
    address = get_services().addresses.set_primary(current_user.id, address_id)
    return jsonify({"address": serialize_address(address)})


@subscriptions_bp.delete("/api/addresses/<int:address_id>")
@login_required
def delete_address(address_id: int):
    get_services().addresses.delete(current_user.id, address_id)
    return jsonify({"ok": True})
