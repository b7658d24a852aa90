from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from services.container import get_services
from services.permissions import json_error


billing_bp = Blueprint("billing", __name__)


@billing_bp.get("/api/billing/estimate")
@login_required
def billing_estimate():
    return jsonify({"estimate": get_services().billing.monthly_estimate(current_user.id)})


@billing_bp.post("/api/billing/setup")
@login_required
def billing_setup():
    """Com paymentMethodId cria a assinatura base direto; sem ele devolve uma sessao de checkout."""
    payload = request.get_json(silent=True) or {}
    billing = get_services().billing
    payment_method_id = (payload.get("paymentMethodId") or "").strip()
    if payment_method_id:
        vehicle = billing.start_billing_vehicle(current_user, payment_method_id)
        return jsonify(
            {
                "vehicle": {
                    "id": vehicle.id,
                    "processorSubscriptionId": vehicle.processor_subscription_id,
                    "status": vehicle.status,
                }
            }
        )

    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    session = billing.create_setup_session(
        current_user,
        success_url=f"{base}/billing/success",
        cancel_url=f"{base}/billing/cancel",
    )
    if not session.get("url"):
        return json_error("checkout_session_failed", 502)
    return jsonify({"checkoutUrl": session["url"], "sessionId": session["id"]})


@billing_bp.post("/api/billing/cancel")
@login_required
def billing_cancel():
    vehicle = get_services().billing.cancel_billing_vehicle(current_user)
    return jsonify({"vehicle": {"id": vehicle.id, "status": vehicle.status}})
