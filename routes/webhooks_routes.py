from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from models.extensions import db
from services.container import get_services
from services.errors import AuthenticationError, ValidationError
from services.permissions import json_error

logger = logging.getLogger(__name__)


webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.post("/api/webhooks/stripe")
def stripe_webhook():
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    webhooks = get_services().webhooks
    try:
        event = webhooks.verify(payload, sig_header)
    except (AuthenticationError, ValidationError) as exc:
        return json_error(exc.code, 400)
    try:
        result = webhooks.dispatch(event)
    except Exception:
        # qualquer falha do handler vira 500 para o Stripe reenviar o evento
        db.session.rollback()
        logger.error("Webhook: erro ao processar evento %s", event.get("id"), exc_info=True)
        return json_error("webhook_handler_failed", 500)
    return jsonify({"received": True, "duplicate": bool(result.get("duplicate"))})
