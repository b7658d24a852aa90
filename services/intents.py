from __future__ import annotations

import logging
from datetime import datetime

from models.extensions import db
from models.intent_model import SubscriptionIntent
from services.errors import NotFoundError, ValidationError
from services.input_validation import (
    normalize_constraints,
    optional_price,
    require_cadence,
    require_title,
    require_url,
    validate_intent_status,
)

logger = logging.getLogger(__name__)


def serialize_intent(intent: SubscriptionIntent) -> dict:
    return {
        "id": intent.id,
        "title": intent.title,
        "targetUrl": intent.target_url,
        "cadenceDays": intent.cadence_days,
        "maxPriceCents": intent.max_price_cents,
        "constraints": intent.constraints or {},
        "status": intent.status,
        "createdAt": intent.created_at.isoformat() if intent.created_at else None,
        "updatedAt": intent.updated_at.isoformat() if intent.updated_at else None,
        "canceledAt": intent.canceled_at.isoformat() if intent.canceled_at else None,
    }


class IntentRegistry:
    def __init__(self, ledger) -> None:
        self.ledger = ledger

    def create(self, user_id: int, payload: dict) -> SubscriptionIntent:
        payload = payload or {}
        intent = SubscriptionIntent(
            user_id=user_id,
            title=require_title(payload.get("title")),
            target_url=require_url(payload.get("targetUrl") or payload.get("target_url")),
            cadence_days=require_cadence(payload.get("cadenceDays") or payload.get("cadence_days")),
            max_price_cents=optional_price(payload.get("maxPriceCents", payload.get("max_price_cents"))),
            constraints=normalize_constraints(payload.get("constraints")),
            status="active",
        )
        db.session.add(intent)
        db.session.commit()
        logger.info("Intencao: %s criada para usuario %s", intent.id, user_id)
        return intent

    def get(self, user_id: int, intent_id: int) -> SubscriptionIntent:
        intent = SubscriptionIntent.query.filter_by(id=intent_id, user_id=user_id).first()
        if intent is None:
            raise NotFoundError("Intencao nao encontrada.", code="intent_not_found")
        return intent

    def list(self, user_id: int, *, include_canceled: bool = False) -> list[SubscriptionIntent]:
        query = SubscriptionIntent.query.filter_by(user_id=user_id)
        if not include_canceled:
            query = query.filter(SubscriptionIntent.status != "canceled")
        return query.order_by(SubscriptionIntent.created_at.desc()).all()

    def update(self, user_id: int, intent_id: int, payload: dict) -> SubscriptionIntent:
        intent = self.get(user_id, intent_id)
        if intent.status == "canceled":
            raise ValidationError("Intencao cancelada nao pode ser alterada.", code="intent_canceled")

        payload = payload or {}
        if "title" in payload:
            intent.title = require_title(payload.get("title"))
        if "cadenceDays" in payload:
            intent.cadence_days = require_cadence(payload.get("cadenceDays"))
        if "maxPriceCents" in payload:
            intent.max_price_cents = optional_price(payload.get("maxPriceCents"))
        if "constraints" in payload:
            intent.constraints = normalize_constraints(payload.get("constraints"))
        if "status" in payload:
            intent.status = validate_intent_status(payload.get("status"))

        self.ledger.sync_from_intent(intent)
        db.session.commit()
        return intent

    def pause(self, user_id: int, intent_id: int) -> SubscriptionIntent:
        return self.update(user_id, intent_id, {"status": "paused"})

    def resume(self, user_id: int, intent_id: int) -> SubscriptionIntent:
        # tambem reativa intencoes em "error" (pagamento recusado)
        return self.update(user_id, intent_id, {"status": "active"})

    def cancel(self, user_id: int, intent_id: int) -> SubscriptionIntent:
        intent = self.get(user_id, intent_id)
        if intent.status == "canceled":
            return intent
        now = datetime.utcnow()
        intent.status = "canceled"
        intent.canceled_at = now
        count = self.ledger.cancel_for_intent(intent.id, when=now)
        db.session.commit()
        logger.info("Intencao: %s cancelada (%s assinaturas)", intent.id, count)
        return intent

    def mark_error(self, intent_id: int) -> SubscriptionIntent | None:
        """Marca a intencao com erro (nao faz commit)."""
        intent = db.session.get(SubscriptionIntent, intent_id)
        if intent is None or intent.status == "canceled":
            return intent
        intent.status = "error"
        return intent
