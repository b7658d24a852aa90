from __future__ import annotations

from datetime import datetime

from models.extensions import db


class BillingVehicle(db.Model):
    """Assinatura base no processador que hospeda as cobrancas anexadas."""

    __tablename__ = "billing_vehicles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    processor_subscription_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(32), nullable=False, default="active")  # active | past_due | canceled

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    canceled_at = db.Column(db.DateTime, nullable=True)


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True)
    intent_id = db.Column(db.Integer, db.ForeignKey("subscription_intents.id"), nullable=True)

    invoice_id = db.Column(db.String(255), nullable=True, index=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    product_cost_cents = db.Column(db.Integer, nullable=True)
    service_fee_cents = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending")  # pending | succeeded | failed

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class BillingCharge(db.Model):
    """Uma linha de cobranca enviada ao processador, no maximo uma por evento de compra."""

    __tablename__ = "billing_charges"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    purchase_event_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True)
    intent_id = db.Column(db.Integer, db.ForeignKey("subscription_intents.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=False)
    processor_item_id = db.Column(db.String(255), nullable=True)
    invoice_id = db.Column(db.String(255), nullable=True)
    mode = db.Column(db.String(20), nullable=False, default="next_invoice")  # next_invoice | immediate

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class WebhookEvent(db.Model):
    """Eventos do processador ja aplicados (entrega pelo menos uma vez)."""

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    processed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
