from __future__ import annotations

from datetime import datetime

from models.extensions import db


class SubscriptionIntent(db.Model):
    """Desejo declarado de comprar um produto de forma recorrente.

    Existe antes de qualquer compra; a assinatura so nasce depois da primeira
    compra bem sucedida.
    """

    __tablename__ = "subscription_intents"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    target_url = db.Column(db.Text, nullable=False)
    cadence_days = db.Column(db.Integer, nullable=False)
    max_price_cents = db.Column(db.Integer, nullable=True)
    constraints = db.Column(db.JSON, nullable=True)  # {"color": ..., "size": ...}

    status = db.Column(db.String(20), nullable=False, default="active", index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    canceled_at = db.Column(db.DateTime, nullable=True)
