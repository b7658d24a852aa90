from __future__ import annotations

from datetime import datetime

from models.extensions import db


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    url = db.Column(db.Text, unique=True, nullable=False)
    merchant = db.Column(db.String(128), nullable=True)
    current_price_cents = db.Column(db.Integer, nullable=True)
    price_updated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Subscription(db.Model):
    """Assinatura ativa, criada somente apos a primeira compra bem sucedida.

    Invariante: next_renewal_at == last_purchased_at + renewal_frequency_days.
    """

    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    intent_id = db.Column(
        db.Integer, db.ForeignKey("subscription_intents.id"), nullable=True, index=True
    )
    address_id = db.Column(db.Integer, db.ForeignKey("addresses.id"), nullable=True)

    renewal_frequency_days = db.Column(db.Integer, nullable=False)
    last_price_cents = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="active", index=True)

    last_purchased_at = db.Column(db.DateTime, nullable=True)
    next_renewal_at = db.Column(db.DateTime, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(
        db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    canceled_at = db.Column(db.DateTime, nullable=True)

    product = db.relationship("Product", lazy="joined")
