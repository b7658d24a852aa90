from __future__ import annotations

from datetime import datetime

from models.extensions import db


class Order(db.Model):
    """Pedido gerado por uma compra concluida.

    Um pedido por (assinatura, pedido externo): reentregas do mesmo evento do
    processador nao podem duplicar pedidos.
    """

    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("subscription_id", "external_order_id", name="uq_orders_subscription_external"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    agent_run_id = db.Column(db.String(36), db.ForeignKey("agent_runs.id"), nullable=True)

    merchant = db.Column(db.String(128), nullable=True)
    target_url = db.Column(db.Text, nullable=True)
    external_order_id = db.Column(db.String(128), nullable=False)
    price_cents = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    receipt = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="processing")  # processing | succeeded | failed

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
