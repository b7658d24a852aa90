from __future__ import annotations

from sqlalchemy import text

from models.extensions import db


def init_db(app):
    db.init_app(app)
    with app.app_context():
        # IMPORTANTE: todos os modelos precisam estar no metadata antes do create_all
        from models.address_model import Address  # noqa: F401
        from models.agent_run_model import AgentRun  # noqa: F401
        from models.billing_model import BillingCharge, BillingVehicle, Payment, WebhookEvent  # noqa: F401
        from models.intent_model import SubscriptionIntent  # noqa: F401
        from models.order_model import Order  # noqa: F401
        from models.subscription_model import Product, Subscription  # noqa: F401
        from models.user_model import User  # noqa: F401

        db.create_all()

        if db.engine.name == "sqlite":
            with db.engine.begin() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA busy_timeout=5000"))
