from datetime import datetime
import secrets

from flask_login import UserMixin

from models.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=True)

    # Token opaco emitido pelo provedor de identidade (autenticacao e externa).
    api_token = db.Column(db.String(128), unique=True, nullable=False, index=True)

    # Cache do customer id no processador de pagamentos (Stripe).
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    addresses = db.relationship(
        "Address",
        backref="user",
        lazy=True,
        cascade="all, delete-orphan",
    )

    @staticmethod
    def new_api_token() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def find_by_token(token: str | None):
        token = (token or "").strip()
        if not token:
            return None
        return User.query.filter_by(api_token=token).first()
