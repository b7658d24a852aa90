from __future__ import annotations

from flask import jsonify, request

from models.user_model import User


def json_error(error: str, status: int):
    return jsonify({"error": error}), status


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def load_user_from_request(req=None):
    """request_loader do Flask-Login: resolve o token opaco do provedor externo."""
    token = bearer_token()
    if not token:
        return None
    return User.find_by_token(token)
