from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services.commands import CommandDispatcher, parse_command
from services.container import get_services


commands_bp = Blueprint("commands", __name__)


@commands_bp.post("/api/commands")
@login_required
def run_command():
    command = parse_command(request.get_json(silent=True))
    result = CommandDispatcher(get_services()).dispatch(current_user, command)
    return jsonify({"command": type(command).__name__, "result": result})
