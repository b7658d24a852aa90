from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from models.agent_run_model import new_run_id
from services.agent_runs import RunContext
from services.container import get_services
from services.errors import RecompraError
from services.input_validation import parse_positive_int
from services.permissions import json_error

logger = logging.getLogger(__name__)


agents_bp = Blueprint("agents", __name__)


@agents_bp.get("/api/agents/status")
@login_required
def agent_status():
    run_id = (request.args.get("runId") or "").strip()
    if not run_id:
        return json_error("run_id_required", 400)
    run = get_services().runs.get(run_id)
    if run is None or (run.user_id is not None and run.user_id != current_user.id):
        return json_error("run_not_found", 404)
    return jsonify(get_services().runs.status_view(run))


@agents_bp.post("/api/agents/run")
@login_required
def agent_run():
    """Inicia um job de plano (extracao) ou de checkout e devolve o runId.

    O runId e alocado aqui e repassado ao orquestrador, que reaproveita a linha.
    """
    payload = request.get_json(silent=True) or {}
    kind = str(payload.get("type") or "").strip()
    services = get_services()
    run_id = new_run_id()

    if kind == "plan":
        message = str(payload.get("userMessage") or "").strip()
        if not message:
            return json_error("user_message_required", 422)
        run = services.runs.create(
            RunContext(user_id=current_user.id, phase="plan", input={"type": "plan", "userMessage": message}),
            external_id=run_id,
        )
        try:
            extraction = services.extractor.extract(message)
        except RecompraError as exc:
            logger.warning("Agentes: plano %s falhou: %s", run_id, exc)
            services.runs.transition(run, "failed", error=str(exc))
        else:
            services.runs.transition(
                run,
                "done",
                output={
                    "intent": extraction.intent,
                    "clarification": extraction.clarification,
                    "missingFields": list(extraction.missing_fields),
                },
            )
        return jsonify(services.runs.status_view(run))

    if kind == "checkout":
        intent_id = parse_positive_int(payload.get("intentId"))
        if intent_id is None:
            return json_error("intent_id_required", 422)
        # valida dono e status antes de alocar a execucao
        services.intents.get(current_user.id, intent_id)
        strategy = "native_recurring" if payload.get("useNativeSubscription") else "manual_one_off"
        run = services.runs.create(
            RunContext(user_id=current_user.id, intent_id=intent_id, phase="checkout", input={"type": "checkout"}),
            external_id=run_id,
        )
        try:
            outcome = services.purchases.start(
                current_user,
                intent_id,
                address_id=parse_positive_int(payload.get("addressId")),
                strategy=strategy,
                run_id=run_id,
            )
        except RecompraError as exc:
            # rejeitado antes do checkout: a execucao alocada nao pode ficar pendurada
            run = services.runs.get(run_id)
            if run is not None and not run.is_terminal:
                services.runs.transition(run, "failed", error=str(exc))
            raise
        run = services.runs.get(run_id)
        body = services.runs.status_view(run)
        body["purchase"] = outcome.to_payload()
        return jsonify(body)

    return json_error("unknown_job_type", 422)
