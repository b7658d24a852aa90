from __future__ import annotations

from datetime import datetime
import uuid

from models.extensions import db


# Ordem das fases: plan -> checkout -> (done | failed). Nunca regride.
RUN_PHASE_ORDER = {"plan": 0, "checkout": 1, "done": 2, "failed": 2}
TERMINAL_PHASES = {"done", "failed"}


def new_run_id() -> str:
    return str(uuid.uuid4())


class AgentRun(db.Model):
    """Uma tentativa de compra executada pelo servico externo.

    O id e uma string para que o chamador possa aloca-lo antes de criar a linha
    (o endpoint de status passa a enxergar a mesma execucao).
    """

    __tablename__ = "agent_runs"

    id = db.Column(db.String(36), primary_key=True, default=new_run_id)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    intent_id = db.Column(
        db.Integer, db.ForeignKey("subscription_intents.id"), nullable=True, index=True
    )
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    status = db.Column(db.String(20), nullable=False, default="plan")
    input = db.Column(db.JSON, nullable=True)
    output = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)
    session_handle = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PHASES
