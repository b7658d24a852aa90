from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from models.agent_run_model import RUN_PHASE_ORDER, TERMINAL_PHASES, AgentRun, new_run_id
from models.extensions import db
from services.errors import RunStateError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    user_id: int | None = None
    intent_id: int | None = None
    subscription_id: int | None = None
    input: dict | None = None
    phase: str = "plan"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


class AgentRunCoordinator:
    """Rastreia cada tentativa de compra (uma linha por tentativa logica).

    As transicoes fazem commit imediatamente: o endpoint de status roda em outra
    requisicao e precisa enxergar o progresso.
    """

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def get(self, run_id: str | None) -> AgentRun | None:
        run_id = (run_id or "").strip()
        if not run_id:
            return None
        return self.session.get(AgentRun, run_id)

    def create(self, context: RunContext, external_id: str | None = None) -> AgentRun:
        phase = context.phase or "plan"
        if phase not in RUN_PHASE_ORDER or phase in TERMINAL_PHASES:
            raise ValidationError(f"Fase inicial invalida: {phase}", code="invalid_phase")

        run = self.get(external_id) if external_id else None
        if run is None:
            run = AgentRun(
                id=(external_id or "").strip() or new_run_id(),
                user_id=context.user_id,
                intent_id=context.intent_id,
                subscription_id=context.subscription_id,
                status=phase,
                input=context.input,
            )
            self.session.add(run)
            self.session.commit()
            logger.info("AgentRun: criado %s (%s)", run.id, phase)
            return run

        # id ja alocado pelo chamador: reaproveita a mesma linha
        if run.is_terminal:
            raise RunStateError(f"Execucao {run.id} ja terminou ({run.status}).")
        if context.user_id is not None:
            run.user_id = context.user_id
        if context.intent_id is not None:
            run.intent_id = context.intent_id
        if context.subscription_id is not None:
            run.subscription_id = context.subscription_id
        if context.input is not None:
            run.input = context.input
        if RUN_PHASE_ORDER[phase] > RUN_PHASE_ORDER[run.status]:
            run.status = phase
        self.session.commit()
        logger.info("AgentRun: reutilizado %s (%s)", run.id, run.status)
        return run

    def transition(
        self,
        run: AgentRun,
        status: str,
        output: dict | None = None,
        error: str | None = None,
        session_handle: str | None = None,
    ) -> AgentRun:
        if status not in RUN_PHASE_ORDER:
            raise RunStateError(f"Status desconhecido: {status}")
        if run.is_terminal:
            raise RunStateError(f"Execucao {run.id} ja terminou ({run.status}).")
        if RUN_PHASE_ORDER[status] < RUN_PHASE_ORDER[run.status]:
            raise RunStateError(f"Transicao regressiva {run.status} -> {status}.")

        run.status = status
        if output is not None:
            run.output = output
        if error is not None:
            run.error = error
        if session_handle:
            run.session_handle = session_handle
        if status in TERMINAL_PHASES:
            run.ended_at = datetime.utcnow()
        self.session.commit()
        logger.info("AgentRun: %s -> %s", run.id, status)
        return run

    def latest_done_for_intent(self, intent_id: int) -> AgentRun | None:
        return (
            AgentRun.query.filter_by(intent_id=intent_id, status="done")
            .order_by(AgentRun.created_at.desc())
            .first()
        )

    @staticmethod
    def status_view(run: AgentRun) -> dict:
        if run.status == "done":
            status = "done"
        elif run.status == "failed":
            status = "failed"
        else:
            status = "running"

        duration_ms = None
        if run.ended_at and run.created_at:
            duration_ms = int((run.ended_at - run.created_at).total_seconds() * 1000)

        return {
            "runId": run.id,
            "status": status,
            "phase": run.status,
            "result": run.output,
            "error": run.error,
            "createdAt": _iso(run.created_at),
            "endedAt": _iso(run.ended_at),
            "durationMs": duration_ms,
            "sessionHandle": run.session_handle,
        }
