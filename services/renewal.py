from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime

from models.address_model import Address
from models.extensions import db
from models.intent_model import SubscriptionIntent
from models.user_model import User
from services.billing import PurchaseEvent
from services.checkout import CheckoutRequest
from services.errors import AuthenticationError, BillingError, NotFoundError
from services.purchases import purchase_event_id_for_run

logger = logging.getLogger(__name__)


@dataclass
class RenewalReport:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_payload(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class RenewalScheduler:
    """Varredura periodica das assinaturas vencidas.

    Estritamente sequencial: no maximo uma sessao de navegacao aberta por vez.
    Falha de um item nunca interrompe a varredura.
    """

    def __init__(
        self,
        ledger,
        checkout,
        billing,
        *,
        cron_secret: str = "",
        is_production: bool = False,
        lookahead_hours: int = 24,
    ) -> None:
        self.ledger = ledger
        self.checkout = checkout
        self.billing = billing
        self.cron_secret = cron_secret or ""
        self.is_production = is_production
        self.lookahead_hours = lookahead_hours

    def authorize(self, secret: str | None) -> None:
        if not self.is_production:
            return
        if not self.cron_secret:
            raise AuthenticationError("CRON_SECRET_KEY nao configurado.", code="cron_secret_missing")
        if not secret or not hmac.compare_digest(str(secret), self.cron_secret):
            raise AuthenticationError("Chave da varredura invalida.", code="unauthorized")

    def due(self, now: datetime | None = None):
        return self.ledger.due(now, lookahead_hours=self.lookahead_hours)

    def run_sweep(self, now: datetime | None = None) -> RenewalReport:
        now = now or datetime.utcnow()
        due_ids = [sub.id for sub in self.due(now)]
        report = RenewalReport(total=len(due_ids))
        logger.info("Renovacao: %s assinaturas vencidas", len(due_ids))

        for sub_id in due_ids:
            try:
                self._renew_one(sub_id, report)
            except Exception as exc:
                db.session.rollback()
                report.failed += 1
                report.errors.append({"subscriptionId": sub_id, "error": str(exc) or exc.__class__.__name__})
                logger.warning("Renovacao: falha na assinatura %s", sub_id, exc_info=True)

        logger.info(
            "Renovacao: concluida (ok=%s, falhas=%s, ignoradas=%s)",
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report

    def _renew_one(self, sub_id: int, report: RenewalReport) -> None:
        with self.ledger.locked(sub_id) as sub:
            if sub is None or sub.status != "active":
                # pausada ou cancelada depois da selecao
                report.skipped += 1
                return

            user = db.session.get(User, sub.user_id)
            if user is None:
                raise NotFoundError(f"Usuario {sub.user_id} nao encontrado.")
            address = db.session.get(Address, sub.address_id) if sub.address_id else None
            if address is None:
                raise NotFoundError(f"Endereco da assinatura {sub.id} nao encontrado.")
            intent = db.session.get(SubscriptionIntent, sub.intent_id) if sub.intent_id else None
            if intent is None:
                raise NotFoundError(f"Intencao da assinatura {sub.id} nao encontrada.")
            report.processed += 1

            result = self.checkout.run(
                CheckoutRequest(
                    target_url=intent.target_url,
                    address=address,
                    strategy="manual_one_off",
                    user_id=user.id,
                    intent_id=intent.id,
                    subscription_id=sub.id,
                )
            )

            if not result.success:
                sub.status = "paused"
                db.session.commit()
                report.failed += 1
                report.errors.append({"subscriptionId": sub.id, "error": result.error or "checkout_failed"})
                logger.info("Renovacao: assinatura %s pausada apos falha no checkout", sub.id)
                return

            price = result.price_observed if result.price_observed is not None else sub.last_price_cents
            if price is not None:
                try:
                    self.billing.append_charge(
                        user,
                        PurchaseEvent(
                            purchase_event_id=purchase_event_id_for_run(result.run_id),
                            price_cents=price,
                            cadence_days=sub.renewal_frequency_days,
                            intent_id=intent.id,
                            subscription_id=sub.id,
                            order_reference=result.order_reference,
                            product_name=intent.title,
                        ),
                        mode="next_invoice",
                    )
                except BillingError as exc:
                    # a compra ja aconteceu; a cobranca fica para reconciliacao
                    db.session.rollback()
                    report.errors.append({"subscriptionId": sub.id, "error": str(exc), "stage": "billing"})
                    logger.warning("Renovacao: cobranca falhou para assinatura %s: %s", sub.id, exc)
            else:
                logger.info("Renovacao: preco desconhecido, cobranca ignorada (assinatura %s)", sub.id)

            self.ledger.mark_renewed(sub, purchased_at=datetime.utcnow(), price_cents=result.price_observed)
            db.session.commit()
            report.succeeded += 1
