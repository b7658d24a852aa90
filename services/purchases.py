from __future__ import annotations

import logging
from dataclasses import dataclass

from models.address_model import Address
from models.extensions import db
from models.intent_model import SubscriptionIntent
from models.subscription_model import Subscription
from models.billing_model import BillingCharge
from services.billing import PurchaseEvent
from services.checkout import CheckoutRequest, CheckoutResult
from services.errors import BillingError, ValidationError

logger = logging.getLogger(__name__)


def purchase_event_id_for_run(run_id: str) -> str:
    return f"run:{run_id}"


def price_from_run(run) -> int | None:
    output = (run.output or {}) if run is not None else {}
    value = output.get("price_observed")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve_address(user_id: int, address_id: int | None = None) -> Address | None:
    if address_id:
        return Address.query.filter_by(id=address_id, user_id=user_id).first()
    return (
        Address.query.filter_by(user_id=user_id)
        .order_by(Address.is_primary.desc(), Address.created_at.desc())
        .first()
    )


@dataclass
class PurchaseOutcome:
    checkout: CheckoutResult
    subscription_id: int | None = None
    billing: str = "skipped"  # appended | invoiced | deferred | skipped | failed
    billing_error: str | None = None

    def to_payload(self) -> dict:
        return {
            "checkout": self.checkout.to_payload(),
            "subscriptionId": self.subscription_id,
            "billing": self.billing,
            "billingError": self.billing_error,
        }


class PurchaseFlow:
    """Primeira compra de uma intencao: checkout, assinatura e cobranca."""

    def __init__(self, intents, ledger, checkout, billing, runs) -> None:
        self.intents = intents
        self.ledger = ledger
        self.checkout = checkout
        self.billing = billing
        self.runs = runs

    def start(
        self,
        user,
        intent_id: int,
        *,
        address_id: int | None = None,
        strategy: str = "manual_one_off",
        run_id: str | None = None,
    ) -> PurchaseOutcome:
        intent = self.intents.get(user.id, intent_id)
        if intent.status != "active":
            raise ValidationError("A intencao precisa estar ativa.", code="intent_not_active")

        address = resolve_address(user.id, address_id)
        result = self.checkout.run(
            CheckoutRequest(
                target_url=intent.target_url,
                address=address,
                strategy=strategy,
                user_id=user.id,
                intent_id=intent.id,
                run_id=run_id,
            )
        )
        outcome = PurchaseOutcome(checkout=result)
        if not result.success:
            return outcome

        price = result.price_observed if result.price_observed is not None else intent.max_price_cents
        sub = self._subscription_for(intent)
        if sub is None:
            sub = self.ledger.create_from_purchase(
                intent,
                address_id=address.id if address else None,
                price_cents=price,
                merchant=result.merchant,
            )
        else:
            with self.ledger.locks.hold(sub.id):
                self.ledger.mark_renewed(sub, price_cents=price)
        db.session.commit()
        outcome.subscription_id = sub.id

        if price is None:
            logger.info("Compra: preco desconhecido, cobranca ignorada (intencao %s)", intent.id)
            return outcome

        event = PurchaseEvent(
            purchase_event_id=purchase_event_id_for_run(result.run_id),
            price_cents=price,
            cadence_days=intent.cadence_days,
            intent_id=intent.id,
            subscription_id=sub.id,
            order_reference=result.order_reference,
            product_name=intent.title,
        )
        try:
            if self.billing.has_active_vehicle(user.id):
                self.billing.append_charge(user, event, mode="next_invoice")
                outcome.billing = "appended"
            elif user.stripe_customer_id:
                self.billing.append_charge(user, event, mode="immediate")
                outcome.billing = "invoiced"
            else:
                # sem assinatura base ainda; cobrado quando ela for ativada
                outcome.billing = "deferred"
        except BillingError as exc:
            db.session.rollback()
            logger.warning("Compra: cobranca falhou para intencao %s: %s", intent.id, exc)
            outcome.billing = "failed"
            outcome.billing_error = str(exc)
        return outcome

    def _subscription_for(self, intent) -> Subscription | None:
        return (
            Subscription.query.filter(
                Subscription.intent_id == intent.id,
                Subscription.status != "canceled",
            )
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def settle_deferred(self, user) -> int:
        """Cobra compras concluidas antes da assinatura base existir.

        Idempotente: o ledger de cobrancas impede uma segunda cobranca do mesmo run.
        """
        settled = 0
        intents = SubscriptionIntent.query.filter_by(user_id=user.id, status="active").all()
        for intent in intents:
            run = self.runs.latest_done_for_intent(intent.id)
            if run is None:
                continue
            event_id = purchase_event_id_for_run(run.id)
            if BillingCharge.query.filter_by(purchase_event_id=event_id).first():
                continue

            price = price_from_run(run)
            if price is None:
                price = intent.max_price_cents
            if price is None:
                logger.info("Compra: intencao %s sem preco conhecido, nada a cobrar", intent.id)
                continue

            sub = self._subscription_for(intent)
            if sub is None:
                address = resolve_address(user.id)
                sub = self.ledger.create_from_purchase(
                    intent,
                    address_id=address.id if address else None,
                    price_cents=price,
                    purchased_at=run.ended_at,
                    merchant=(run.output or {}).get("merchant"),
                )
                db.session.commit()

            self.billing.append_charge(
                user,
                PurchaseEvent(
                    purchase_event_id=event_id,
                    price_cents=price,
                    cadence_days=intent.cadence_days,
                    intent_id=intent.id,
                    subscription_id=sub.id,
                    order_reference=(run.output or {}).get("order_reference"),
                    product_name=intent.title,
                ),
                mode="next_invoice",
            )
            settled += 1
        if settled:
            logger.info("Compra: %s compras pendentes cobradas para usuario %s", settled, user.id)
        return settled
